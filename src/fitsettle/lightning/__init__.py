"""
fitsettle.lightning - Lightning payment gateways
"""

from .gateway import PaymentGateway, PaymentResult, CoinosGateway, DryRunGateway

__all__ = [
    "PaymentGateway",
    "PaymentResult",
    "CoinosGateway",
    "DryRunGateway",
]
