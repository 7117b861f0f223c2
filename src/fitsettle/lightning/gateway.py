"""
fitsettle/lightning/gateway.py

Lightning payment gateways.

Architecture:
    PaymentGateway (abstract)
    ├── CoinosGateway (custodial HTTP wallet API, via httpx)
    └── DryRunGateway (logs payments, moves no money)

Gateways report expected failures (insufficient balance, unreachable
address, timeouts) as PaymentResult(success=False). The orchestrator still
guards against unexpected exceptions per recipient.

Usage:
    from fitsettle.lightning.gateway import CoinosGateway

    gateway = CoinosGateway(api_token="...")
    result = await gateway.send_payment("alice@getalby.com", 5000, "RUNSTR Reward")
"""

import hashlib
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

import httpx

from ..config import COINOS_API_URL, PAYMENT_TIMEOUT_SECONDS
from ..errors import PaymentGatewayError

logger = logging.getLogger("fitsettle.lightning.gateway")


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class PaymentResult:
    """Outcome of one Lightning payment."""
    success: bool
    transaction_id: Optional[str] = None
    fee_paid: int = 0
    error: Optional[str] = None
    timed_out: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


# ============================================================================
# GATEWAY INTERFACE
# ============================================================================

class PaymentGateway(ABC):
    """Abstract base class for Lightning payment gateways."""

    @abstractmethod
    async def send_payment(self, address: str, amount_sats: int, memo: str) -> PaymentResult:
        """
        Send a payment.

        Args:
            address: Lightning address, LNURL or invoice
            amount_sats: Amount in satoshis
            memo: Payment description (carries the payment key)

        Returns:
            PaymentResult
        """
        pass

    async def lookup_payment(self, payment_key: str) -> Optional[PaymentResult]:
        """
        Look up an earlier payment by the key embedded in its memo.

        Returns None when the payment is unknown or the gateway cannot tell.
        """
        return None


# ============================================================================
# COINOS
# ============================================================================

class CoinosGateway(PaymentGateway):
    """
    Payments through a Coinos-compatible wallet API.

    Endpoints:
        POST {api_url}/payments   {"payreq", "amount", "memo"} -> {"id"|"hash", "fee"}
        GET  {api_url}/payments   -> [{"id", "hash", "memo", "amount", "fee", "confirmed"}]
    """

    def __init__(
        self,
        api_token: str,
        api_url: str = COINOS_API_URL,
        timeout: float = PAYMENT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize CoinosGateway.

        Args:
            api_token: Bearer token of the paying wallet
            api_url: API base url
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        if not api_token:
            raise PaymentGatewayError("Coinos gateway requires an API token")
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._headers = {"Authorization": f"Bearer {api_token}"}
        self._transport = transport

        self._payments_sent = 0
        self._payments_failed = 0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url,
            headers=self._headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            return str(body.get("error") or body.get("message") or body)
        return str(body)

    @staticmethod
    def _parse_fee(value: Any) -> int:
        """Whole sats from a fee field; unreadable fees count as 0 and never fail a payment."""
        if value is None or isinstance(value, bool):
            return 0
        try:
            fee = float(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unreadable payment fee: {value!r}")
            return 0
        if not math.isfinite(fee) or fee < 0:
            logger.warning(f"Ignoring unreadable payment fee: {value!r}")
            return 0
        return int(fee)

    async def send_payment(self, address: str, amount_sats: int, memo: str) -> PaymentResult:
        if amount_sats <= 0:
            return PaymentResult(success=False, error=f"Invalid amount: {amount_sats}")

        payload = {"payreq": address, "amount": amount_sats, "memo": memo}
        try:
            async with self._client() as client:
                response = await client.post("/payments", json=payload)
        except httpx.TimeoutException:
            self._payments_failed += 1
            logger.warning(f"Payment to {address} timed out after {self.timeout}s")
            return PaymentResult(success=False, error="Payment timed out", timed_out=True)
        except httpx.HTTPError as e:
            self._payments_failed += 1
            logger.warning(f"Payment to {address} failed: {e}")
            return PaymentResult(success=False, error=f"Payment request failed: {e}")

        if response.status_code >= 400:
            self._payments_failed += 1
            message = self._error_message(response)
            logger.warning(f"Payment to {address} rejected ({response.status_code}): {message}")
            return PaymentResult(success=False, error=message)

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        transaction_id = body.get("id") or body.get("hash") or body.get("payment_hash")
        if not transaction_id:
            self._payments_failed += 1
            return PaymentResult(success=False, error="Payment response missing transaction id")

        self._payments_sent += 1
        return PaymentResult(
            success=True,
            transaction_id=str(transaction_id),
            fee_paid=self._parse_fee(body.get("fee")),
        )

    async def lookup_payment(self, payment_key: str) -> Optional[PaymentResult]:
        try:
            async with self._client() as client:
                response = await client.get("/payments")
        except httpx.HTTPError as e:
            logger.warning(f"Payment lookup failed: {e}")
            return None

        if response.status_code >= 400:
            return None

        try:
            body = response.json()
        except ValueError:
            return None

        payments: List[Dict[str, Any]] = body.get("payments", []) if isinstance(body, dict) else body
        if not isinstance(payments, list):
            return None
        for payment in payments:
            if not isinstance(payment, dict):
                continue
            if payment_key not in str(payment.get("memo") or ""):
                continue
            if payment.get("confirmed") is False:
                return None
            transaction_id = payment.get("id") or payment.get("hash")
            return PaymentResult(
                success=True,
                transaction_id=str(transaction_id) if transaction_id else None,
                fee_paid=self._parse_fee(payment.get("fee")),
            )
        return None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "api_url": self.api_url,
            "payments_sent": self._payments_sent,
            "payments_failed": self._payments_failed,
        }


# ============================================================================
# DRY RUN
# ============================================================================

class DryRunGateway(PaymentGateway):
    """Records payments and reports success without moving money."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send_payment(self, address: str, amount_sats: int, memo: str) -> PaymentResult:
        transaction_id = "dryrun-" + hashlib.sha256(
            f"{address}:{amount_sats}:{memo}:{time.time()}".encode()
        ).hexdigest()[:16]
        self.sent.append({
            "address": address,
            "amount_sats": amount_sats,
            "memo": memo,
            "transaction_id": transaction_id,
        })
        logger.info(f"[DRY RUN] Would pay {amount_sats} sats to {address}")
        return PaymentResult(success=True, transaction_id=transaction_id)

    async def lookup_payment(self, payment_key: str) -> Optional[PaymentResult]:
        for payment in self.sent:
            if payment_key in payment["memo"]:
                return PaymentResult(success=True, transaction_id=payment["transaction_id"])
        return None
