"""
fitsettle - Competition settlement for Nostr fitness competitions

Turns kind 1301 workout events into rankings and pays the winners over
Lightning:
- Concurrent, time-bounded relay fetch over trio-websocket
- Pluggable scoring policies with deterministic tie-breaks
- Floor-rounded prize splits and winner-takes-all challenges
- Batch payouts with per-recipient failure isolation, retry and reconciliation
- Settlement fence so a competition is never paid twice
- Prometheus metrics for monitoring

Usage:
    from fitsettle import SettlementEngine, SettlementConfig, SettlementContext
    from fitsettle import StaticTeamAuthority, StaticRecipientDirectory

    engine = SettlementEngine.from_config(
        SettlementConfig.from_env(),
        authority=StaticTeamAuthority({"team-1": captain_pubkey}),
        directory=StaticRecipientDirectory(lightning_addresses),
    )

    leaderboard = await engine.compute_leaderboard(competition, member_pubkeys)
    result = await engine.settle(SettlementContext(captain_pubkey, competition, member_pubkeys))

Metrics Usage:
    from fitsettle.metrics import SettlementMetrics

    metrics = SettlementMetrics()
    prometheus_output = metrics.collect()
"""

from .config import SettlementConfig, RelayConfig, CacheConfig, PaymentConfig
from .errors import (
    SettlementError,
    UnauthorizedError,
    AlreadyDistributedError,
    NoWinnersError,
    NothingToRetryError,
    DistributionNotFoundError,
    InvalidTransitionError,
    InvalidPayoutSplitError,
    PaymentGatewayError,
    CompetitionNotEndedError,
)
from .metrics import SettlementMetrics
from .protocol import (
    Competition,
    CompetitionKind,
    ScoringPolicy,
    ParticipantStanding,
    WinnerAward,
    Distribution,
    DistributionStatus,
    PaymentStatus,
    DistributionOrchestrator,
    MemorySettlementStore,
    SqliteSettlementStore,
    LeaderboardCache,
    StaticTeamAuthority,
    StaticRecipientDirectory,
    LoggingNotifier,
    SettlementEngine,
    SettlementContext,
    SettlementResult,
    Leaderboard,
)
from .lightning import PaymentGateway, PaymentResult, CoinosGateway, DryRunGateway
from .nostr import EventSourceAdapter, FetchResult

__version__ = "0.1.0"

__all__ = [
    # Config
    "SettlementConfig",
    "RelayConfig",
    "CacheConfig",
    "PaymentConfig",
    # Errors
    "SettlementError",
    "UnauthorizedError",
    "AlreadyDistributedError",
    "NoWinnersError",
    "NothingToRetryError",
    "DistributionNotFoundError",
    "InvalidTransitionError",
    "InvalidPayoutSplitError",
    "PaymentGatewayError",
    "CompetitionNotEndedError",
    # Metrics
    "SettlementMetrics",
    # Protocol
    "Competition",
    "CompetitionKind",
    "ScoringPolicy",
    "ParticipantStanding",
    "WinnerAward",
    "Distribution",
    "DistributionStatus",
    "PaymentStatus",
    "DistributionOrchestrator",
    "MemorySettlementStore",
    "SqliteSettlementStore",
    "LeaderboardCache",
    "StaticTeamAuthority",
    "StaticRecipientDirectory",
    "LoggingNotifier",
    "SettlementEngine",
    "SettlementContext",
    "SettlementResult",
    "Leaderboard",
    # Lightning
    "PaymentGateway",
    "PaymentResult",
    "CoinosGateway",
    "DryRunGateway",
    # Nostr
    "EventSourceAdapter",
    "FetchResult",
]
