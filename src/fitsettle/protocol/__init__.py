"""
fitsettle/protocol/

Competition settlement: activity parsing, scoring, winner resolution,
reward distribution and its persistence.
"""

from .activity import (
    RawEvent,
    ActivityRecord,
    ParseBatch,
    parse,
    parse_events,
    parse_duration,
    format_duration,
)
from .scoring import (
    ScoringPolicy,
    AggregateMetric,
    ParticipantStanding,
    aggregate,
    rank,
    build_standings,
    format_score,
)
from .competition import Competition, CompetitionKind
from .winners import WinnerAward, resolve_winners, resolve_competition_winners
from .distribution import (
    Distribution,
    DistributionStatus,
    RecipientPayment,
    PaymentStatus,
    PayoutStatus,
    DistributionOrchestrator,
)
from .storage import SettlementStore, MemorySettlementStore, SqliteSettlementStore
from .leaderboard_cache import LeaderboardCache, CacheKey, CachedResult
from .interfaces import (
    TeamAuthority,
    StaticTeamAuthority,
    RecipientDirectory,
    StaticRecipientDirectory,
    PaymentNotifier,
    LoggingNotifier,
)
from .settlement import SettlementEngine, SettlementContext, SettlementResult, Leaderboard

__all__ = [
    # Activity
    "RawEvent",
    "ActivityRecord",
    "ParseBatch",
    "parse",
    "parse_events",
    "parse_duration",
    "format_duration",
    # Scoring
    "ScoringPolicy",
    "AggregateMetric",
    "ParticipantStanding",
    "aggregate",
    "rank",
    "build_standings",
    "format_score",
    # Competitions & winners
    "Competition",
    "CompetitionKind",
    "WinnerAward",
    "resolve_winners",
    "resolve_competition_winners",
    # Distribution
    "Distribution",
    "DistributionStatus",
    "RecipientPayment",
    "PaymentStatus",
    "PayoutStatus",
    "DistributionOrchestrator",
    # Storage
    "SettlementStore",
    "MemorySettlementStore",
    "SqliteSettlementStore",
    # Cache
    "LeaderboardCache",
    "CacheKey",
    "CachedResult",
    # Collaborators
    "TeamAuthority",
    "StaticTeamAuthority",
    "RecipientDirectory",
    "StaticRecipientDirectory",
    "PaymentNotifier",
    "LoggingNotifier",
    # Pipeline
    "SettlementEngine",
    "SettlementContext",
    "SettlementResult",
    "Leaderboard",
]
