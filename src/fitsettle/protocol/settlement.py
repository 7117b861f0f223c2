"""
fitsettle/protocol/settlement.py

Settlement pipeline: fetch -> parse -> aggregate -> rank -> resolve winners
-> distribute.

compute_leaderboard() is for display and may be served from the leaderboard
cache. settle() always recomputes from a fresh fetch, then hands the awards
to the DistributionOrchestrator, whose settlement fence guarantees a
competition is paid out at most once.

Usage:
    from fitsettle.config import SettlementConfig
    from fitsettle.protocol.settlement import SettlementEngine, SettlementContext

    engine = SettlementEngine.from_config(SettlementConfig.from_env(), authority, directory)

    leaderboard = await engine.compute_leaderboard(competition, member_pubkeys)
    result = await engine.settle(SettlementContext(captain_pubkey, competition, member_pubkeys))
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import trio

from ..errors import AlreadyDistributedError, CompetitionNotEndedError, UnauthorizedError
from ..lightning.gateway import CoinosGateway, DryRunGateway
from .activity import parse_events
from .competition import Competition
from .distribution import Distribution, DistributionOrchestrator, PayoutStatus
from .leaderboard_cache import CacheKey, LeaderboardCache
from .scoring import ParticipantStanding, ScoringPolicy, build_standings, format_score
from .storage import MemorySettlementStore, SqliteSettlementStore
from .winners import WinnerAward, resolve_competition_winners

if TYPE_CHECKING:
    from ..config import SettlementConfig
    from ..metrics import SettlementMetrics
    from ..nostr.event_source import EventSourceAdapter
    from .interfaces import PaymentNotifier, RecipientDirectory, TeamAuthority

logger = logging.getLogger("fitsettle.protocol.settlement")


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class Leaderboard:
    """Ranked standings of one competition."""
    competition_id: str
    policy: ScoringPolicy
    standings: List[ParticipantStanding] = field(default_factory=list)
    complete: bool = True           # every relay answered before the timeout
    event_count: int = 0
    discarded: int = 0
    computed_at: int = field(default_factory=lambda: int(time.time()))
    from_cache: bool = False
    age_seconds: float = 0.0

    def top(self, n: int) -> List[ParticipantStanding]:
        return self.standings[:n]

    def get_standing(self, participant_id: str) -> Optional[ParticipantStanding]:
        for standing in self.standings:
            if standing.participant_id == participant_id:
                return standing
        return None

    def to_dict(self) -> dict:
        return {
            "competition_id": self.competition_id,
            "policy": self.policy.value,
            "standings": [
                dict(s.to_dict(), display=format_score(s.score, self.policy)) for s in self.standings
            ],
            "complete": self.complete,
            "event_count": self.event_count,
            "discarded": self.discarded,
            "computed_at": self.computed_at,
            "from_cache": self.from_cache,
            "age_seconds": self.age_seconds,
        }


@dataclass
class SettlementContext:
    """Who is settling what, and over which participants."""
    actor_id: str
    competition: Competition
    participant_ids: List[str]


@dataclass
class SettlementResult:
    """Outcome of settle()."""
    competition_id: str
    leaderboard: Leaderboard
    awards: List[WinnerAward] = field(default_factory=list)
    distribution: Optional[Distribution] = None

    @property
    def settled(self) -> bool:
        return self.distribution is not None

    def to_dict(self) -> dict:
        return {
            "competition_id": self.competition_id,
            "leaderboard": self.leaderboard.to_dict(),
            "awards": [a.to_dict() for a in self.awards],
            "distribution": self.distribution.to_dict() if self.distribution else None,
        }


# ============================================================================
# ENGINE
# ============================================================================

class SettlementEngine:
    """
    Wires the event source, ranking, winner resolution and distribution.
    """

    def __init__(
        self,
        event_source: "EventSourceAdapter",
        orchestrator: DistributionOrchestrator,
        cache: Optional[LeaderboardCache] = None,
        metrics: Optional["SettlementMetrics"] = None,
    ):
        """
        Initialize SettlementEngine.

        Args:
            event_source: Workout event source
            orchestrator: Distribution orchestrator (owns store, gateway, authority)
            cache: Optional leaderboard cache for display queries
            metrics: Optional metrics collector
        """
        self.event_source = event_source
        self.orchestrator = orchestrator
        self.cache = cache
        self.metrics = metrics

    @classmethod
    def from_config(
        cls,
        config: "SettlementConfig",
        authority: "TeamAuthority",
        directory: "RecipientDirectory",
        notifier: Optional["PaymentNotifier"] = None,
        metrics: Optional["SettlementMetrics"] = None,
    ) -> "SettlementEngine":
        """
        Build an engine and all of its parts from a SettlementConfig.

        Uses the sqlite store when config.db_path is set, the in-memory store
        otherwise, and DryRunGateway when config.payment.dry_run is set.
        """
        from ..nostr.event_source import EventSourceAdapter

        if config.db_path:
            store = SqliteSettlementStore(config.db_path)
        else:
            store = MemorySettlementStore()

        if config.payment.dry_run:
            gateway = DryRunGateway()
        else:
            gateway = CoinosGateway(
                api_token=config.payment.api_token,
                api_url=config.payment.api_url,
                timeout=config.payment.timeout,
            )

        orchestrator = DistributionOrchestrator(
            store,
            gateway,
            authority,
            directory,
            notifier=notifier,
            metrics=metrics,
            memo_prefix=config.payment.memo_prefix,
        )

        cache = None
        if config.cache.enabled:
            cache = LeaderboardCache(ttl=config.cache.ttl, stale_after=config.cache.stale_after, metrics=metrics)

        return cls(
            EventSourceAdapter.from_config(config.relay, metrics=metrics),
            orchestrator,
            cache=cache,
            metrics=metrics,
        )

    # ========================================================================
    # LEADERBOARDS
    # ========================================================================

    async def build_leaderboard(self, competition: Competition, participant_ids: List[str]) -> Leaderboard:
        """Fetch, parse and rank from scratch (no cache)."""
        fetch = await self.event_source.fetch_activities(
            participant_ids,
            competition.activity_type_filter,
            competition.window_start,
            competition.window_end,
        )
        batch = parse_events(
            fetch.events,
            competition.activity_type_filter,
            competition.window_start,
            competition.window_end,
        )
        if self.metrics:
            self.metrics.record_parse(len(batch.records), batch.discarded)

        standings = build_standings(batch.records, participant_ids, competition.scoring_policy)

        logger.info(
            f"Leaderboard for {competition.id}: {len(standings)} participants, "
            f"{len(batch.records)} records, {batch.discarded} discarded"
            + ("" if fetch.complete else " (partial feed)")
        )

        return Leaderboard(
            competition_id=competition.id,
            policy=competition.scoring_policy,
            standings=standings,
            complete=fetch.complete,
            event_count=len(batch.records),
            discarded=batch.discarded,
        )

    def _from_cached(self, cached) -> Leaderboard:
        leaderboard: Leaderboard = cached.value
        if not cached.from_cache:
            return leaderboard
        # the cached object is shared; annotate a copy
        return Leaderboard(
            competition_id=leaderboard.competition_id,
            policy=leaderboard.policy,
            standings=list(leaderboard.standings),
            complete=leaderboard.complete,
            event_count=leaderboard.event_count,
            discarded=leaderboard.discarded,
            computed_at=leaderboard.computed_at,
            from_cache=True,
            age_seconds=cached.age_seconds,
        )

    async def compute_leaderboard(
        self,
        competition: Competition,
        participant_ids: List[str],
        use_cache: bool = True,
    ) -> Leaderboard:
        """
        Leaderboard for display, served from the cache when fresh.

        Args:
            competition: Competition to rank
            participant_ids: Registered participants
            use_cache: Set False to force a fresh computation

        Returns:
            Leaderboard (from_cache tells where it came from)
        """
        if not use_cache or self.cache is None:
            return await self.build_leaderboard(competition, participant_ids)

        async def compute():
            return await self.build_leaderboard(competition, participant_ids)

        cached = await self.cache.get_or_compute(CacheKey.for_competition(competition), compute)
        return self._from_cached(cached)

    async def compute_leaderboard_background(
        self,
        competition: Competition,
        participant_ids: List[str],
        nursery: trio.Nursery,
    ) -> Leaderboard:
        """compute_leaderboard(), refreshing stale entries in the given nursery."""
        if self.cache is None:
            return await self.build_leaderboard(competition, participant_ids)

        async def compute():
            return await self.build_leaderboard(competition, participant_ids)

        cached = await self.cache.get_or_compute_background(
            CacheKey.for_competition(competition), compute, nursery
        )
        return self._from_cached(cached)

    # ========================================================================
    # SETTLEMENT
    # ========================================================================

    async def settle(self, context: SettlementContext, require_ended: bool = True) -> SettlementResult:
        """
        Settle a competition: fresh leaderboard, winners, distribution.

        Args:
            context: Actor, competition and participants
            require_ended: Refuse to settle a competition whose window is open

        Returns:
            SettlementResult; distribution is None when there were no winners

        Raises:
            UnauthorizedError: actor is not the team captain
            AlreadyDistributedError: competition already settled
            CompetitionNotEndedError: window still open and require_ended set
        """
        competition = context.competition
        orchestrator = self.orchestrator

        if not await orchestrator.authority.is_captain(context.actor_id, competition.team_id):
            logger.warning(f"Rejected settlement of {competition.id} by {context.actor_id}")
            raise UnauthorizedError(context.actor_id, competition.team_id)
        if orchestrator.store.is_settled(competition.id):
            latest = orchestrator.store.get_latest_distribution(competition.id)
            raise AlreadyDistributedError(competition.id, latest.id if latest else "")
        if require_ended and not competition.has_ended():
            raise CompetitionNotEndedError(competition.id, competition.window_end)

        leaderboard = await self.build_leaderboard(competition, context.participant_ids)
        if not leaderboard.complete:
            logger.warning(f"Settling {competition.id} from a partial event feed")

        awards = resolve_competition_winners(competition, leaderboard.standings)
        result = SettlementResult(competition_id=competition.id, leaderboard=leaderboard, awards=awards)

        if not awards:
            logger.info(f"No winners for competition {competition.id}; nothing to distribute")
            return result

        result.distribution = await orchestrator.distribute(context.actor_id, competition, awards)

        if self.cache:
            self.cache.invalidate_competition(competition.id)

        return result

    async def retry(self, actor_id: str, competition_id: str) -> Distribution:
        """Pay again the recipients whose payment failed."""
        return await self.orchestrator.retry_failed(actor_id, competition_id)

    async def reconcile(self, competition_id: str) -> List[Distribution]:
        """Reconcile every attempt of a competition that still has failed payments."""
        reconciled = []
        for distribution in self.orchestrator.list_distributions(competition_id):
            if distribution.status.is_terminal and distribution.failed_recipients():
                reconciled.append(await self.orchestrator.reconcile(distribution.id))
        return reconciled

    def get_payout_status(self, competition_id: str) -> PayoutStatus:
        return self.orchestrator.get_payout_status(competition_id)

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "relays": len(self.event_source.relays),
        }
        if self.cache:
            stats["cache"] = self.cache.get_stats()
        if self.metrics:
            stats["metrics"] = self.metrics.get_stats()
        return stats
