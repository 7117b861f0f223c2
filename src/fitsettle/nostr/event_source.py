"""
fitsettle/nostr/event_source.py

Event Source Adapter: fetches kind 1301 workout events for a set of
participants from several Nostr relays at once.

The feed is eventually consistent and may be incomplete. fetch_activities()
never raises on transport problems: relays that fail are listed in the
result, and a fetch that hits its timeout returns whatever arrived before.
FetchResult.complete tells a caller whether every relay finished.

Usage:
    from fitsettle.nostr.event_source import EventSourceAdapter

    source = EventSourceAdapter(relays=["wss://relay.damus.io", "wss://nos.lol"])
    result = await source.fetch_activities(member_pubkeys, "running", start, end)
    if result.partial:
        logger.warning("leaderboard built from a partial feed")
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, TYPE_CHECKING

import trio

from ..config import FETCH_LIMIT, FETCH_TIMEOUT_SECONDS, WORKOUT_EVENT_KIND, DEFAULT_RELAYS
from ..protocol.activity import (
    ANY_ACTIVITY,
    TAG_EXERCISE,
    TAG_TYPE,
    RawEvent,
    matches_activity_type,
)
from .relay import RelayClient

if TYPE_CHECKING:
    from ..config import RelayConfig
    from ..metrics import SettlementMetrics

logger = logging.getLogger("fitsettle.nostr.event_source")


# ============================================================================
# EVENT IDS
# ============================================================================

def compute_event_id(event: Dict[str, Any]) -> str:
    """NIP-01 event id: sha256 of [0, pubkey, created_at, kind, tags, content]."""
    serialized = json.dumps(
        [
            0,
            event.get("pubkey"),
            event.get("created_at"),
            event.get("kind"),
            event.get("tags"),
            event.get("content"),
        ],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def verify_event_id(event: Dict[str, Any]) -> bool:
    try:
        return compute_event_id(event) == event.get("id")
    except (TypeError, ValueError):
        return False


# ============================================================================
# RESULT
# ============================================================================

@dataclass
class FetchResult:
    """Events gathered by one fetch and how complete the gathering was."""
    events: List[RawEvent] = field(default_factory=list)
    timed_out: bool = False
    relays_succeeded: List[str] = field(default_factory=list)
    relays_failed: List[str] = field(default_factory=list)
    received: int = 0   # event frames seen, before filtering
    dropped: int = 0    # invalid, foreign author, wrong kind or outside window
    duplicates: int = 0

    @property
    def complete(self) -> bool:
        return not self.timed_out and not self.relays_failed

    @property
    def partial(self) -> bool:
        return not self.complete

    def to_dict(self) -> dict:
        return {
            "events": len(self.events),
            "timed_out": self.timed_out,
            "complete": self.complete,
            "relays_succeeded": list(self.relays_succeeded),
            "relays_failed": list(self.relays_failed),
            "received": self.received,
            "dropped": self.dropped,
            "duplicates": self.duplicates,
        }


# ============================================================================
# ADAPTER
# ============================================================================

class EventSourceAdapter:
    """
    Concurrent, time-bounded, read-only fetch of workout events.
    """

    def __init__(
        self,
        relays: Optional[List[str]] = None,
        timeout: float = FETCH_TIMEOUT_SECONDS,
        limit: int = FETCH_LIMIT,
        verify_event_ids: bool = True,
        per_participant: bool = False,
        client_factory: Callable[[str], RelayClient] = RelayClient,
        metrics: Optional["SettlementMetrics"] = None,
    ):
        """
        Initialize EventSourceAdapter.

        Args:
            relays: Relay urls (defaults to DEFAULT_RELAYS)
            timeout: Hard timeout of one fetch in seconds
            limit: Max events requested per subscription
            verify_event_ids: Drop events whose id is not their NIP-01 hash
            per_participant: One subscription per author instead of one per relay
            client_factory: Builds a relay client for a url
            metrics: Optional metrics collector
        """
        self.relays = list(DEFAULT_RELAYS if relays is None else relays)
        self.timeout = timeout
        self.limit = limit
        self.verify_event_ids = verify_event_ids
        self.per_participant = per_participant
        self._client_factory = client_factory
        self.metrics = metrics

    @classmethod
    def from_config(cls, config: "RelayConfig", metrics: Optional["SettlementMetrics"] = None) -> "EventSourceAdapter":
        return cls(
            relays=config.relays,
            timeout=config.fetch_timeout,
            limit=config.fetch_limit,
            verify_event_ids=config.verify_event_ids,
            per_participant=config.per_participant,
            metrics=metrics,
        )

    def build_filter(
        self,
        authors: List[str],
        window_start: Optional[int] = None,
        window_end: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Build the NIP-01 filter for workout events of the given authors."""
        query: Dict[str, Any] = {
            "kinds": [WORKOUT_EVENT_KIND],
            "authors": list(authors),
            "limit": limit or self.limit,
        }
        if window_start is not None:
            query["since"] = int(window_start)
        if window_end is not None:
            query["until"] = int(window_end)
        return query

    async def fetch_activities(
        self,
        participant_ids: Iterable[str],
        activity_type_filter: str = ANY_ACTIVITY,
        window_start: Optional[int] = None,
        window_end: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> FetchResult:
        """
        Fetch workout events of the given participants from all relays.

        Args:
            participant_ids: Authors (hex pubkeys) to query
            activity_type_filter: Activity type to keep ("any" keeps all)
            window_start: Unix seconds, inclusive
            window_end: Unix seconds, inclusive
            limit: Max events per subscription (defaults to the adapter limit)

        Returns:
            FetchResult with unique events sorted by (created_at, id)
        """
        authors = sorted(set(p for p in participant_ids if p))
        result = FetchResult()
        if not authors:
            return result

        author_set: Set[str] = set(authors)
        seen: Dict[str, RawEvent] = {}

        if self.per_participant:
            filter_groups = [
                [self.build_filter([author], window_start, window_end, limit)] for author in authors
            ]
        else:
            filter_groups = [[self.build_filter(authors, window_start, window_end, limit)]]

        def on_event(data: Dict[str, Any]) -> None:
            result.received += 1
            if self.verify_event_ids and not verify_event_id(data):
                result.dropped += 1
                return
            raw = RawEvent.from_dict(data)
            if raw is None or raw.kind != WORKOUT_EVENT_KIND or raw.author not in author_set:
                result.dropped += 1
                return
            if window_start is not None and raw.created_at < window_start:
                result.dropped += 1
                return
            if window_end is not None and raw.created_at > window_end:
                result.dropped += 1
                return
            activity_type = raw.tag(TAG_EXERCISE) or raw.tag(TAG_TYPE) or "unknown"
            if not matches_activity_type(activity_type, activity_type_filter):
                result.dropped += 1
                return
            if raw.id in seen:
                result.duplicates += 1
                return
            seen[raw.id] = raw

        succeeded: Set[str] = set()
        failed: Set[str] = set()

        async def query_relay(url: str, filters: List[Dict[str, Any]]) -> None:
            client = self._client_factory(url)
            try:
                await client.query(filters, on_event)
            except Exception as e:
                logger.warning(f"Relay {url} failed: {e}")
                failed.add(url)
            else:
                succeeded.add(url)

        if not self.relays:
            logger.warning("No relays configured; returning empty fetch result")

        started = trio.current_time()
        with trio.move_on_after(self.timeout) as cancel_scope:
            async with trio.open_nursery() as nursery:
                for url in self.relays:
                    for filters in filter_groups:
                        nursery.start_soon(query_relay, url, filters)

        result.timed_out = cancel_scope.cancelled_caught
        result.relays_failed = sorted(failed)
        result.relays_succeeded = sorted(succeeded - failed)
        result.events = sorted(seen.values(), key=lambda e: (e.created_at, e.id))
        duration = trio.current_time() - started

        if result.timed_out:
            logger.warning(
                f"Fetch timed out after {self.timeout}s with {len(result.events)} events "
                f"({len(result.relays_succeeded)}/{len(self.relays)} relays finished)"
            )
        else:
            logger.info(
                f"Fetched {len(result.events)} events for {len(authors)} participants "
                f"from {len(result.relays_succeeded)}/{len(self.relays)} relays"
            )

        if self.metrics:
            self.metrics.record_fetch(result.complete, duration, len(result.relays_failed))

        return result
