"""
fitsettle/protocol/activity.py

Typed workout records parsed from Nostr kind 1301 events.

Parsing is strict but never raises: a raw event that is missing required
fields, or carries a malformed duration or distance, is discarded (returns
None). A malformed duration is never defaulted to zero because a zero
duration would win every "fastest time" competition.

Usage:
    from fitsettle.protocol.activity import RawEvent, parse, parse_events

    raw = RawEvent.from_dict(event_json)
    record = parse(raw, activity_type_filter="running")

    batch = parse_events(raw_events, "any", window_start, window_end)
    records = batch.records
"""

import logging
import math
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger("fitsettle.protocol.activity")


# ============================================================================
# CONSTANTS
# ============================================================================

ANY_ACTIVITY = "any"

KM_PER_MILE = 1.609344

# Tag keys read from workout events
TAG_EXERCISE = "exercise"
TAG_TYPE = "t"
TAG_DISTANCE = "distance"
TAG_DURATION = "duration"
TAG_CALORIES = "calories"
TAG_UNIT = "unit"

MILE_UNITS = ("mi", "mile", "miles", "imperial")

# Display names used by the app mapped to event tags
ACTIVITY_TYPE_TAGS = {
    "running": "running",
    "walking": "walking",
    "cycling": "cycling",
    "strength training": "strength",
    "meditation": "meditation",
    "yoga": "yoga",
    "diet": "diet",
    "any": ANY_ACTIVITY,
}


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class RawEvent:
    """
    A Nostr event as received from a relay.

    Tags are flattened to a map of key -> first value. Any elements after the
    value (e.g. the unit in ["distance", "5.0", "mi"]) are kept in tag_extras.
    """
    id: str
    author: str
    created_at: int
    kind: int = 0
    tags: Dict[str, str] = field(default_factory=dict)
    tag_extras: Dict[str, List[str]] = field(default_factory=dict)
    content: str = ""

    def tag(self, key: str) -> Optional[str]:
        return self.tags.get(key)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> Optional["RawEvent"]:
        """
        Build a RawEvent from relay JSON.

        Returns None when id, pubkey or created_at are missing or unusable.
        Malformed tag entries are skipped.
        """
        if not isinstance(data, dict):
            return None

        event_id = data.get("id")
        author = data.get("pubkey") or data.get("author")
        created_at = data.get("created_at")

        if not isinstance(event_id, str) or not event_id:
            return None
        if not isinstance(author, str) or not author:
            return None
        if isinstance(created_at, bool) or not isinstance(created_at, (int, float)):
            return None
        if not math.isfinite(created_at):
            return None

        tags: Dict[str, str] = {}
        tag_extras: Dict[str, List[str]] = {}
        raw_tags = data.get("tags") or []
        if isinstance(raw_tags, list):
            for entry in raw_tags:
                if not isinstance(entry, (list, tuple)) or len(entry) < 2:
                    continue
                key, value = entry[0], entry[1]
                if not isinstance(key, str) or not isinstance(value, str):
                    continue
                if key in tags:
                    continue  # first occurrence wins
                tags[key] = value
                extras = [e for e in entry[2:] if isinstance(e, str)]
                if extras:
                    tag_extras[key] = extras

        kind = data.get("kind", 0)
        content = data.get("content", "")

        return cls(
            id=event_id,
            author=author,
            created_at=int(created_at),
            kind=kind if isinstance(kind, int) else 0,
            tags=tags,
            tag_extras=tag_extras,
            content=content if isinstance(content, str) else "",
        )


@dataclass(frozen=True)
class ActivityRecord:
    """One parsed workout."""
    event_id: str
    participant_id: str
    activity_type: str
    distance: float                     # kilometres
    duration_seconds: Optional[int]     # None when the event has no duration
    calories: Optional[int]
    occurred_at: int                    # unix seconds

    @property
    def pace_minutes_per_km(self) -> Optional[float]:
        """Minutes per kilometre, None without both distance and duration."""
        if self.duration_seconds is None or self.distance <= 0:
            return None
        return (self.duration_seconds / 60.0) / self.distance

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ParseBatch:
    """Result of parsing a batch of raw events."""
    records: List[ActivityRecord] = field(default_factory=list)
    discarded: int = 0
    duplicates: int = 0
    filtered: int = 0       # valid records outside the activity type or window

    @property
    def total_seen(self) -> int:
        return len(self.records) + self.discarded + self.duplicates + self.filtered


# ============================================================================
# FIELD PARSING
# ============================================================================

def parse_duration(value: Optional[str]) -> Optional[int]:
    """
    Parse an HH:MM:SS duration into seconds.

    Returns None for anything that is not three non-negative integer fields
    with minutes and seconds below 60.

    Examples:
        "00:25:30" -> 1530
        "1:02:03"  -> 3723
        "25:30"    -> None
        "aa:bb:cc" -> None
    """
    if not isinstance(value, str):
        return None
    parts = value.strip().split(":")
    if len(parts) != 3:
        return None
    if not all(p.isascii() and p.isdigit() for p in parts):
        return None
    hours, minutes, seconds = (int(p) for p in parts)
    if minutes >= 60 or seconds >= 60:
        return None
    return hours * 3600 + minutes * 60 + seconds


def format_duration(seconds: int) -> str:
    """Format seconds as HH:MM:SS."""
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def _parse_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")) or number < 0:
        return None
    return number


def _parse_int(value: Optional[str]) -> Optional[int]:
    number = _parse_float(value)
    if number is None:
        return None
    return int(number)


def _distance_unit(raw: RawEvent) -> str:
    extras = raw.tag_extras.get(TAG_DISTANCE)
    if extras:
        return extras[0].lower()
    return (raw.tag(TAG_UNIT) or "km").lower()


def normalize_activity_type(activity_type: Optional[str]) -> str:
    """Map a display name or tag to its lowercase event tag."""
    if not activity_type:
        return ANY_ACTIVITY
    lowered = activity_type.strip().lower()
    return ACTIVITY_TYPE_TAGS.get(lowered, lowered)


def matches_activity_type(activity_type: str, activity_type_filter: Optional[str]) -> bool:
    """Case-insensitive activity type match; "any" matches everything."""
    wanted = normalize_activity_type(activity_type_filter)
    if wanted == ANY_ACTIVITY:
        return True
    return normalize_activity_type(activity_type) == wanted


# ============================================================================
# PARSER
# ============================================================================

def parse(raw: Optional[RawEvent], activity_type_filter: str = ANY_ACTIVITY) -> Optional[ActivityRecord]:
    """
    Convert a raw event into an ActivityRecord.

    Args:
        raw: Event to parse
        activity_type_filter: Activity tag to keep, or "any"

    Returns:
        ActivityRecord, or None if the event is unusable or filtered out
    """
    if raw is None or not raw.author:
        return None

    activity_type = raw.tag(TAG_EXERCISE) or raw.tag(TAG_TYPE) or "unknown"
    if not matches_activity_type(activity_type, activity_type_filter):
        return None

    distance_str = raw.tag(TAG_DISTANCE)
    duration_str = raw.tag(TAG_DURATION)
    if distance_str is None and duration_str is None:
        return None

    duration_seconds = None
    if duration_str is not None:
        duration_seconds = parse_duration(duration_str)
        if duration_seconds is None:
            logger.debug(f"Discarding event {raw.id}: malformed duration {duration_str!r}")
            return None

    distance = 0.0
    if distance_str is not None:
        parsed = _parse_float(distance_str)
        if parsed is None:
            logger.debug(f"Discarding event {raw.id}: malformed distance {distance_str!r}")
            return None
        distance = parsed * KM_PER_MILE if _distance_unit(raw) in MILE_UNITS else parsed

    return ActivityRecord(
        event_id=raw.id,
        participant_id=raw.author,
        activity_type=activity_type.lower(),
        distance=distance,
        duration_seconds=duration_seconds,
        calories=_parse_int(raw.tag(TAG_CALORIES)),
        occurred_at=raw.created_at,
    )


def parse_events(
    events: Iterable[RawEvent],
    activity_type_filter: str = ANY_ACTIVITY,
    window_start: Optional[int] = None,
    window_end: Optional[int] = None,
) -> ParseBatch:
    """
    Parse a batch of events, dropping duplicates and out-of-window records.

    Args:
        events: Raw events (any order, may contain duplicates across relays)
        activity_type_filter: Activity tag to keep, or "any"
        window_start: Inclusive lower bound on occurred_at (unix seconds)
        window_end: Inclusive upper bound on occurred_at (unix seconds)

    Returns:
        ParseBatch with records and discard counters
    """
    batch = ParseBatch()
    seen = set()

    for raw in events:
        if raw is None:
            batch.discarded += 1
            continue
        if raw.id in seen:
            batch.duplicates += 1
            continue
        seen.add(raw.id)

        if window_start is not None and raw.created_at < window_start:
            batch.filtered += 1
            continue
        if window_end is not None and raw.created_at > window_end:
            batch.filtered += 1
            continue

        activity_type = raw.tag(TAG_EXERCISE) or raw.tag(TAG_TYPE) or "unknown"
        if not matches_activity_type(activity_type, activity_type_filter):
            batch.filtered += 1
            continue

        record = parse(raw, activity_type_filter)
        if record is None:
            batch.discarded += 1
            continue
        batch.records.append(record)

    if batch.discarded:
        logger.debug(f"Parsed {len(batch.records)} records, discarded {batch.discarded}")
    return batch
