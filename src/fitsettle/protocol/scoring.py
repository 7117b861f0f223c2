"""
fitsettle/protocol/scoring.py

Metric aggregation and ranking for competitions.

Each ScoringPolicy owns a ScoringStrategy that declares, in one place, how a
single record is valued, how values combine (sum or min), which direction
ranks first and whether a winner needs a positive score. Aggregation is
order independent: sums use math.fsum (exactly rounded) and duplicate event
ids are counted once, so reruns over the same event set always produce the
same standings no matter how relays delivered them.

Ranking includes every registered participant. Ties are broken by
participant id (ascending), and participants without a score always rank
after those with one.

Usage:
    from fitsettle.protocol.scoring import ScoringPolicy, aggregate, rank

    aggregates = aggregate(records, ScoringPolicy.SUM_DISTANCE)
    standings = rank(aggregates, team_members, ScoringPolicy.SUM_DISTANCE)
"""

import logging
import math
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from .activity import ActivityRecord

logger = logging.getLogger("fitsettle.protocol.scoring")


# ============================================================================
# STRATEGIES
# ============================================================================

COMBINE_SUM = "sum"
COMBINE_MIN = "min"


@dataclass(frozen=True)
class ScoringStrategy:
    """Aggregation rule and sort direction of one scoring policy."""
    extract: Callable[[ActivityRecord], Optional[float]]
    combine: str
    ascending: bool
    requires_positive_score: bool
    unit: str


def _distance(record: ActivityRecord) -> Optional[float]:
    return record.distance


def _one(record: ActivityRecord) -> Optional[float]:
    return 1.0


def _duration(record: ActivityRecord) -> Optional[float]:
    if record.duration_seconds is None:
        return None
    return float(record.duration_seconds)


def _calories(record: ActivityRecord) -> Optional[float]:
    return float(record.calories or 0)


def _pace(record: ActivityRecord) -> Optional[float]:
    return record.pace_minutes_per_km


class ScoringPolicy(Enum):
    """Named scoring rules a competition can use."""
    SUM_DISTANCE = "sum-distance"
    COUNT = "count"
    SUM_DURATION = "sum-duration"
    SUM_CALORIES = "sum-calories"
    MIN_DURATION = "min-duration"
    MIN_PACE = "min-pace"

    @property
    def strategy(self) -> ScoringStrategy:
        return _STRATEGIES[self]

    @property
    def ascending(self) -> bool:
        return self.strategy.ascending

    @property
    def is_minimum(self) -> bool:
        return self.strategy.combine == COMBINE_MIN

    @classmethod
    def parse(cls, value: str) -> "ScoringPolicy":
        """
        Resolve a policy from its value or a legacy metric name.

        Raises:
            ValueError: unknown policy
        """
        if isinstance(value, ScoringPolicy):
            return value
        key = (value or "").strip().lower()
        if key in _ALIASES:
            return _ALIASES[key]
        for policy in cls:
            if policy.value == key or policy.name.lower() == key:
                return policy
        raise ValueError(f"Unknown scoring policy: {value!r}")


_STRATEGIES: Dict[ScoringPolicy, ScoringStrategy] = {
    ScoringPolicy.SUM_DISTANCE: ScoringStrategy(_distance, COMBINE_SUM, False, False, "km"),
    ScoringPolicy.COUNT: ScoringStrategy(_one, COMBINE_SUM, False, False, "workouts"),
    ScoringPolicy.SUM_DURATION: ScoringStrategy(_duration, COMBINE_SUM, False, False, "seconds"),
    ScoringPolicy.SUM_CALORIES: ScoringStrategy(_calories, COMBINE_SUM, False, False, "cal"),
    ScoringPolicy.MIN_DURATION: ScoringStrategy(_duration, COMBINE_MIN, True, True, "seconds"),
    ScoringPolicy.MIN_PACE: ScoringStrategy(_pace, COMBINE_MIN, True, True, "min/km"),
}

# Metric names used by the mobile app
_ALIASES: Dict[str, ScoringPolicy] = {
    "total_distance": ScoringPolicy.SUM_DISTANCE,
    "most_workouts": ScoringPolicy.COUNT,
    "total_workouts": ScoringPolicy.COUNT,
    "total_duration": ScoringPolicy.SUM_DURATION,
    "total_calories": ScoringPolicy.SUM_CALORIES,
    "fastest_time": ScoringPolicy.MIN_DURATION,
    "average_pace": ScoringPolicy.MIN_PACE,
}


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class AggregateMetric:
    """A participant's reduced score before ranking."""
    participant_id: str
    score: Optional[float]      # None: no usable record under a min-* policy
    activity_count: int


@dataclass
class ParticipantStanding:
    """A participant's score and rank within a competition."""
    participant_id: str
    score: float
    activity_count: int
    rank: int

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ParticipantStanding":
        return cls(**data)


# ============================================================================
# AGGREGATION
# ============================================================================

def aggregate(records: Iterable[ActivityRecord], policy: ScoringPolicy) -> Dict[str, AggregateMetric]:
    """
    Reduce activity records to one metric per participant.

    Args:
        records: Parsed records (any order)
        policy: Scoring policy to apply

    Returns:
        {participant_id: AggregateMetric} for participants with records
    """
    strategy = policy.strategy

    values: Dict[str, List[float]] = {}
    counts: Dict[str, int] = {}
    seen_events = set()

    for record in records:
        if record.event_id in seen_events:
            continue
        seen_events.add(record.event_id)

        pid = record.participant_id
        counts[pid] = counts.get(pid, 0) + 1
        values.setdefault(pid, [])

        value = strategy.extract(record)
        if value is None:
            continue
        values[pid].append(value)

    result: Dict[str, AggregateMetric] = {}
    for pid, count in counts.items():
        pid_values = values.get(pid, [])
        if strategy.combine == COMBINE_SUM:
            score: Optional[float] = math.fsum(pid_values)
        elif pid_values:
            score = min(pid_values)
        else:
            score = None
        result[pid] = AggregateMetric(participant_id=pid, score=score, activity_count=count)

    return result


# ============================================================================
# RANKING
# ============================================================================

def rank(
    aggregates: Dict[str, AggregateMetric],
    all_participant_ids: Iterable[str],
    policy: ScoringPolicy,
) -> List[ParticipantStanding]:
    """
    Order every registered participant and assign 1-based ranks.

    Sort key: scored before unscored, then score in the policy's direction,
    then participant id ascending.

    Args:
        aggregates: Output of aggregate()
        all_participant_ids: Registered participants (zero-activity included)
        policy: Scoring policy that produced the aggregates

    Returns:
        Standings in rank order, one per registered participant
    """
    ascending = policy.ascending

    participants = list(dict.fromkeys(all_participant_ids))
    unregistered = set(aggregates) - set(participants)
    if unregistered:
        logger.debug(f"Ignoring {len(unregistered)} unregistered authors")

    entries = []
    for pid in participants:
        metric = aggregates.get(pid)
        if metric is None:
            entries.append((pid, None, 0))
        else:
            entries.append((pid, metric.score, metric.activity_count))

    def sort_key(entry):
        pid, score, _count = entry
        if score is None:
            return (1, 0.0, pid)
        return (0, score if ascending else -score, pid)

    entries.sort(key=sort_key)

    return [
        ParticipantStanding(
            participant_id=pid,
            score=score if score is not None else 0.0,
            activity_count=count,
            rank=position,
        )
        for position, (pid, score, count) in enumerate(entries, 1)
    ]


def build_standings(
    records: Iterable[ActivityRecord],
    all_participant_ids: Iterable[str],
    policy: ScoringPolicy,
) -> List[ParticipantStanding]:
    """aggregate() followed by rank()."""
    return rank(aggregate(records, policy), all_participant_ids, policy)


# ============================================================================
# DISPLAY
# ============================================================================

def format_score(score: float, policy: ScoringPolicy) -> str:
    """
    Render a score for leaderboards.

    Examples:
        12.346, SUM_DISTANCE -> "12.35 km"
        5,      COUNT        -> "5 workouts"
        3725,   SUM_DURATION -> "1h 2m"
        1530,   MIN_DURATION -> "25:30"
        5.5,    MIN_PACE     -> "5:30 /km"
    """
    if policy == ScoringPolicy.SUM_DISTANCE:
        return f"{score:.2f} km"
    if policy == ScoringPolicy.COUNT:
        return f"{int(score)} workouts"
    if policy == ScoringPolicy.SUM_DURATION:
        hours = int(score // 3600)
        minutes = int((score % 3600) // 60)
        return f"{hours}h {minutes}m"
    if policy == ScoringPolicy.SUM_CALORIES:
        return f"{int(round(score))} cal"
    if policy == ScoringPolicy.MIN_DURATION:
        minutes = int(score // 60)
        seconds = int(score % 60)
        return f"{minutes}:{seconds:02d}"
    if policy == ScoringPolicy.MIN_PACE:
        minutes = int(score)
        seconds = int(round((score - minutes) * 60))
        if seconds == 60:
            minutes, seconds = minutes + 1, 0
        return f"{minutes}:{seconds:02d} /km"
    return f"{score:.2f}"
