"""
fitsettle/protocol/competition.py

Competition definitions as read by the settlement engine.

Competitions are created by team captains elsewhere; the engine only reads
them. The id is the stable external identifier used by the settlement fence.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .activity import ANY_ACTIVITY
from .scoring import ScoringPolicy


class CompetitionKind(Enum):
    """Competition formats."""
    EVENT = "event"            # one-off, prize split across the top N
    LEAGUE = "league"          # long-running, periodic payout
    CHALLENGE = "challenge"    # head-to-head, winner takes the pool


@dataclass
class Competition:
    """A scored contest over a fixed window with a prize pool."""
    id: str
    team_id: str
    scoring_policy: ScoringPolicy
    window_start: int
    window_end: int
    prize_pool: int = 0                                     # sats
    payout_split: List[float] = field(default_factory=list)
    activity_type_filter: str = ANY_ACTIVITY
    kind: CompetitionKind = CompetitionKind.EVENT
    name: str = ""

    def __post_init__(self):
        if not isinstance(self.scoring_policy, ScoringPolicy):
            self.scoring_policy = ScoringPolicy.parse(self.scoring_policy)
        if not isinstance(self.kind, CompetitionKind):
            self.kind = CompetitionKind(self.kind)

    @property
    def is_head_to_head(self) -> bool:
        return self.kind == CompetitionKind.CHALLENGE

    def has_ended(self, now: Optional[int] = None) -> bool:
        now = int(time.time()) if now is None else now
        return now > self.window_end

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "team_id": self.team_id,
            "scoring_policy": self.scoring_policy.value,
            "window_start": self.window_start,
            "window_end": self.window_end,
            "prize_pool": self.prize_pool,
            "payout_split": list(self.payout_split),
            "activity_type_filter": self.activity_type_filter,
            "kind": self.kind.value,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Competition":
        return cls(
            id=data["id"],
            team_id=data["team_id"],
            scoring_policy=ScoringPolicy.parse(data["scoring_policy"]),
            window_start=int(data["window_start"]),
            window_end=int(data["window_end"]),
            prize_pool=int(data.get("prize_pool", 0)),
            payout_split=[float(f) for f in data.get("payout_split", [])],
            activity_type_filter=data.get("activity_type_filter", ANY_ACTIVITY),
            kind=CompetitionKind(data.get("kind", CompetitionKind.EVENT.value)),
            name=data.get("name", ""),
        )
