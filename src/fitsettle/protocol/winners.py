"""
fitsettle/protocol/winners.py

Map a ranking and a payout split to prize awards.

Amounts are floor(prize_pool * fraction). The truncation remainder is not
redistributed, so the total paid may fall short of the pool by less than one
sat per split entry.

Usage:
    from fitsettle.protocol.winners import resolve_winners

    awards = resolve_winners(standings, 10000, [0.5, 0.3, 0.2], competition_id="evt-1")
"""

import logging
from decimal import Decimal, ROUND_DOWN
from dataclasses import dataclass, asdict
from typing import List, Optional, Sequence

from ..errors import InvalidPayoutSplitError
from .competition import Competition, CompetitionKind
from .scoring import ParticipantStanding, ScoringPolicy

logger = logging.getLogger("fitsettle.protocol.winners")


@dataclass
class WinnerAward:
    """A prize owed to one participant."""
    competition_id: str
    participant_id: str
    rank: int
    score: float
    amount_sats: int

    def to_dict(self) -> dict:
        return asdict(self)


def floor_share(prize_pool: int, fraction: float) -> int:
    """floor(prize_pool * fraction), computed on the decimal form of the fraction."""
    share = Decimal(prize_pool) * Decimal(str(fraction))
    return int(share.to_integral_value(rounding=ROUND_DOWN))


def validate_payout_split(prize_pool: int, payout_split: Sequence[float]) -> None:
    """
    Raises:
        InvalidPayoutSplitError: negative pool, fraction outside [0, 1] or sum above 1.0
    """
    if prize_pool < 0:
        raise InvalidPayoutSplitError(f"Prize pool must not be negative: {prize_pool}")
    for fraction in payout_split:
        if not 0.0 <= fraction <= 1.0:
            raise InvalidPayoutSplitError(f"Payout fraction out of range: {fraction}")
    # same decimal form floor_share pays on
    if sum(Decimal(str(fraction)) for fraction in payout_split) > 1:
        raise InvalidPayoutSplitError(f"Payout split sums above 1.0: {list(payout_split)}")


def resolve_winners(
    standings: List[ParticipantStanding],
    prize_pool: int,
    payout_split: Sequence[float],
    competition_id: str = "",
    policy: Optional[ScoringPolicy] = None,
    kind: CompetitionKind = CompetitionKind.EVENT,
    exclude_zero_scores: Optional[bool] = None,
) -> List[WinnerAward]:
    """
    Resolve prize awards from ranked standings.

    Args:
        standings: Ranked standings (rank order)
        prize_pool: Total prize in sats
        payout_split: Fraction of the pool per rank, first entry for rank 1
        competition_id: Competition the awards belong to
        policy: Scoring policy, decides whether zero scores are eligible
        kind: CHALLENGE pays the whole pool to rank 1
        exclude_zero_scores: Override the policy's zero-score eligibility

    Returns:
        Awards in rank order (possibly fewer than len(payout_split))
    """
    validate_payout_split(prize_pool, payout_split)

    if exclude_zero_scores is None:
        exclude_zero_scores = bool(policy and policy.strategy.requires_positive_score)

    ordered = sorted(standings, key=lambda s: s.rank)
    if exclude_zero_scores:
        eligible = [s for s in ordered if s.activity_count > 0 and s.score > 0]
    else:
        eligible = ordered

    if not eligible or prize_pool == 0:
        return []

    if kind == CompetitionKind.CHALLENGE:
        winner = eligible[0]
        if winner.activity_count == 0:
            return []
        return [WinnerAward(
            competition_id=competition_id,
            participant_id=winner.participant_id,
            rank=winner.rank,
            score=winner.score,
            amount_sats=prize_pool,
        )]

    awards = []
    for standing, fraction in zip(eligible, payout_split):
        amount = floor_share(prize_pool, fraction)
        if amount <= 0:
            continue
        awards.append(WinnerAward(
            competition_id=competition_id,
            participant_id=standing.participant_id,
            rank=standing.rank,
            score=standing.score,
            amount_sats=amount,
        ))

    drift = prize_pool - sum(a.amount_sats for a in awards)
    if awards and drift:
        logger.debug(f"Competition {competition_id}: {drift} sats left undistributed")
    return awards


def resolve_competition_winners(
    competition: Competition,
    standings: List[ParticipantStanding],
    exclude_zero_scores: Optional[bool] = None,
) -> List[WinnerAward]:
    """resolve_winners() with the competition's own pool, split, policy and kind."""
    return resolve_winners(
        standings,
        competition.prize_pool,
        competition.payout_split,
        competition_id=competition.id,
        policy=competition.scoring_policy,
        kind=competition.kind,
        exclude_zero_scores=exclude_zero_scores,
    )
