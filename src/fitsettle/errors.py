"""
fitsettle/errors.py

Exceptions raised to callers of the settlement engine.

Per-item problems (bad events, relay failures, failed payments) are absorbed
and reported as data. Only the errors below cross the API boundary.
"""


class SettlementError(Exception):
    """Base class for settlement errors."""
    pass


class UnauthorizedError(SettlementError):
    """Actor is not allowed to settle this competition's team."""

    def __init__(self, actor_id: str, team_id: str):
        self.actor_id = actor_id
        self.team_id = team_id
        super().__init__(f"Unauthorized: {actor_id} is not captain of team {team_id}")


class AlreadyDistributedError(SettlementError):
    """Competition has already been settled (or is being settled)."""

    def __init__(self, competition_id: str, distribution_id: str = ""):
        self.competition_id = competition_id
        self.distribution_id = distribution_id
        message = f"Rewards already distributed for competition {competition_id}"
        if distribution_id:
            message += f" (distribution {distribution_id})"
        super().__init__(message)


class NoWinnersError(SettlementError):
    """Nothing to pay: no awards were resolved."""
    pass


class NothingToRetryError(SettlementError):
    """No failed recipients remain for a competition."""
    pass


class DistributionNotFoundError(SettlementError):
    """Unknown distribution or competition."""
    pass


class InvalidTransitionError(SettlementError):
    """Illegal distribution status transition."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move distribution from {current} to {target}")


class InvalidPayoutSplitError(SettlementError, ValueError):
    """Payout split or prize pool is not usable."""
    pass


class PaymentGatewayError(SettlementError):
    """Payment gateway misconfiguration or protocol error."""
    pass


class CompetitionNotEndedError(SettlementError):
    """Settlement requested before the competition window closed."""

    def __init__(self, competition_id: str, window_end: int):
        self.competition_id = competition_id
        self.window_end = window_end
        super().__init__(f"Competition {competition_id} has not ended (window ends at {window_end})")
