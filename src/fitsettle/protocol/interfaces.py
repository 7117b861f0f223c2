"""
fitsettle/protocol/interfaces.py

Interfaces of the collaborators the settlement engine talks to but does not
own: who may settle a team's competitions, where a participant gets paid,
and who hears about successful payments.

Static implementations are provided for tests, scripts and small deployments.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

logger = logging.getLogger("fitsettle.protocol.interfaces")


# ============================================================================
# TEAM AUTHORITY
# ============================================================================

class TeamAuthority(ABC):
    """Answers whether an actor is the designated captain of a team."""

    @abstractmethod
    async def is_captain(self, actor_id: str, team_id: str) -> bool:
        pass


class StaticTeamAuthority(TeamAuthority):
    """Captains from a fixed {team_id: captain_id} map."""

    def __init__(self, captains: Optional[Dict[str, str]] = None):
        self.captains: Dict[str, str] = dict(captains or {})

    def set_captain(self, team_id: str, captain_id: str) -> None:
        self.captains[team_id] = captain_id

    async def is_captain(self, actor_id: str, team_id: str) -> bool:
        return bool(actor_id) and self.captains.get(team_id) == actor_id


# ============================================================================
# RECIPIENT DIRECTORY
# ============================================================================

class RecipientDirectory(ABC):
    """Resolves a participant to a Lightning payment address."""

    @abstractmethod
    async def get_payment_address(self, participant_id: str) -> Optional[str]:
        """Lightning address / LNURL / invoice destination, or None if unknown."""
        pass


class StaticRecipientDirectory(RecipientDirectory):
    """Addresses from a fixed {participant_id: address} map."""

    def __init__(self, addresses: Optional[Dict[str, str]] = None):
        self.addresses: Dict[str, str] = dict(addresses or {})

    def set_address(self, participant_id: str, address: str) -> None:
        self.addresses[participant_id] = address

    async def get_payment_address(self, participant_id: str) -> Optional[str]:
        return self.addresses.get(participant_id)


# ============================================================================
# NOTIFICATIONS
# ============================================================================

class PaymentNotifier(ABC):
    """Side channel informed of each successful payment."""

    @abstractmethod
    async def notify_payment_sent(
        self,
        recipient_id: str,
        amount_sats: int,
        competition_id: str,
        transaction_ref: Optional[str],
    ) -> None:
        pass


class LoggingNotifier(PaymentNotifier):
    """Logs payments instead of pushing them anywhere."""

    async def notify_payment_sent(
        self,
        recipient_id: str,
        amount_sats: int,
        competition_id: str,
        transaction_ref: Optional[str],
    ) -> None:
        logger.info(
            f"Reward notification: {recipient_id} received {amount_sats} sats "
            f"for competition {competition_id}"
        )
