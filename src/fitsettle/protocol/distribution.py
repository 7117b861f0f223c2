"""
fitsettle/protocol/distribution.py

Reward distribution: turns winner awards into a batch of independent
Lightning payments and tracks the batch through its state machine.

    pending -> processing -> completed | partial | failed

Rules:
- Only the team captain may create or retry a distribution. The check runs
  before the settlement fence is touched and before any payment.
- The settlement fence (store.claim_settlement under a per-competition lock)
  allows at most one initial distribution per competition.
- Every recipient is paid in its own task. A failure never cancels a
  sibling; the nursery joins all tasks before the batch status is decided.
- Terminal distributions are never re-processed. retry_failed() creates a
  new attempt that contains only the recipients whose payment failed.
- reconcile() looks up failed payments at the gateway and records late
  successes, so a payment that landed after being marked failed is not paid
  again by a retry.

Usage:
    from fitsettle.protocol.distribution import DistributionOrchestrator

    orchestrator = DistributionOrchestrator(store, gateway, authority, directory)
    distribution = await orchestrator.distribute(captain_id, competition, awards)
    if distribution.status == DistributionStatus.PARTIAL:
        distribution = await orchestrator.retry_failed(captain_id, competition.id)
"""

import logging
import secrets
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, TYPE_CHECKING

import trio

from ..config import PAYMENT_MEMO_PREFIX
from ..errors import (
    AlreadyDistributedError,
    DistributionNotFoundError,
    InvalidTransitionError,
    NoWinnersError,
    NothingToRetryError,
    SettlementError,
    UnauthorizedError,
)

if TYPE_CHECKING:
    from ..lightning.gateway import PaymentGateway
    from ..metrics import SettlementMetrics
    from .competition import Competition
    from .interfaces import PaymentNotifier, RecipientDirectory, TeamAuthority
    from .storage import SettlementStore
    from .winners import WinnerAward

logger = logging.getLogger("fitsettle.protocol.distribution")


# ============================================================================
# STATE MACHINE
# ============================================================================

class DistributionStatus(Enum):
    """Status of a distribution batch."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DistributionStatus.COMPLETED, DistributionStatus.PARTIAL, DistributionStatus.FAILED)


class PaymentStatus(Enum):
    """Status of one recipient's payment."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


TRANSITIONS = {
    DistributionStatus.PENDING: {DistributionStatus.PROCESSING},
    DistributionStatus.PROCESSING: {
        DistributionStatus.COMPLETED,
        DistributionStatus.PARTIAL,
        DistributionStatus.FAILED,
    },
    DistributionStatus.COMPLETED: set(),
    DistributionStatus.PARTIAL: set(),
    DistributionStatus.FAILED: set(),
}

# Reconciliation may only move a terminal batch towards "more paid"
RECONCILE_TRANSITIONS = {
    DistributionStatus.FAILED: {DistributionStatus.PARTIAL, DistributionStatus.COMPLETED},
    DistributionStatus.PARTIAL: {DistributionStatus.COMPLETED},
}

NO_ADDRESS_ERROR = "Recipient has no wallet address"
NO_OUTCOME_ERROR = "No payment outcome recorded"
INTERRUPTED_ERROR = "Processing interrupted before confirmation"


# ============================================================================
# DATA STRUCTURES
# ============================================================================

def new_distribution_id() -> str:
    return f"dist_{int(time.time())}_{secrets.token_hex(5)}"


def new_payment_key() -> str:
    return uuid.uuid4().hex


@dataclass
class RecipientPayment:
    """One payment intent inside a distribution."""
    recipient_id: str
    amount_sats: int
    rank: int = 0
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_ref: Optional[str] = None
    fee_paid: int = 0
    error: Optional[str] = None
    payment_key: str = field(default_factory=new_payment_key)
    reconciled: bool = False
    paid_at: Optional[int] = None

    def mark_sent(self, transaction_ref: Optional[str], fee_paid: int = 0, reconciled: bool = False) -> None:
        self.status = PaymentStatus.SENT
        self.transaction_ref = transaction_ref
        self.fee_paid = fee_paid
        self.error = None
        self.reconciled = reconciled
        self.paid_at = int(time.time())

    def mark_failed(self, error: str) -> None:
        self.status = PaymentStatus.FAILED
        self.error = error

    def to_dict(self) -> dict:
        return {
            "recipient_id": self.recipient_id,
            "amount_sats": self.amount_sats,
            "rank": self.rank,
            "status": self.status.value,
            "transaction_ref": self.transaction_ref,
            "fee_paid": self.fee_paid,
            "error": self.error,
            "payment_key": self.payment_key,
            "reconciled": self.reconciled,
            "paid_at": self.paid_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecipientPayment":
        data = dict(data)
        data["status"] = PaymentStatus(data.get("status", PaymentStatus.PENDING.value))
        return cls(**data)


@dataclass
class Distribution:
    """A batch of payments settling one competition (or retrying part of it)."""
    id: str
    competition_id: str
    team_id: str
    initiated_by: str
    recipients: List[RecipientPayment] = field(default_factory=list)
    status: DistributionStatus = DistributionStatus.PENDING
    created_at: int = field(default_factory=lambda: int(time.time()))
    completed_at: Optional[int] = None
    retry_of: Optional[str] = None

    @property
    def total_amount(self) -> int:
        return sum(r.amount_sats for r in self.recipients)

    @property
    def sent_amount(self) -> int:
        return sum(r.amount_sats for r in self.recipients if r.status == PaymentStatus.SENT)

    @property
    def sent_count(self) -> int:
        return sum(1 for r in self.recipients if r.status == PaymentStatus.SENT)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.recipients if r.status == PaymentStatus.FAILED)

    def failed_recipients(self) -> List[RecipientPayment]:
        return [r for r in self.recipients if r.status == PaymentStatus.FAILED]

    def outcome_status(self) -> DistributionStatus:
        """Aggregate status from recipient outcomes."""
        sent = self.sent_count
        if self.recipients and sent == len(self.recipients):
            return DistributionStatus.COMPLETED
        if sent == 0:
            return DistributionStatus.FAILED
        return DistributionStatus.PARTIAL

    def transition_to(self, target: DistributionStatus, reconcile: bool = False) -> None:
        """
        Move to a new status.

        Raises:
            InvalidTransitionError: target not reachable from the current status
        """
        if target == self.status:
            return
        allowed = set(TRANSITIONS.get(self.status, set()))
        if reconcile:
            allowed |= RECONCILE_TRANSITIONS.get(self.status, set())
        if target not in allowed:
            raise InvalidTransitionError(self.status.value, target.value)
        self.status = target
        if target.is_terminal:
            self.completed_at = int(time.time())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "competition_id": self.competition_id,
            "team_id": self.team_id,
            "initiated_by": self.initiated_by,
            "recipients": [r.to_dict() for r in self.recipients],
            "status": self.status.value,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "retry_of": self.retry_of,
            "total_amount": self.total_amount,
            "sent_amount": self.sent_amount,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Distribution":
        return cls(
            id=data["id"],
            competition_id=data["competition_id"],
            team_id=data["team_id"],
            initiated_by=data["initiated_by"],
            recipients=[RecipientPayment.from_dict(r) for r in data.get("recipients", [])],
            status=DistributionStatus(data.get("status", DistributionStatus.PENDING.value)),
            created_at=data.get("created_at", 0),
            completed_at=data.get("completed_at"),
            retry_of=data.get("retry_of"),
        )


@dataclass
class PayoutStatus:
    """Payout summary across all attempts for a competition."""
    competition_id: str
    settled: bool
    paid: bool
    distribution_count: int
    total_amount: int
    sent_amount: int
    failed_recipients: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "competition_id": self.competition_id,
            "settled": self.settled,
            "paid": self.paid,
            "distribution_count": self.distribution_count,
            "total_amount": self.total_amount,
            "sent_amount": self.sent_amount,
            "failed_recipients": list(self.failed_recipients),
        }


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class DistributionOrchestrator:
    """
    Creates, dispatches, retries and reconciles reward distributions.

    Holds no process-wide state: every collaborator is injected, and the
    per-competition locks live on the instance. Share one orchestrator per
    store so that the locks serialize all writers of a competition.
    """

    def __init__(
        self,
        store: "SettlementStore",
        gateway: "PaymentGateway",
        authority: "TeamAuthority",
        directory: "RecipientDirectory",
        notifier: Optional["PaymentNotifier"] = None,
        metrics: Optional["SettlementMetrics"] = None,
        memo_prefix: str = PAYMENT_MEMO_PREFIX,
    ):
        """
        Initialize DistributionOrchestrator.

        Args:
            store: Settlement store (fence + audit trail)
            gateway: Lightning payment gateway
            authority: Captain lookup for permission checks
            directory: Participant -> Lightning address lookup
            notifier: Optional side channel for successful payments
            metrics: Optional metrics collector
            memo_prefix: Prefix of every payment memo
        """
        self.store = store
        self.gateway = gateway
        self.authority = authority
        self.directory = directory
        self.notifier = notifier
        self.metrics = metrics
        self.memo_prefix = memo_prefix

        self._locks: Dict[str, trio.Lock] = {}

    def _lock_for(self, competition_id: str) -> trio.Lock:
        lock = self._locks.get(competition_id)
        if lock is None:
            lock = self._locks[competition_id] = trio.Lock()
        return lock

    def _release_lock(self, competition_id: str) -> None:
        """Forget the lock of a settled competition nobody holds or waits on."""
        lock = self._locks.get(competition_id)
        if lock is None:
            return
        stats = lock.statistics()
        if stats.locked or stats.tasks_waiting:
            return
        if self.store.is_settled(competition_id):
            del self._locks[competition_id]

    async def _authorize(self, actor_id: str, team_id: str) -> None:
        if not await self.authority.is_captain(actor_id, team_id):
            logger.warning(f"Rejected distribution request from {actor_id} for team {team_id}")
            raise UnauthorizedError(actor_id, team_id)

    def _require(self, distribution_id: str) -> Distribution:
        distribution = self.store.get_distribution(distribution_id)
        if distribution is None:
            raise DistributionNotFoundError(f"Distribution not found: {distribution_id}")
        return distribution

    # ========================================================================
    # CREATION
    # ========================================================================

    async def create_distribution(
        self,
        actor_id: str,
        competition: "Competition",
        awards: List["WinnerAward"],
    ) -> Distribution:
        """
        Create the (single) distribution for a competition.

        Args:
            actor_id: Who is settling (must be the team captain)
            competition: Competition being settled
            awards: Resolved winner awards

        Returns:
            The new pending Distribution

        Raises:
            UnauthorizedError: actor is not the team captain
            NoWinnersError: awards is empty
            AlreadyDistributedError: competition already settled or claimed
        """
        await self._authorize(actor_id, competition.team_id)

        if not awards:
            raise NoWinnersError(f"No winners for competition {competition.id}")

        recipient_ids = [a.participant_id for a in awards]
        if len(set(recipient_ids)) != len(recipient_ids):
            raise ValueError(f"Duplicate recipients in awards for competition {competition.id}")

        try:
            distribution = await self._claim(actor_id, competition, awards)
        except AlreadyDistributedError:
            self._release_lock(competition.id)
            raise

        logger.info(
            f"Created distribution {distribution.id} for competition {competition.id}: "
            f"{len(distribution.recipients)} recipients, {distribution.total_amount} sats"
        )
        return distribution

    async def _claim(
        self,
        actor_id: str,
        competition: "Competition",
        awards: List["WinnerAward"],
    ) -> Distribution:
        async with self._lock_for(competition.id):
            if self.store.is_settled(competition.id):
                latest = self.store.get_latest_distribution(competition.id)
                raise AlreadyDistributedError(competition.id, latest.id if latest else "")

            distribution = Distribution(
                id=new_distribution_id(),
                competition_id=competition.id,
                team_id=competition.team_id,
                initiated_by=actor_id,
                recipients=[
                    RecipientPayment(
                        recipient_id=award.participant_id,
                        amount_sats=award.amount_sats,
                        rank=award.rank,
                    )
                    for award in awards
                ],
            )

            if not self.store.claim_settlement(distribution):
                latest = self.store.get_latest_distribution(competition.id)
                raise AlreadyDistributedError(competition.id, latest.id if latest else "")

        return distribution

    # ========================================================================
    # PROCESSING
    # ========================================================================

    async def process_distribution(self, distribution_id: str) -> Distribution:
        """
        Dispatch every pending payment of a distribution and settle its status.

        Terminal or already-processing distributions are returned unchanged.

        Args:
            distribution_id: Distribution to process

        Returns:
            The distribution in its resulting status
        """
        distribution = self._require(distribution_id)

        async with self._lock_for(distribution.competition_id):
            distribution = self._require(distribution_id)
            if distribution.status != DistributionStatus.PENDING:
                logger.info(
                    f"Distribution {distribution_id} is {distribution.status.value}; not re-processing"
                )
                return distribution
            distribution.transition_to(DistributionStatus.PROCESSING)
            self.store.save_distribution(distribution)

        logger.info(f"Processing distribution {distribution.id} ({len(distribution.recipients)} recipients)")

        async with trio.open_nursery() as nursery:
            for recipient in distribution.recipients:
                if recipient.status == PaymentStatus.PENDING:
                    nursery.start_soon(self._dispatch, distribution, recipient)

        self._finish(distribution)
        self._release_lock(distribution.competition_id)
        return distribution

    async def distribute(
        self,
        actor_id: str,
        competition: "Competition",
        awards: List["WinnerAward"],
    ) -> Distribution:
        """create_distribution() followed by process_distribution()."""
        distribution = await self.create_distribution(actor_id, competition, awards)
        return await self.process_distribution(distribution.id)

    def _memo(self, distribution: Distribution, recipient: RecipientPayment) -> str:
        return (
            f"{self.memo_prefix}: competition {distribution.competition_id} "
            f"rank #{recipient.rank} [{recipient.payment_key}]"
        )

    async def _dispatch(self, distribution: Distribution, recipient: RecipientPayment) -> None:
        """Pay one recipient. Records the outcome; never raises."""
        try:
            address = await self.directory.get_payment_address(recipient.recipient_id)
        except Exception as e:
            logger.warning(f"Address lookup failed for {recipient.recipient_id}: {e}")
            address = None

        if not address:
            recipient.mark_failed(NO_ADDRESS_ERROR)
        else:
            try:
                result = await self.gateway.send_payment(
                    address, recipient.amount_sats, self._memo(distribution, recipient)
                )
            except Exception as e:
                logger.error(f"Payment to {recipient.recipient_id} raised: {e}")
                recipient.mark_failed(f"Payment error: {e}")
            else:
                if result.success:
                    recipient.mark_sent(result.transaction_id, result.fee_paid)
                else:
                    recipient.mark_failed(result.error or "Payment failed")

        if recipient.status == PaymentStatus.SENT:
            logger.info(
                f"Paid {recipient.amount_sats} sats to {recipient.recipient_id} "
                f"(distribution {distribution.id}, ref {recipient.transaction_ref})"
            )
            await self._notify(distribution, recipient)
        else:
            logger.warning(
                f"Payment of {recipient.amount_sats} sats to {recipient.recipient_id} failed "
                f"(distribution {distribution.id}): {recipient.error}"
            )

        if self.metrics:
            self.metrics.record_payment(recipient.status == PaymentStatus.SENT, recipient.amount_sats)

        try:
            self.store.save_distribution(distribution)
        except Exception as e:
            # the final write in _finish still records this outcome
            logger.error(f"Checkpoint write failed for distribution {distribution.id}: {e}")

    async def _notify(self, distribution: Distribution, recipient: RecipientPayment) -> None:
        if not self.notifier:
            return
        try:
            await self.notifier.notify_payment_sent(
                recipient.recipient_id,
                recipient.amount_sats,
                distribution.competition_id,
                recipient.transaction_ref,
            )
        except Exception as e:
            logger.warning(f"Payment notification to {recipient.recipient_id} failed: {e}")

    def _finish(self, distribution: Distribution) -> None:
        for recipient in distribution.recipients:
            if recipient.status == PaymentStatus.PENDING:
                recipient.mark_failed(NO_OUTCOME_ERROR)

        distribution.transition_to(distribution.outcome_status())
        self.store.complete_distribution(distribution)

        if self.metrics:
            self.metrics.record_distribution(distribution.status.value)

        logger.info(
            f"Distribution {distribution.id} {distribution.status.value}: "
            f"{distribution.sent_count} sent, {distribution.failed_count} failed, "
            f"{distribution.sent_amount}/{distribution.total_amount} sats"
        )

    # ========================================================================
    # RETRY & RECONCILIATION
    # ========================================================================

    async def retry_failed(self, actor_id: str, competition_id: str, reconcile_first: bool = True) -> Distribution:
        """
        Pay again only the recipients whose payment failed in the latest attempt.

        Args:
            actor_id: Who is retrying (must be the team captain)
            competition_id: Competition whose failed payments to retry
            reconcile_first: Look up failed payments before paying again

        Returns:
            The processed retry Distribution

        Raises:
            DistributionNotFoundError: competition has no distribution
            UnauthorizedError: actor is not the team captain
            NothingToRetryError: no failed recipients remain
            SettlementError: latest attempt is still in flight
        """
        latest = self.store.get_latest_distribution(competition_id)
        if latest is None:
            raise DistributionNotFoundError(f"No distribution for competition {competition_id}")

        await self._authorize(actor_id, latest.team_id)

        if reconcile_first:
            await self.reconcile(latest.id)

        async with self._lock_for(competition_id):
            latest = self.store.get_latest_distribution(competition_id)
            if not latest.status.is_terminal:
                raise SettlementError(f"Distribution {latest.id} is still {latest.status.value}")

            failed = latest.failed_recipients()
            if not failed:
                raise NothingToRetryError(f"No failed payments for competition {competition_id}")

            retry = Distribution(
                id=new_distribution_id(),
                competition_id=competition_id,
                team_id=latest.team_id,
                initiated_by=actor_id,
                recipients=[
                    RecipientPayment(recipient_id=r.recipient_id, amount_sats=r.amount_sats, rank=r.rank)
                    for r in failed
                ],
                retry_of=latest.id,
            )
            if not self.store.claim_retry(retry):
                raise AlreadyDistributedError(competition_id, latest.id)

        logger.info(f"Retrying {len(failed)} failed payments of {latest.id} as {retry.id}")
        return await self.process_distribution(retry.id)

    async def _reconcile_recipients(self, distribution: Distribution, recipients: List[RecipientPayment]) -> int:
        """Look recipients up at the gateway; mark confirmed ones sent. Returns how many changed."""
        changed = 0
        for recipient in recipients:
            try:
                result = await self.gateway.lookup_payment(recipient.payment_key)
            except Exception as e:
                logger.warning(f"Payment lookup for {recipient.recipient_id} failed: {e}")
                continue
            if result is not None and result.success:
                recipient.mark_sent(result.transaction_id, result.fee_paid, reconciled=True)
                changed += 1
                logger.info(
                    f"Reconciled late payment to {recipient.recipient_id} "
                    f"(distribution {distribution.id}, ref {recipient.transaction_ref})"
                )
        return changed

    async def reconcile(self, distribution_id: str) -> Distribution:
        """
        Record payments that succeeded after being marked failed.

        Only terminal distributions are reconciled; the status can only move
        towards "more paid" (failed -> partial/completed, partial -> completed).
        """
        distribution = self._require(distribution_id)

        async with self._lock_for(distribution.competition_id):
            distribution = self._require(distribution_id)
            if not distribution.status.is_terminal:
                return distribution

            failed = distribution.failed_recipients()
            if not failed:
                return distribution

            changed = await self._reconcile_recipients(distribution, failed)
            if changed:
                distribution.transition_to(distribution.outcome_status(), reconcile=True)
                self.store.complete_distribution(distribution)

        self._release_lock(distribution.competition_id)
        return distribution

    async def recover_unfinished(self) -> List[Distribution]:
        """
        Finish distributions left pending or processing (e.g. by a crash).

        Pending distributions are processed normally. Processing ones are not
        dispatched again: their pending recipients are looked up at the gateway,
        and anything unconfirmed is marked failed for an explicit retry.

        Returns:
            Distributions brought to a terminal status
        """
        recovered = []
        for distribution in self.store.list_unfinished():
            if distribution.status == DistributionStatus.PENDING:
                recovered.append(await self.process_distribution(distribution.id))
                continue

            async with self._lock_for(distribution.competition_id):
                distribution = self._require(distribution.id)
                if distribution.status != DistributionStatus.PROCESSING:
                    continue
                pending = [r for r in distribution.recipients if r.status == PaymentStatus.PENDING]
                await self._reconcile_recipients(distribution, pending)
                for recipient in pending:
                    if recipient.status == PaymentStatus.PENDING:
                        recipient.mark_failed(INTERRUPTED_ERROR)
                self._finish(distribution)
            recovered.append(distribution)

        if recovered:
            logger.info(f"Recovered {len(recovered)} unfinished distributions")
        return recovered

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_distribution(self, distribution_id: str) -> Optional[Distribution]:
        return self.store.get_distribution(distribution_id)

    def list_distributions(self, competition_id: str) -> List[Distribution]:
        return self.store.list_distributions(competition_id)

    def get_payout_status(self, competition_id: str) -> PayoutStatus:
        """
        Summarize payouts across the initial distribution and its retries.

        A recipient's state is taken from the latest attempt that includes it.
        """
        attempts = self.store.list_distributions(competition_id)
        latest: Dict[str, RecipientPayment] = {}
        for attempt in attempts:
            for recipient in attempt.recipients:
                latest[recipient.recipient_id] = recipient

        sent_amount = sum(r.amount_sats for r in latest.values() if r.status == PaymentStatus.SENT)
        total_amount = sum(r.amount_sats for r in latest.values())
        failed = sorted(rid for rid, r in latest.items() if r.status != PaymentStatus.SENT)

        return PayoutStatus(
            competition_id=competition_id,
            settled=self.store.is_settled(competition_id),
            paid=bool(latest) and not failed,
            distribution_count=len(attempts),
            total_amount=total_amount,
            sent_amount=sent_amount,
            failed_recipients=failed,
        )
