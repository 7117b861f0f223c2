"""
fitsettle/tests/test_storage.py

Unit tests for settlement stores (memory and sqlite):
- Settlement fence (claim_settlement)
- Retry claims
- Completion and the rewards_distributed flag
- Round trips of distributions and recipient outcomes
"""

import sqlite3

import pytest

from fitsettle.protocol.distribution import (
    Distribution,
    DistributionStatus,
    RecipientPayment,
    PaymentStatus,
)
from fitsettle.protocol.storage import MemorySettlementStore, SqliteSettlementStore


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    if request.param == "memory":
        yield MemorySettlementStore()
    else:
        sqlite_store = SqliteSettlementStore(":memory:")
        yield sqlite_store
        sqlite_store.close()


def make_distribution(dist_id="dist-1", competition_id="comp-1", retry_of=None, recipients=None):
    if recipients is None:
        recipients = [
            RecipientPayment(recipient_id="alice", amount_sats=5000, rank=1),
            RecipientPayment(recipient_id="bob", amount_sats=3000, rank=2),
        ]
    return Distribution(
        id=dist_id,
        competition_id=competition_id,
        team_id="team-1",
        initiated_by="captain",
        recipients=recipients,
        retry_of=retry_of,
    )


def finish(distribution, *outcomes):
    """Apply ("sent"|"failed") outcomes in recipient order and close the batch."""
    distribution.transition_to(DistributionStatus.PROCESSING)
    for recipient, outcome in zip(distribution.recipients, outcomes):
        if outcome == "sent":
            recipient.mark_sent(f"tx-{recipient.recipient_id}", fee_paid=2)
        else:
            recipient.mark_failed("insufficient balance")
    distribution.transition_to(distribution.outcome_status())
    return distribution


# ============================================================================
# Settlement Fence Tests
# ============================================================================

class TestSettlementFence:
    """Tests for the once-per-competition guarantee."""

    def test_first_claim_succeeds(self, store):
        assert store.claim_settlement(make_distribution()) is True
        assert store.get_distribution("dist-1") is not None

    def test_second_claim_refused(self, store):
        assert store.claim_settlement(make_distribution("dist-1")) is True
        assert store.claim_settlement(make_distribution("dist-2")) is False
        assert store.get_distribution("dist-2") is None
        assert len(store.list_distributions("comp-1")) == 1

    def test_claims_are_per_competition(self, store):
        assert store.claim_settlement(make_distribution("dist-1", "comp-1")) is True
        assert store.claim_settlement(make_distribution("dist-2", "comp-2")) is True

    def test_not_settled_until_complete(self, store):
        distribution = make_distribution()
        store.claim_settlement(distribution)
        assert store.is_settled("comp-1") is False

        store.complete_distribution(finish(distribution, "sent", "sent"))
        assert store.is_settled("comp-1") is True

    def test_claim_refused_after_settled(self, store):
        distribution = make_distribution()
        store.claim_settlement(distribution)
        store.complete_distribution(finish(distribution, "sent", "failed"))

        assert store.claim_settlement(make_distribution("dist-2")) is False


# ============================================================================
# Retry Claim Tests
# ============================================================================

class TestRetryClaims:
    """Tests for retry attempt bookkeeping."""

    def test_retry_of_terminal_latest(self, store):
        first = make_distribution()
        store.claim_settlement(first)
        store.complete_distribution(finish(first, "sent", "failed"))

        retry = make_distribution("dist-2", retry_of="dist-1", recipients=[
            RecipientPayment(recipient_id="bob", amount_sats=3000, rank=2),
        ])
        assert store.claim_retry(retry) is True
        assert [d.id for d in store.list_distributions("comp-1")] == ["dist-1", "dist-2"]
        assert store.get_latest_distribution("comp-1").id == "dist-2"

    def test_retry_of_unfinished_refused(self, store):
        store.claim_settlement(make_distribution())
        assert store.claim_retry(make_distribution("dist-2", retry_of="dist-1")) is False

    def test_retry_of_stale_attempt_refused(self, store):
        first = make_distribution()
        store.claim_settlement(first)
        store.complete_distribution(finish(first, "failed", "failed"))

        assert store.claim_retry(make_distribution("dist-2", retry_of="dist-1")) is True
        assert store.claim_retry(make_distribution("dist-3", retry_of="dist-1")) is False

    def test_retry_without_distribution_refused(self, store):
        assert store.claim_retry(make_distribution("dist-2", retry_of="dist-1")) is False


# ============================================================================
# Persistence Tests
# ============================================================================

class TestPersistence:
    """Tests for stored state."""

    def test_round_trip(self, store):
        distribution = make_distribution()
        store.claim_settlement(distribution)
        store.complete_distribution(finish(distribution, "sent", "failed"))

        loaded = store.get_distribution("dist-1")
        assert loaded.status == DistributionStatus.PARTIAL
        assert loaded.completed_at is not None
        assert loaded.team_id == "team-1"
        assert loaded.initiated_by == "captain"

        alice, bob = loaded.recipients
        assert alice.status == PaymentStatus.SENT
        assert alice.transaction_ref == "tx-alice"
        assert alice.fee_paid == 2
        assert alice.payment_key == distribution.recipients[0].payment_key
        assert bob.status == PaymentStatus.FAILED
        assert bob.error == "insufficient balance"

    def test_returns_copies(self, store):
        distribution = make_distribution()
        store.claim_settlement(distribution)

        loaded = store.get_distribution("dist-1")
        loaded.recipients[0].mark_failed("tampered")

        assert store.get_distribution("dist-1").recipients[0].status == PaymentStatus.PENDING

    def test_save_checkpoint(self, store):
        distribution = make_distribution()
        store.claim_settlement(distribution)
        distribution.transition_to(DistributionStatus.PROCESSING)
        distribution.recipients[0].mark_sent("tx-1")
        store.save_distribution(distribution)

        loaded = store.get_distribution("dist-1")
        assert loaded.status == DistributionStatus.PROCESSING
        assert loaded.recipients[0].status == PaymentStatus.SENT
        assert loaded.recipients[1].status == PaymentStatus.PENDING

    def test_list_unfinished(self, store):
        done = make_distribution("dist-1", "comp-1")
        store.claim_settlement(done)
        store.complete_distribution(finish(done, "sent", "sent"))
        store.claim_settlement(make_distribution("dist-2", "comp-2"))

        assert [d.id for d in store.list_unfinished()] == ["dist-2"]

    def test_unknown_ids(self, store):
        assert store.get_distribution("nope") is None
        assert store.list_distributions("nope") == []
        assert store.get_latest_distribution("nope") is None


# ============================================================================
# Sqlite-only Tests
# ============================================================================

class TestSqliteStore:
    """Tests specific to the sqlite backend."""

    def test_survives_reopen(self, tmp_path):
        db_path = str(tmp_path / "nested" / "settlement.db")

        first = SqliteSettlementStore(db_path)
        distribution = make_distribution()
        first.claim_settlement(distribution)
        first.complete_distribution(finish(distribution, "sent", "sent"))
        first.close()

        second = SqliteSettlementStore(db_path)
        assert second.is_settled("comp-1") is True
        assert second.get_distribution("dist-1").status == DistributionStatus.COMPLETED
        assert second.claim_settlement(make_distribution("dist-2")) is False
        second.close()

    def test_busy_timeout(self, tmp_path):
        store = SqliteSettlementStore(str(tmp_path / "settlement.db"), busy_timeout=0.25)
        assert store._conn.execute("PRAGMA busy_timeout").fetchone()[0] == 250
        store.close()

    def test_locked_database_fails_after_busy_timeout(self, tmp_path):
        db_path = str(tmp_path / "settlement.db")
        store = SqliteSettlementStore(db_path, busy_timeout=0.05)
        other = sqlite3.connect(db_path, isolation_level=None)
        other.execute("BEGIN IMMEDIATE")

        with pytest.raises(sqlite3.OperationalError):
            store.claim_settlement(make_distribution())

        other.execute("ROLLBACK")
        other.close()
        assert store.claim_settlement(make_distribution()) is True
        store.close()
