"""
fitsettle/protocol/storage.py

Settlement store: persistence of distributions, recipient payments and the
per-competition settlement fence.

Two backends:
1. MemorySettlementStore - in-process, for tests and single-process runs
2. SqliteSettlementStore - durable audit trail

Both guarantee that claim_settlement() is an atomic check-and-set: at most
one initial distribution can ever be created per competition, and the
rewards_distributed flag is written in the same transaction that records a
distribution's terminal status.
"""

import os
import sqlite3
import threading
import time
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from .distribution import Distribution, DistributionStatus, RecipientPayment, PaymentStatus

logger = logging.getLogger("fitsettle.protocol.storage")

# Longest a write blocks on a database locked by another process
SQLITE_BUSY_TIMEOUT_SECONDS = 2.0


# ============================================================================
# STORE INTERFACE
# ============================================================================

class SettlementStore(ABC):
    """Abstract base class for settlement stores."""

    @abstractmethod
    def is_settled(self, competition_id: str) -> bool:
        """True once the competition's rewards_distributed flag is set."""
        pass

    @abstractmethod
    def claim_settlement(self, distribution: Distribution) -> bool:
        """
        Atomically record the first distribution of a competition.

        Returns False (and stores nothing) when the competition is already
        settled or already has an initial distribution.
        """
        pass

    @abstractmethod
    def claim_retry(self, distribution: Distribution) -> bool:
        """
        Atomically record a retry attempt.

        Succeeds only if distribution.retry_of is the competition's latest
        attempt and that attempt is terminal.
        """
        pass

    @abstractmethod
    def save_distribution(self, distribution: Distribution) -> None:
        """Persist status and recipient outcomes of a known distribution."""
        pass

    @abstractmethod
    def complete_distribution(self, distribution: Distribution) -> None:
        """Persist a terminal distribution and set the settlement flag together."""
        pass

    @abstractmethod
    def get_distribution(self, distribution_id: str) -> Optional[Distribution]:
        pass

    @abstractmethod
    def list_distributions(self, competition_id: str) -> List[Distribution]:
        """All attempts for a competition, oldest first."""
        pass

    def get_latest_distribution(self, competition_id: str) -> Optional[Distribution]:
        attempts = self.list_distributions(competition_id)
        return attempts[-1] if attempts else None

    @abstractmethod
    def list_unfinished(self) -> List[Distribution]:
        """Distributions still pending or processing (e.g. after a crash)."""
        pass


# ============================================================================
# MEMORY BACKEND
# ============================================================================

class MemorySettlementStore(SettlementStore):
    """In-memory settlement store. Stores copies, never live objects."""

    def __init__(self):
        self._lock = threading.Lock()
        self._distributions: Dict[str, dict] = {}
        self._order: List[str] = []
        self._settled: Dict[str, int] = {}  # competition_id -> settled_at

    def _attempts(self, competition_id: str) -> List[dict]:
        return [
            self._distributions[d] for d in self._order
            if self._distributions[d]["competition_id"] == competition_id
        ]

    def is_settled(self, competition_id: str) -> bool:
        with self._lock:
            return competition_id in self._settled

    def claim_settlement(self, distribution: Distribution) -> bool:
        with self._lock:
            if distribution.competition_id in self._settled:
                return False
            if self._attempts(distribution.competition_id):
                return False
            self._distributions[distribution.id] = distribution.to_dict()
            self._order.append(distribution.id)
            return True

    def claim_retry(self, distribution: Distribution) -> bool:
        with self._lock:
            attempts = self._attempts(distribution.competition_id)
            if not attempts:
                return False
            latest = attempts[-1]
            if latest["id"] != distribution.retry_of:
                return False
            if not DistributionStatus(latest["status"]).is_terminal:
                return False
            self._distributions[distribution.id] = distribution.to_dict()
            self._order.append(distribution.id)
            return True

    def save_distribution(self, distribution: Distribution) -> None:
        with self._lock:
            if distribution.id not in self._distributions:
                self._order.append(distribution.id)
            self._distributions[distribution.id] = distribution.to_dict()

    def complete_distribution(self, distribution: Distribution) -> None:
        with self._lock:
            if distribution.id not in self._distributions:
                self._order.append(distribution.id)
            self._distributions[distribution.id] = distribution.to_dict()
            self._settled.setdefault(distribution.competition_id, int(time.time()))

    def get_distribution(self, distribution_id: str) -> Optional[Distribution]:
        with self._lock:
            data = self._distributions.get(distribution_id)
            return Distribution.from_dict(data) if data else None

    def list_distributions(self, competition_id: str) -> List[Distribution]:
        with self._lock:
            return [Distribution.from_dict(d) for d in self._attempts(competition_id)]

    def list_unfinished(self) -> List[Distribution]:
        with self._lock:
            return [
                Distribution.from_dict(self._distributions[d]) for d in self._order
                if not DistributionStatus(self._distributions[d]["status"]).is_terminal
            ]


# ============================================================================
# SQLITE BACKEND
# ============================================================================

class SqliteSettlementStore(SettlementStore):
    """
    Sqlite settlement store.

    Uses one connection guarded by a lock; the fence relies on
    BEGIN IMMEDIATE so concurrent writers (other processes included)
    serialize on the database write lock.

    Calls are synchronous and run on the caller's thread, which under the
    orchestrator is the trio event loop. A write that finds the database
    locked by another process blocks the loop for up to busy_timeout
    seconds before sqlite3.OperationalError is raised; keep the file on
    local disk and owned by one settlement process.
    """

    def __init__(self, db_path: str = ":memory:", busy_timeout: float = SQLITE_BUSY_TIMEOUT_SECONDS):
        """
        Initialize the store and create tables.

        Args:
            db_path: Sqlite file path, or ":memory:"
            busy_timeout: Seconds a write waits on another connection's lock
        """
        if db_path != ":memory:":
            directory = os.path.dirname(db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(
            db_path, timeout=busy_timeout, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self.initialize_tables()

    def initialize_tables(self) -> None:
        """Create settlement tables."""
        with self._lock:
            conn = self._conn

            # =================================================================
            # SETTLEMENT FENCE
            # =================================================================
            conn.execute("""
                CREATE TABLE IF NOT EXISTS competition_settlements (
                    competition_id TEXT PRIMARY KEY,
                    rewards_distributed INTEGER NOT NULL DEFAULT 0,
                    distribution_id TEXT,
                    settled_at INTEGER
                )
            """)

            # =================================================================
            # DISTRIBUTIONS
            # =================================================================
            conn.execute("""
                CREATE TABLE IF NOT EXISTS distributions (
                    distribution_id TEXT PRIMARY KEY,
                    competition_id TEXT NOT NULL,
                    team_id TEXT NOT NULL,
                    initiated_by TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at INTEGER NOT NULL,
                    completed_at INTEGER,
                    retry_of TEXT,
                    seq INTEGER NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_distributions_competition
                ON distributions(competition_id, seq)
            """)

            # =================================================================
            # RECIPIENT PAYMENTS
            # =================================================================
            conn.execute("""
                CREATE TABLE IF NOT EXISTS recipient_payments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    distribution_id TEXT NOT NULL,
                    recipient_id TEXT NOT NULL,
                    amount_sats INTEGER NOT NULL,
                    rank INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'pending',
                    transaction_ref TEXT,
                    fee_paid INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    payment_key TEXT NOT NULL,
                    reconciled INTEGER NOT NULL DEFAULT 0,
                    paid_at INTEGER,
                    FOREIGN KEY (distribution_id) REFERENCES distributions(distribution_id),
                    UNIQUE (distribution_id, recipient_id)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_recipient_payments_distribution
                ON recipient_payments(distribution_id)
            """)

        logger.debug(f"Settlement tables initialized ({self.db_path})")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # ------------------------------------------------------------------------

    def _insert_distribution(self, distribution: Distribution) -> None:
        conn = self._conn
        seq = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM distributions").fetchone()[0]
        conn.execute(
            """
            INSERT INTO distributions
                (distribution_id, competition_id, team_id, initiated_by, status,
                 created_at, completed_at, retry_of, seq)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                distribution.id, distribution.competition_id, distribution.team_id,
                distribution.initiated_by, distribution.status.value,
                distribution.created_at, distribution.completed_at,
                distribution.retry_of, seq,
            ),
        )
        for recipient in distribution.recipients:
            conn.execute(
                """
                INSERT INTO recipient_payments
                    (distribution_id, recipient_id, amount_sats, rank, status,
                     transaction_ref, fee_paid, error, payment_key, reconciled, paid_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    distribution.id, recipient.recipient_id, recipient.amount_sats,
                    recipient.rank, recipient.status.value, recipient.transaction_ref,
                    recipient.fee_paid, recipient.error, recipient.payment_key,
                    int(recipient.reconciled), recipient.paid_at,
                ),
            )

    def _update_distribution(self, distribution: Distribution) -> None:
        conn = self._conn
        conn.execute(
            "UPDATE distributions SET status = ?, completed_at = ? WHERE distribution_id = ?",
            (distribution.status.value, distribution.completed_at, distribution.id),
        )
        for recipient in distribution.recipients:
            conn.execute(
                """
                UPDATE recipient_payments
                SET status = ?, transaction_ref = ?, fee_paid = ?, error = ?,
                    reconciled = ?, paid_at = ?
                WHERE distribution_id = ? AND recipient_id = ?
                """,
                (
                    recipient.status.value, recipient.transaction_ref, recipient.fee_paid,
                    recipient.error, int(recipient.reconciled), recipient.paid_at,
                    distribution.id, recipient.recipient_id,
                ),
            )

    def _exists(self, distribution_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM distributions WHERE distribution_id = ?", (distribution_id,)
        ).fetchone()
        return row is not None

    def _load(self, row: sqlite3.Row) -> Distribution:
        recipients = [
            RecipientPayment(
                recipient_id=r["recipient_id"],
                amount_sats=r["amount_sats"],
                rank=r["rank"],
                status=PaymentStatus(r["status"]),
                transaction_ref=r["transaction_ref"],
                fee_paid=r["fee_paid"],
                error=r["error"],
                payment_key=r["payment_key"],
                reconciled=bool(r["reconciled"]),
                paid_at=r["paid_at"],
            )
            for r in self._conn.execute(
                "SELECT * FROM recipient_payments WHERE distribution_id = ? ORDER BY id",
                (row["distribution_id"],),
            )
        ]
        return Distribution(
            id=row["distribution_id"],
            competition_id=row["competition_id"],
            team_id=row["team_id"],
            initiated_by=row["initiated_by"],
            recipients=recipients,
            status=DistributionStatus(row["status"]),
            created_at=row["created_at"],
            completed_at=row["completed_at"],
            retry_of=row["retry_of"],
        )

    def _transaction(self, work) -> bool:
        conn = self._conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            result = work()
        except Exception:
            conn.execute("ROLLBACK")
            raise
        if result:
            conn.execute("COMMIT")
        else:
            conn.execute("ROLLBACK")
        return bool(result)

    # ------------------------------------------------------------------------
    # SettlementStore API
    # ------------------------------------------------------------------------

    def is_settled(self, competition_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT rewards_distributed FROM competition_settlements WHERE competition_id = ?",
                (competition_id,),
            ).fetchone()
            return bool(row and row["rewards_distributed"])

    def claim_settlement(self, distribution: Distribution) -> bool:
        def work() -> bool:
            row = self._conn.execute(
                "SELECT rewards_distributed, distribution_id FROM competition_settlements "
                "WHERE competition_id = ?",
                (distribution.competition_id,),
            ).fetchone()
            if row is not None:
                return False
            self._conn.execute(
                "INSERT INTO competition_settlements "
                "(competition_id, rewards_distributed, distribution_id) VALUES (?, 0, ?)",
                (distribution.competition_id, distribution.id),
            )
            self._insert_distribution(distribution)
            return True

        with self._lock:
            return self._transaction(work)

    def claim_retry(self, distribution: Distribution) -> bool:
        def work() -> bool:
            latest = self._conn.execute(
                "SELECT distribution_id, status FROM distributions "
                "WHERE competition_id = ? ORDER BY seq DESC LIMIT 1",
                (distribution.competition_id,),
            ).fetchone()
            if latest is None or latest["distribution_id"] != distribution.retry_of:
                return False
            if not DistributionStatus(latest["status"]).is_terminal:
                return False
            self._insert_distribution(distribution)
            return True

        with self._lock:
            return self._transaction(work)

    def save_distribution(self, distribution: Distribution) -> None:
        def work() -> bool:
            if self._exists(distribution.id):
                self._update_distribution(distribution)
            else:
                self._insert_distribution(distribution)
            return True

        with self._lock:
            self._transaction(work)

    def complete_distribution(self, distribution: Distribution) -> None:
        def work() -> bool:
            if self._exists(distribution.id):
                self._update_distribution(distribution)
            else:
                self._insert_distribution(distribution)
            self._conn.execute(
                """
                INSERT INTO competition_settlements
                    (competition_id, rewards_distributed, distribution_id, settled_at)
                VALUES (?, 1, ?, ?)
                ON CONFLICT(competition_id) DO UPDATE SET
                    rewards_distributed = 1,
                    settled_at = COALESCE(competition_settlements.settled_at, excluded.settled_at)
                """,
                (distribution.competition_id, distribution.id, int(time.time())),
            )
            return True

        with self._lock:
            self._transaction(work)

    def get_distribution(self, distribution_id: str) -> Optional[Distribution]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM distributions WHERE distribution_id = ?", (distribution_id,)
            ).fetchone()
            return self._load(row) if row else None

    def list_distributions(self, competition_id: str) -> List[Distribution]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM distributions WHERE competition_id = ? ORDER BY seq",
                (competition_id,),
            ).fetchall()
            return [self._load(row) for row in rows]

    def list_unfinished(self) -> List[Distribution]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM distributions WHERE status IN (?, ?) ORDER BY seq",
                (DistributionStatus.PENDING.value, DistributionStatus.PROCESSING.value),
            ).fetchall()
            return [self._load(row) for row in rows]
