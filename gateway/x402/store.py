# gateway/x402/store.py
"""
Single-use tracking for issued payment requirements.

Each paymentId moves through ISSUED -> CONSUMED or ISSUED -> EXPIRED, and
only ISSUED can be redeemed. consume() is the one place that performs the
ISSUED -> CONSUMED transition and it is atomic per paymentId, so two
concurrent requests presenting the same proof cannot both be let through.

Two backends:
- InMemoryPaymentStore: dict guarded by a lock (single process)
- SqlitePaymentStore: conditional UPDATE inside an IMMEDIATE transaction,
  survives restarts and can be shared between worker processes
"""
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from gateway.x402.models import PaymentRequirements

logger = logging.getLogger(__name__)


class RequirementStatus(Enum):
    ISSUED = "issued"
    CONSUMED = "consumed"
    EXPIRED = "expired"


class ConsumeOutcome(Enum):
    CONSUMED = "consumed"
    UNKNOWN = "unknown"
    EXPIRED = "expired"
    ALREADY_CONSUMED = "already_consumed"


@dataclass
class StoredRequirement:
    requirements: PaymentRequirements
    status: RequirementStatus

    def is_redeemable(self, now_ms: int) -> bool:
        return self.status is RequirementStatus.ISSUED and now_ms < self.requirements.expiresAt


class PaymentStore(ABC):
    """Keyed by paymentId; see module docstring for the state machine."""

    @abstractmethod
    def issue(self, requirements: PaymentRequirements) -> None:
        ...

    @abstractmethod
    def get(self, payment_id: str) -> Optional[StoredRequirement]:
        ...

    @abstractmethod
    def consume(self, payment_id: str, now_ms: int) -> ConsumeOutcome:
        """Atomically move an ISSUED, unexpired requirement to CONSUMED."""

    @abstractmethod
    def purge_expired(self, now_ms: int) -> int:
        """Drop ISSUED requirements past their expiry. Returns the count removed."""


class InMemoryPaymentStore(PaymentStore):
    def __init__(self):
        self._records: Dict[str, StoredRequirement] = {}
        self._lock = threading.Lock()

    def issue(self, requirements: PaymentRequirements) -> None:
        with self._lock:
            if requirements.paymentId in self._records:
                raise ValueError(f"Duplicate paymentId: {requirements.paymentId}")
            self._records[requirements.paymentId] = StoredRequirement(
                requirements=requirements, status=RequirementStatus.ISSUED
            )

    def get(self, payment_id: str) -> Optional[StoredRequirement]:
        with self._lock:
            record = self._records.get(payment_id)
            if record is None:
                return None
            return StoredRequirement(requirements=record.requirements, status=record.status)

    def consume(self, payment_id: str, now_ms: int) -> ConsumeOutcome:
        with self._lock:
            record = self._records.get(payment_id)
            if record is None:
                return ConsumeOutcome.UNKNOWN
            if record.status is RequirementStatus.CONSUMED:
                return ConsumeOutcome.ALREADY_CONSUMED
            if record.status is RequirementStatus.EXPIRED or now_ms >= record.requirements.expiresAt:
                record.status = RequirementStatus.EXPIRED
                return ConsumeOutcome.EXPIRED
            record.status = RequirementStatus.CONSUMED
            return ConsumeOutcome.CONSUMED

    def purge_expired(self, now_ms: int) -> int:
        with self._lock:
            stale = [
                payment_id for payment_id, record in self._records.items()
                if record.status is not RequirementStatus.CONSUMED
                and now_ms >= record.requirements.expiresAt
            ]
            for payment_id in stale:
                del self._records[payment_id]
            return len(stale)


_SQL_SCHEMA = """
CREATE TABLE IF NOT EXISTS payment_requirements (
  payment_id TEXT PRIMARY KEY,
  body_json  TEXT NOT NULL,
  status     TEXT NOT NULL,
  expires_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_requirements_expiry ON payment_requirements(status, expires_at);
"""


class SqlitePaymentStore(PaymentStore):
    """
    SQLite-backed store.

    The ISSUED -> CONSUMED transition is a single conditional UPDATE; the
    row count tells whether this caller won. Shared connection with
    check_same_thread=False, guarded by a re-entrant lock.
    """

    def __init__(self, path: str):
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._path = path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout=30000;")
        self._conn.executescript(_SQL_SCHEMA)

    def _begin(self) -> None:
        self._conn.execute("BEGIN IMMEDIATE;")

    def issue(self, requirements: PaymentRequirements) -> None:
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO payment_requirements(payment_id, body_json, status, expires_at) "
                    "VALUES(?,?,?,?)",
                    (
                        requirements.paymentId,
                        requirements.model_dump_json(),
                        RequirementStatus.ISSUED.value,
                        requirements.expiresAt,
                    ),
                )
            except sqlite3.IntegrityError:
                raise ValueError(f"Duplicate paymentId: {requirements.paymentId}")

    def get(self, payment_id: str) -> Optional[StoredRequirement]:
        with self._lock:
            row = self._conn.execute(
                "SELECT body_json, status FROM payment_requirements WHERE payment_id=?",
                (payment_id,),
            ).fetchone()
        if row is None:
            return None
        return StoredRequirement(
            requirements=PaymentRequirements.model_validate_json(row["body_json"]),
            status=RequirementStatus(row["status"]),
        )

    def consume(self, payment_id: str, now_ms: int) -> ConsumeOutcome:
        with self._lock:
            self._begin()
            try:
                cursor = self._conn.execute(
                    "UPDATE payment_requirements SET status=? "
                    "WHERE payment_id=? AND status=? AND expires_at > ?",
                    (
                        RequirementStatus.CONSUMED.value,
                        payment_id,
                        RequirementStatus.ISSUED.value,
                        now_ms,
                    ),
                )
                if cursor.rowcount == 1:
                    outcome = ConsumeOutcome.CONSUMED
                else:
                    outcome = self._explain_miss(payment_id)
                self._conn.execute("COMMIT;")
            except BaseException:
                self._conn.execute("ROLLBACK;")
                raise
        return outcome

    def _explain_miss(self, payment_id: str) -> ConsumeOutcome:
        row = self._conn.execute(
            "SELECT status FROM payment_requirements WHERE payment_id=?", (payment_id,)
        ).fetchone()
        if row is None:
            return ConsumeOutcome.UNKNOWN
        if row["status"] == RequirementStatus.CONSUMED.value:
            return ConsumeOutcome.ALREADY_CONSUMED
        self._conn.execute(
            "UPDATE payment_requirements SET status=? WHERE payment_id=?",
            (RequirementStatus.EXPIRED.value, payment_id),
        )
        return ConsumeOutcome.EXPIRED

    def purge_expired(self, now_ms: int) -> int:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM payment_requirements WHERE status != ? AND expires_at <= ?",
                (RequirementStatus.CONSUMED.value, now_ms),
            )
            return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def create_payment_store(backend: str, db_path: str) -> PaymentStore:
    """Build the store selected by X402_PAYMENT_STORE."""
    if backend == "sqlite":
        logger.info(f"x402: Using SQLite payment store at {db_path}")
        return SqlitePaymentStore(db_path)
    return InMemoryPaymentStore()
