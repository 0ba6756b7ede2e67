"""Operation store: transaction id -> anchored operation metadata.

Every confirmed or pending anchoring is cached here so an audit query can
turn a bare transaction id back into "who did what to which credential".
Entries are removed only by the age-based eviction sweep.

Two backends share one API:
    - ``InMemoryOperationStore``: lock-striped dicts, process lifetime only
    - ``SQLiteOperationStore``: WAL-mode SQLite file, survives restarts
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

from .exceptions import DuplicateOperationError, NotFoundError
from .models import (
    AnchorReceipt,
    AnchorStatus,
    OperationEvent,
    StoredOperation,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(hours=24)
DEFAULT_STRIPES = 16

Clock = Callable[[], datetime]


class OperationStore(ABC):
    """Digest-indexed cache of anchored operations, keyed by transaction id."""

    @abstractmethod
    def put(self, transaction_id: str, op: StoredOperation) -> None:
        """Insert *op*.

        Raises:
            DuplicateOperationError: *transaction_id* is already stored.
        """

    @abstractmethod
    def get(self, transaction_id: str) -> StoredOperation:
        """Return the stored operation.

        Raises:
            NotFoundError: no entry for *transaction_id*.
        """

    @abstractmethod
    def evict_older_than(
        self, max_age: timedelta = DEFAULT_MAX_AGE, now: Optional[datetime] = None
    ) -> int:
        """Remove entries whose ``stored_at`` age exceeds *max_age*.

        Returns the number of entries removed.
        """

    @abstractmethod
    def find_pending(self, user_id: str, digest: str) -> Optional[StoredOperation]:
        """Return an unconfirmed operation with the same user and digest."""

    @abstractmethod
    def update_receipt(self, transaction_id: str, receipt: AnchorReceipt) -> StoredOperation:
        """Replace the receipt of an existing entry (pending -> final)."""

    @abstractmethod
    def __len__(self) -> int:
        ...

    def __contains__(self, transaction_id: object) -> bool:
        if not isinstance(transaction_id, str):
            return False
        try:
            self.get(transaction_id)
        except NotFoundError:
            return False
        return True

    def close(self) -> None:
        """Release backend resources (no-op by default)."""

    @staticmethod
    def _check_receipt(transaction_id: str, receipt: AnchorReceipt) -> None:
        if receipt.transaction_id != transaction_id:
            raise ValueError(
                f"Receipt is for {receipt.transaction_id!r}, not {transaction_id!r}"
            )


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ── In-memory backend ───────────────────────────────────────────────


class _Stripe:
    """One shard of the in-memory store with its own lock."""

    __slots__ = ("lock", "entries")

    def __init__(self):
        self.lock = threading.Lock()
        self.entries: Dict[str, StoredOperation] = {}


class InMemoryOperationStore(OperationStore):
    """Thread-safe in-memory operation store.

    Keys are spread over ``stripes`` independently locked shards, so puts
    and gets for different transaction ids rarely contend.  The eviction
    sweep locks one shard at a time and never exposes a half-built entry:
    values are inserted and removed as whole objects.

    Args:
        stripes: Number of lock shards.
        clock: Returns "now" for eviction (injectable for tests).
    """

    def __init__(self, stripes: int = DEFAULT_STRIPES, clock: Clock = utc_now):
        if stripes < 1:
            raise ValueError("stripes must be at least 1")
        self._stripes = [_Stripe() for _ in range(stripes)]
        self._clock = clock

        # (user_id, digest) -> transaction id of an unconfirmed receipt
        self._pending_lock = threading.Lock()
        self._pending: Dict[Tuple[str, str], str] = {}

    def _stripe(self, transaction_id: str) -> _Stripe:
        return self._stripes[hash(transaction_id) % len(self._stripes)]

    def put(self, transaction_id: str, op: StoredOperation) -> None:
        self._check_receipt(transaction_id, op.receipt)
        stripe = self._stripe(transaction_id)
        with stripe.lock:
            if transaction_id in stripe.entries:
                raise DuplicateOperationError(
                    f"Operation {transaction_id} is already stored"
                )
            stripe.entries[transaction_id] = op
            if op.receipt.status is AnchorStatus.PENDING:
                with self._pending_lock:
                    self._pending[(op.user_id, op.digest)] = transaction_id

    def get(self, transaction_id: str) -> StoredOperation:
        stripe = self._stripe(transaction_id)
        with stripe.lock:
            op = stripe.entries.get(transaction_id)
        if op is None:
            raise NotFoundError(f"Operation {transaction_id} not found")
        return op

    def find_pending(self, user_id: str, digest: str) -> Optional[StoredOperation]:
        with self._pending_lock:
            transaction_id = self._pending.get((user_id, digest))
        if transaction_id is None:
            return None
        try:
            op = self.get(transaction_id)
        except NotFoundError:
            return None
        if op.receipt.status is not AnchorStatus.PENDING:
            return None
        return op

    def update_receipt(self, transaction_id: str, receipt: AnchorReceipt) -> StoredOperation:
        self._check_receipt(transaction_id, receipt)
        stripe = self._stripe(transaction_id)
        with stripe.lock:
            op = stripe.entries.get(transaction_id)
            if op is None:
                raise NotFoundError(f"Operation {transaction_id} not found")
            op.receipt = receipt
            if receipt.is_final:
                self._drop_pending(op)
        return op

    def evict_older_than(
        self, max_age: timedelta = DEFAULT_MAX_AGE, now: Optional[datetime] = None
    ) -> int:
        now = _as_utc(now or self._clock())
        evicted = 0
        for stripe in self._stripes:
            with stripe.lock:
                expired = [
                    tx for tx, op in stripe.entries.items()
                    if now - _as_utc(op.stored_at) > max_age
                ]
                for tx in expired:
                    self._drop_pending(stripe.entries.pop(tx))
            evicted += len(expired)
        if evicted:
            logger.debug("Evicted %d operations older than %s", evicted, max_age)
        return evicted

    def _drop_pending(self, op: StoredOperation) -> None:
        key = (op.user_id, op.digest)
        with self._pending_lock:
            if self._pending.get(key) == op.transaction_id:
                del self._pending[key]

    def __len__(self) -> int:
        total = 0
        for stripe in self._stripes:
            with stripe.lock:
                total += len(stripe.entries)
        return total


# ── SQLite backend ──────────────────────────────────────────────────

_CREATE_OPERATIONS = """
CREATE TABLE IF NOT EXISTS ledger_operations (
    transaction_id  TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    digest          TEXT NOT NULL,
    status          TEXT NOT NULL,
    block_number    INTEGER,
    error           TEXT,
    gas_used        INTEGER,
    event_json      TEXT NOT NULL,
    stored_at       REAL NOT NULL
);
"""

_CREATE_USER_DIGEST_IDX = """
CREATE INDEX IF NOT EXISTS idx_ledger_user_digest
    ON ledger_operations (user_id, digest, status);
"""

_CREATE_STORED_AT_IDX = """
CREATE INDEX IF NOT EXISTS idx_ledger_stored_at
    ON ledger_operations (stored_at);
"""

_SELECT_COLUMNS = (
    "transaction_id, user_id, digest, status, block_number, error, "
    "gas_used, event_json, stored_at"
)


def _event_to_json(event: OperationEvent) -> str:
    data = event.to_dict()
    if isinstance(event.timestamp, datetime):
        data["timestampType"] = "datetime"
    return json.dumps(data, sort_keys=True)


def _event_from_json(raw: str) -> OperationEvent:
    data: Dict[str, Any] = json.loads(raw)
    timestamp = data["timestamp"]
    if data.get("timestampType") == "datetime":
        timestamp = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    return OperationEvent(
        action=data["action"],
        entity_id=data["entityId"],
        timestamp=timestamp,
        resource=data["resource"],
        title=data.get("title"),
        category=data.get("category"),
        has_url=data.get("hasUrl"),
    )


class SQLiteOperationStore(OperationStore):
    """SQLite-backed operation store.

    Each call opens, uses, and closes a connection (WAL mode, so readers
    do not block the writer).  The transaction id is the primary key;
    inserting it twice raises :class:`DuplicateOperationError`.

    Args:
        db_path: Path to the SQLite database file.  Created if missing.
        clock: Returns "now" for eviction (injectable for tests).
    """

    def __init__(self, db_path: Union[str, Path], clock: Clock = utc_now):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def _init_schema(self) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(_CREATE_OPERATIONS)
                conn.execute(_CREATE_USER_DIGEST_IDX)
                conn.execute(_CREATE_STORED_AT_IDX)
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def put(self, transaction_id: str, op: StoredOperation) -> None:
        self._check_receipt(transaction_id, op.receipt)
        receipt = op.receipt
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f"""
                    INSERT INTO ledger_operations ({_SELECT_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        transaction_id,
                        receipt.user_id,
                        receipt.digest,
                        receipt.status.value,
                        receipt.block_number,
                        receipt.error,
                        receipt.gas_used,
                        _event_to_json(op.event),
                        _as_utc(op.stored_at).timestamp(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateOperationError(
                f"Operation {transaction_id} is already stored"
            ) from exc
        finally:
            conn.close()

    def get(self, transaction_id: str) -> StoredOperation:
        row = self._fetch_one(
            f"SELECT {_SELECT_COLUMNS} FROM ledger_operations WHERE transaction_id = ?",
            (transaction_id,),
        )
        if row is None:
            raise NotFoundError(f"Operation {transaction_id} not found")
        return self._row_to_operation(row)

    def find_pending(self, user_id: str, digest: str) -> Optional[StoredOperation]:
        row = self._fetch_one(
            f"""
            SELECT {_SELECT_COLUMNS} FROM ledger_operations
            WHERE user_id = ? AND digest = ? AND status = ?
            ORDER BY stored_at DESC
            LIMIT 1
            """,
            (user_id, digest, AnchorStatus.PENDING.value),
        )
        return self._row_to_operation(row) if row else None

    def update_receipt(self, transaction_id: str, receipt: AnchorReceipt) -> StoredOperation:
        self._check_receipt(transaction_id, receipt)
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute(
                    """
                    UPDATE ledger_operations
                    SET status = ?, block_number = ?, error = ?, gas_used = ?
                    WHERE transaction_id = ?
                    """,
                    (
                        receipt.status.value,
                        receipt.block_number,
                        receipt.error,
                        receipt.gas_used,
                        transaction_id,
                    ),
                )
        finally:
            conn.close()
        if cur.rowcount == 0:
            raise NotFoundError(f"Operation {transaction_id} not found")
        return self.get(transaction_id)

    def evict_older_than(
        self, max_age: timedelta = DEFAULT_MAX_AGE, now: Optional[datetime] = None
    ) -> int:
        cutoff = (_as_utc(now or self._clock()) - max_age).timestamp()
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute(
                    "DELETE FROM ledger_operations WHERE stored_at < ?", (cutoff,)
                )
        finally:
            conn.close()
        return cur.rowcount

    def __len__(self) -> int:
        row = self._fetch_one("SELECT COUNT(*) FROM ledger_operations", ())
        return row[0] if row else 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fetch_one(self, sql: str, params: tuple) -> Optional[tuple]:
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchone()
        finally:
            conn.close()

    @staticmethod
    def _row_to_operation(row: tuple) -> StoredOperation:
        (tx, user_id, digest, status, block, error, gas, event_json, stored_at) = row
        receipt = AnchorReceipt(
            transaction_id=tx,
            user_id=user_id,
            digest=digest,
            status=AnchorStatus(status),
            block_number=block,
            error=error,
            gas_used=gas,
        )
        return StoredOperation(
            receipt=receipt,
            event=_event_from_json(event_json),
            stored_at=datetime.fromtimestamp(stored_at, tz=timezone.utc),
        )
