"""Ledger audit service: anchor credential mutations and answer audit queries.

How it works:
    1. The credential layer calls ``record()`` once per mutation with an
       ``OperationEvent``.
    2. The event is digested.  A ``DigestError`` aborts before any fee is
       spent.
    3. If an unconfirmed receipt for the same (user, digest) is already
       cached, it is re-queried instead of broadcasting again.
    4. Otherwise the digest is submitted through the ledger port.  Network
       failures are retried with exponential backoff; insufficient funds
       and reverts are raised to the caller with their reason.
    5. The receipt (confirmed, or pending if the wait timed out) is joined
       with the event, stored by transaction id and appended to the
       user's history.

Key design:
    - One service object per process owns the store, the history index
      and the sweeper thread; nothing lives in module globals.
    - A background thread evicts cache entries older than
      ``settings.cache_max_age`` every ``settings.eviction_interval`` s.
    - Only ledger calls block on I/O; store and history calls are
      in-process and lock-protected.
"""

import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterable, Iterator, Optional, Tuple

from ..core import EventSeverity, EventType, LedgerSettings, get_audit_logger
from .anchor_port import InMemoryLedger, LedgerAnchorPort
from .digest import digest as compute_digest
from .exceptions import LedgerSubmitError, NotFoundError
from .history import UserHistoryIndex
from .http_anchor import HttpLedgerGateway
from .models import (
    AnchorReceipt,
    AnchorStatus,
    DigestSource,
    OperationEvent,
    StoredOperation,
    Verification,
    utc_now,
)
from .operation_store import (
    InMemoryOperationStore,
    OperationStore,
    SQLiteOperationStore,
)
from .reconciler import Reconciler, Reconciliation, reconcile

logger = logging.getLogger(__name__)


# ── Tuning ──────────────────────────────────────────────────────────

INITIAL_BACKOFF_SEC = 1.0
BACKOFF_MULTIPLIER = 2.0


class LedgerAuditService:
    """Anchors credential mutations and serves audit lookups.

    Thread-safe: ``record()`` and the query methods may be called from
    many request handlers at once.

    Args:
        port: Ledger adapter used to anchor digests.
        store: Operation store (default: in-memory).
        history: Per-user history (default: ``settings.history_limit``).
        settings: Runtime settings (default: ``LedgerSettings()``).
        clock: Returns "now" for ``stored_at`` stamps.
        sleep: Backoff sleep between network retries.
    """

    def __init__(
        self,
        port: LedgerAnchorPort,
        store: Optional[OperationStore] = None,
        history: Optional[UserHistoryIndex] = None,
        settings: Optional[LedgerSettings] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._settings = settings or LedgerSettings()
        self._port = port
        # Explicit None checks: both define __len__, so an empty one is falsy
        self._store = store if store is not None else InMemoryOperationStore(clock=clock)
        self._history = (
            history if history is not None
            else UserHistoryIndex(self._settings.history_limit)
        )
        self._reconciler = Reconciler(self._store, self._history)
        self._clock = clock
        self._sleep = sleep
        self._audit = get_audit_logger()

        self._lock = threading.RLock()

        # (user_id, digest) -> [lock, holders]; serializes identical submissions
        self._inflight: Dict[Tuple[str, str], list] = {}

        # Stats
        self._recorded = 0
        self._duplicates = 0
        self._retries = 0
        self._failures = 0
        self._evicted = 0
        self._last_sweep: Optional[str] = None

        # Background sweeper
        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        """Start the background eviction sweeper."""
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._sweep_loop,
            name="ledger-eviction",
            daemon=True,
        )
        self._thread.start()
        self._audit.log_event(
            EventType.SYSTEM_START,
            EventSeverity.INFO,
            f"Ledger audit service started ({self._port.name} ledger)",
            details={"eviction_interval": self._settings.eviction_interval},
        )
        logger.info(
            "LedgerAuditService started (eviction every %.0fs, max age %s)",
            self._settings.eviction_interval,
            self._settings.cache_max_age,
        )

    def stop(self) -> None:
        """Stop the sweeper and release backend resources."""
        self._running = False
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._thread = None
        self._store.close()
        if isinstance(self._port, HttpLedgerGateway):
            self._port.close()
        self._audit.log_event(
            EventType.SYSTEM_STOP,
            EventSeverity.INFO,
            "Ledger audit service stopped",
        )
        logger.info("LedgerAuditService stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def settings(self) -> LedgerSettings:
        return self._settings

    # ── Producer interface ───────────────────────────────────────

    def record(
        self,
        user_id: str,
        event: OperationEvent,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[StoredOperation]:
        """Anchor *event* for *user_id* and cache the result.

        Returns the stored operation (its receipt may still be pending if
        the ledger did not confirm within *timeout*), or None when
        anchoring is disabled.

        Raises:
            DigestError: the event could not be digested.
            LedgerSubmitError: terminal ledger failure, or network failure
                after all retries.
        """
        if not self._settings.enabled:
            logger.debug("Ledger disabled, not anchoring %s", event.entity_id)
            return None

        digest_value = compute_digest(event)

        with self._submission_lock(user_id, digest_value):
            existing = self._store.find_pending(user_id, digest_value)
            if existing is not None:
                with self._lock:
                    self._duplicates += 1
                self._audit.log_anchor_event(
                    EventType.ANCHOR_DUPLICATE,
                    user_id,
                    existing.transaction_id,
                    digest_value,
                    details={"action": event.action.value},
                )
                return self.refresh(existing.transaction_id)

            receipt = self._submit_with_retry(user_id, digest_value, timeout, cancel)

            op = StoredOperation(receipt=receipt, event=event, stored_at=self._clock())
            self._store.put(receipt.transaction_id, op)
            history_size = self._history.append(user_id, op)
        with self._lock:
            self._recorded += 1

        if receipt.status is AnchorStatus.CONFIRMED:
            event_type, severity = EventType.ANCHOR_CONFIRMED, EventSeverity.INFO
        else:
            event_type, severity = EventType.ANCHOR_PENDING, EventSeverity.INVESTIGATE
        self._audit.log_anchor_event(
            event_type,
            user_id,
            receipt.transaction_id,
            digest_value,
            severity=severity,
            details={
                "action": event.action.value,
                "entity_id": event.entity_id,
                "block_number": receipt.block_number,
            },
        )
        self._audit.log_anchor_event(
            EventType.OPERATION_STORED,
            user_id,
            receipt.transaction_id,
            digest_value,
            details={"history_size": history_size},
        )
        return op

    @contextmanager
    def _submission_lock(self, user_id: str, digest_value: str) -> Iterator[None]:
        """Serialize record() calls for the same (user, digest)."""
        key = (user_id, digest_value)
        with self._lock:
            entry = self._inflight.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._inflight[key]

    def _submit_with_retry(
        self,
        user_id: str,
        digest_value: str,
        timeout: Optional[float],
        cancel: Optional[threading.Event],
    ) -> AnchorReceipt:
        """Submit with retry + exponential backoff on network failures."""
        attempts = self._settings.max_retries
        backoff = INITIAL_BACKOFF_SEC
        wait = self._settings.submit_timeout if timeout is None else timeout

        for attempt in range(1, attempts + 1):
            self._audit.log_anchor_event(
                EventType.ANCHOR_SUBMITTED, user_id, None, digest_value,
                details={"attempt": attempt},
            )
            try:
                return self._port.submit(
                    user_id,
                    digest_value,
                    timeout=wait,
                    poll_interval=self._settings.poll_interval,
                    cancel=cancel,
                )
            except LedgerSubmitError as exc:
                if exc.retryable and attempt < attempts:
                    with self._lock:
                        self._retries += 1
                    logger.warning(
                        "Ledger submit failed (%s), retrying in %.1fs "
                        "(attempt %d/%d)",
                        exc, backoff, attempt, attempts,
                    )
                    self._sleep(backoff)
                    backoff *= BACKOFF_MULTIPLIER
                    continue

                with self._lock:
                    self._failures += 1
                self._audit.log_anchor_event(
                    EventType.ANCHOR_FAILED,
                    user_id,
                    None,
                    digest_value,
                    severity=EventSeverity.ALERT,
                    details={"reason": exc.reason.value, "error": exc.message},
                )
                raise

    def refresh(self, transaction_id: str) -> StoredOperation:
        """Re-query the ledger for a pending operation's receipt.

        Raises:
            NotFoundError: the transaction is not cached, or the ledger
                does not know it.
        """
        op = self._store.get(transaction_id)
        if op.receipt.is_final:
            return op

        receipt = self._port.get_status(transaction_id)
        if receipt == op.receipt:
            return op

        op = self._store.update_receipt(transaction_id, receipt)
        self._history.update_receipt(op.user_id, receipt)

        if receipt.status is AnchorStatus.CONFIRMED:
            self._audit.log_anchor_event(
                EventType.ANCHOR_CONFIRMED, op.user_id, transaction_id, op.digest,
                details={"block_number": receipt.block_number},
            )
        elif receipt.status is AnchorStatus.FAILED:
            with self._lock:
                self._failures += 1
            self._audit.log_anchor_event(
                EventType.ANCHOR_FAILED, op.user_id, transaction_id, op.digest,
                severity=EventSeverity.ALERT,
                details={"error": receipt.error},
            )
        return op

    # ── Audit query interface ────────────────────────────────────

    def get_user_history(self, user_id: str) -> Tuple[StoredOperation, ...]:
        """Operations anchored for *user_id*, oldest first."""
        return self._history.list(user_id)

    def get_operation(self, transaction_id: str) -> StoredOperation:
        """Cached operation for *transaction_id* (raises NotFoundError)."""
        return self._store.get(transaction_id)

    def reconcile(
        self, digest_value: str, candidates: Iterable[OperationEvent]
    ) -> OperationEvent:
        """Match *digest_value* against caller-supplied candidates."""
        event = reconcile(digest_value, candidates)
        if event.is_unknown:
            self._log_reconcile_miss(digest_value)
        return event

    def resolve(
        self,
        digest: Optional[str] = None,
        transaction_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Reconciliation:
        """Indexed lookup first, digest matching over history as fallback."""
        result = self._reconciler.resolve(
            digest=digest, transaction_id=transaction_id, user_id=user_id
        )
        if not result.matched:
            self._log_reconcile_miss(digest or "", transaction_id, user_id)
        return result

    def verify(self, transaction_id: str, event: OperationEvent) -> Verification:
        """Check *event* against the digest anchored by *transaction_id*.

        The anchored digest is read back from the ledger.  The local cache
        is only used when the ledger cannot answer, and the result says
        which source was used.  A cached digest that disagrees with the
        ledger is reported as ``cache_consistent = False``.

        Raises:
            DigestError: *event* cannot be digested.
            NotFoundError: neither the ledger nor the cache know the
                transaction.
            LedgerSubmitError: the ledger is unreachable and nothing is
                cached.
        """
        current = compute_digest(event)

        try:
            cached: Optional[StoredOperation] = self._store.get(transaction_id)
        except NotFoundError:
            cached = None

        try:
            anchored: Optional[AnchorReceipt] = self._port.get_status(transaction_id)
        except (NotFoundError, LedgerSubmitError) as exc:
            if cached is None:
                raise
            logger.warning(
                "Ledger lookup for %s failed (%s), verifying against cache",
                transaction_id, exc,
            )
            anchored = None

        if anchored is not None:
            result = Verification(
                transaction_id=transaction_id,
                valid=current == anchored.digest,
                current_digest=current,
                anchored_digest=anchored.digest,
                source=DigestSource.LEDGER,
                block_number=anchored.block_number,
                cache_consistent=(
                    cached.digest == anchored.digest if cached is not None else None
                ),
            )
            user_id = anchored.user_id
        else:
            result = Verification(
                transaction_id=transaction_id,
                valid=current == cached.digest,
                current_digest=current,
                anchored_digest=cached.digest,
                source=DigestSource.CACHE,
                block_number=cached.receipt.block_number,
            )
            user_id = cached.user_id

        if not result.valid or result.cache_consistent is False:
            self._audit.log_anchor_event(
                EventType.VERIFY_FAILED,
                user_id,
                transaction_id,
                result.anchored_digest,
                severity=EventSeverity.CRITICAL,
                details={
                    "entity_id": event.entity_id,
                    "source": result.source.value,
                    "event_matches": result.valid,
                    "cache_consistent": result.cache_consistent,
                },
            )
        return result

    def latest_anchor(self, user_id: str) -> Optional[AnchorReceipt]:
        """Newest confirmed receipt the ledger holds for *user_id*."""
        return self._port.latest_anchor(user_id)

    def _log_reconcile_miss(
        self,
        digest_value: str,
        transaction_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        self._audit.log_event(
            EventType.RECONCILE_MISS,
            EventSeverity.INVESTIGATE,
            "Ledger: digest did not match any known operation",
            details={"digest": digest_value, "transaction_id": transaction_id},
            user_context={"user_id": user_id} if user_id else None,
        )

    # ── Eviction ─────────────────────────────────────────────────

    def sweep(self) -> int:
        """Evict cached operations older than ``settings.cache_max_age``."""
        evicted = self._store.evict_older_than(self._settings.cache_max_age)
        with self._lock:
            self._evicted += evicted
            self._last_sweep = utc_now().isoformat()
        if evicted:
            self._audit.log_event(
                EventType.CACHE_EVICTED,
                EventSeverity.INFO,
                f"Ledger: evicted {evicted} cached operations",
                details={"max_age_hours": self._settings.cache_max_age_hours},
            )
        return evicted

    def _sweep_loop(self) -> None:
        """Background thread: periodically evict expired cache entries."""
        while not self._stop_event.wait(timeout=self._settings.eviction_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Eviction sweep failed")

    # ── Introspection ────────────────────────────────────────────

    def get_status(self) -> Dict[str, object]:
        """Current service status."""
        with self._lock:
            stats = {
                "running": self._running,
                "enabled": self._settings.enabled,
                "operations_recorded": self._recorded,
                "duplicates_skipped": self._duplicates,
                "network_retries": self._retries,
                "submit_failures": self._failures,
                "operations_evicted": self._evicted,
                "last_sweep": self._last_sweep,
            }
        stats["cached_operations"] = len(self._store)
        stats["history_entries"] = len(self._history)
        stats["history_users"] = len(self._history.users())
        stats["ledger"] = self._port.get_stats()
        stats["ledger_reachable"] = self._port.health_check()
        return stats


def create_service(settings: Optional[LedgerSettings] = None) -> LedgerAuditService:
    """Build a service from settings (default: read from the environment).

    ``LEDGER_GATEWAY_URL`` selects the HTTP gateway, otherwise an
    in-process ledger is used; ``LEDGER_DB_PATH`` selects the SQLite
    store, otherwise the in-memory store.
    """
    settings = settings or LedgerSettings.from_env()

    port: LedgerAnchorPort
    if settings.gateway_url:
        port = HttpLedgerGateway(settings.gateway_url, api_key=settings.api_key)
    else:
        logger.warning("LEDGER_GATEWAY_URL not set, using in-process ledger")
        port = InMemoryLedger()

    store: OperationStore
    if settings.db_path:
        store = SQLiteOperationStore(settings.db_path)
    else:
        store = InMemoryOperationStore()

    return LedgerAuditService(port, store=store, settings=settings)
