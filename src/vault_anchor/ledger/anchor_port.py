# Ledger Anchor Port - Contract for the external ledger
#
# Defines the LedgerAnchorPort abstract base class that every ledger
# adapter (HTTP gateway, in-process ledger for development and tests)
# must implement.  Adapters only broadcast and query; the confirmation
# wait with timeout lives here so every adapter behaves the same way.

import hashlib
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional

from .exceptions import LedgerSubmitError, NotFoundError, SubmitFailure
from .models import AnchorReceipt, AnchorStatus

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0


class LedgerAnchorPort(ABC):
    """Abstract boundary to an append-only, fee-metered ledger.

    Lifecycle of one anchoring:
        1. ``broadcast()`` sends the transaction and returns a pending receipt
        2. ``get_status()`` is polled until the receipt is confirmed or failed
        3. ``submit()`` wraps both with a caller-specified timeout

    A broadcast cannot be retracted.  Cancelling or timing out ``submit()``
    only stops the local wait; the caller keeps the pending receipt and
    can query ``get_status()`` later.
    """

    def __init__(self, name: str):
        self.name = name
        self._stats_lock = threading.Lock()
        self._broadcast_count = 0
        self._confirmed_count = 0
        self._error_count = 0
        self._last_broadcast: Optional[str] = None

    # ------------------------------------------------------------------
    # Abstract interface
    # ------------------------------------------------------------------

    @abstractmethod
    def broadcast(self, user_id: str, digest: str) -> AnchorReceipt:
        """Send an anchoring transaction for (*user_id*, *digest*).

        Returns:
            A receipt carrying the new transaction id, normally pending.

        Raises:
            LedgerSubmitError: network (retryable), insufficient funds or
                revert (terminal).
        """

    @abstractmethod
    def get_status(self, transaction_id: str) -> AnchorReceipt:
        """Return the current receipt for *transaction_id* (idempotent).

        Raises:
            NotFoundError: the ledger does not know the transaction.
            LedgerSubmitError: the ledger could not be reached.
        """

    @abstractmethod
    def latest_anchor(self, user_id: str) -> Optional[AnchorReceipt]:
        """Newest confirmed receipt anchored for *user_id*, or None.

        Raises:
            LedgerSubmitError: the ledger could not be reached.
        """

    def health_check(self) -> bool:
        """Return True if the ledger is reachable."""
        return True

    # ------------------------------------------------------------------
    # Submission with confirmation wait
    # ------------------------------------------------------------------

    def submit(
        self,
        user_id: str,
        digest: str,
        timeout: Optional[float] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        cancel: Optional[threading.Event] = None,
    ) -> AnchorReceipt:
        """Broadcast *digest* and wait for it to be confirmed.

        Args:
            user_id: Acting user.
            digest: Hex digest to anchor.
            timeout: Seconds to wait for a final status.  ``None`` waits
                until the ledger answers.  On expiry the pending receipt
                is returned.
            poll_interval: Seconds between ``get_status()`` calls.
            cancel: Setting this event stops the wait early (the
                transaction stays broadcast).

        Raises:
            LedgerSubmitError: broadcast failed, or the transaction was
                mined but reverted.
        """
        try:
            receipt = self.broadcast(user_id, digest)
        except LedgerSubmitError:
            self.record_error()
            raise
        self.record_broadcast()

        deadline = None if timeout is None else time.monotonic() + timeout
        waiter = cancel or threading.Event()

        while not receipt.is_final:
            wait = poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                wait = min(wait, remaining)
            if waiter.wait(wait):
                break
            receipt = self._poll(receipt)

        if receipt.status is AnchorStatus.FAILED:
            self.record_error()
            raise LedgerSubmitError(
                SubmitFailure.REVERTED,
                receipt.error or f"transaction {receipt.transaction_id} reverted",
            )
        if receipt.status is AnchorStatus.CONFIRMED:
            self.record_confirmed()
        return receipt

    def _poll(self, pending: AnchorReceipt) -> AnchorReceipt:
        """Query status once; transient failures keep the receipt pending."""
        try:
            return self.get_status(pending.transaction_id)
        except NotFoundError:
            # Freshly broadcast transactions can lag behind the node index.
            return pending
        except LedgerSubmitError as exc:
            if not exc.retryable:
                raise
            logger.warning(
                "%s status poll for %s failed (%s), still waiting",
                self.name, pending.transaction_id, exc,
            )
            return pending

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def record_broadcast(self) -> None:
        with self._stats_lock:
            self._broadcast_count += 1
            self._last_broadcast = datetime.now(timezone.utc).isoformat()

    def record_confirmed(self) -> None:
        with self._stats_lock:
            self._confirmed_count += 1

    def record_error(self) -> None:
        with self._stats_lock:
            self._error_count += 1

    def get_stats(self) -> Dict[str, object]:
        """Return adapter statistics."""
        with self._stats_lock:
            return {
                "name": self.name,
                "last_broadcast": self._last_broadcast,
                "total_broadcasts": self._broadcast_count,
                "total_confirmed": self._confirmed_count,
                "total_errors": self._error_count,
            }


class InMemoryLedger(LedgerAnchorPort):
    """In-process ledger for development and tests.

    Transactions get deterministic ``0x``-prefixed ids and sequential
    block numbers.  A transaction confirms after ``confirm_after`` status
    queries (0 = confirmed at broadcast).  Failures can be queued with
    ``fail_next()``: REVERTED lets the broadcast through and fails it on
    confirmation, every other reason raises at broadcast.

    Usage::

        ledger = InMemoryLedger(confirm_after=2)
        receipt = ledger.submit("u1", digest, timeout=5, poll_interval=0.01)
    """

    def __init__(
        self,
        confirm_after: int = 0,
        start_block: int = 1,
        gas_used: int = 21000,
    ):
        super().__init__("memory")
        self._confirm_after = confirm_after
        self._next_block = start_block
        self._gas_used = gas_used
        self._lock = threading.Lock()
        self._sequence = 0

        # tx id -> [receipt, remaining polls, will revert]
        self._transactions: Dict[str, list] = {}
        self._failures: Deque[SubmitFailure] = deque()
        # user id -> tx ids in broadcast order
        self._by_user: Dict[str, List[str]] = {}

    def fail_next(self, reason: SubmitFailure, times: int = 1) -> None:
        """Queue *times* failures of kind *reason* for upcoming broadcasts."""
        with self._lock:
            self._failures.extend([SubmitFailure(reason)] * times)

    def broadcast(self, user_id: str, digest: str) -> AnchorReceipt:
        with self._lock:
            reverts = False
            if self._failures:
                failure = self._failures.popleft()
                if failure is SubmitFailure.NETWORK:
                    raise LedgerSubmitError(failure, "connection reset by peer")
                if failure is SubmitFailure.INSUFFICIENT_FUNDS:
                    raise LedgerSubmitError(
                        failure, "insufficient funds for gas * price + value"
                    )
                if failure is SubmitFailure.MALFORMED_RESPONSE:
                    raise LedgerSubmitError(failure, "unreadable broadcast reply")
                reverts = True

            self._sequence += 1
            tx_id = "0x" + hashlib.sha256(
                f"{self._sequence}:{user_id}:{digest}".encode("utf-8")
            ).hexdigest()
            receipt = AnchorReceipt(
                transaction_id=tx_id, user_id=user_id, digest=digest,
            )
            self._transactions[tx_id] = [receipt, self._confirm_after, reverts]
            self._by_user.setdefault(user_id, []).append(tx_id)
            if self._confirm_after == 0:
                receipt = self._finalize(tx_id)
            return receipt

    def get_status(self, transaction_id: str) -> AnchorReceipt:
        with self._lock:
            entry = self._transactions.get(transaction_id)
            if entry is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            receipt = entry[0]
            if receipt.is_final:
                return receipt
            entry[1] -= 1
            if entry[1] <= 0:
                return self._finalize(transaction_id)
            return receipt

    def _finalize(self, transaction_id: str) -> AnchorReceipt:
        entry = self._transactions[transaction_id]
        pending, _, reverts = entry
        block = self._next_block
        self._next_block += 1
        if reverts:
            final = AnchorReceipt(
                transaction_id=pending.transaction_id,
                user_id=pending.user_id,
                digest=pending.digest,
                status=AnchorStatus.FAILED,
                block_number=block,
                error="execution reverted",
            )
        else:
            final = AnchorReceipt(
                transaction_id=pending.transaction_id,
                user_id=pending.user_id,
                digest=pending.digest,
                status=AnchorStatus.CONFIRMED,
                block_number=block,
                gas_used=self._gas_used,
            )
        entry[0] = final
        return final

    def transactions_for(self, user_id: str) -> List[AnchorReceipt]:
        """Every receipt broadcast for *user_id*, oldest first."""
        with self._lock:
            return [
                self._transactions[tx][0] for tx in self._by_user.get(user_id, [])
            ]

    def latest_anchor(self, user_id: str) -> Optional[AnchorReceipt]:
        for receipt in reversed(self.transactions_for(user_id)):
            if receipt.status is AnchorStatus.CONFIRMED:
                return receipt
        return None
