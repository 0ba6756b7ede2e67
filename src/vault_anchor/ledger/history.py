"""Per-user sliding window of anchored operations for audit display.

Each user keeps only the most recent ``limit`` operations in insertion
order.  Appends for the same user are serialized; different users only
share the short registry lookup that hands out their bucket.
"""

import threading
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from .models import AnchorReceipt, StoredOperation

DEFAULT_HISTORY_LIMIT = 100


class _UserBucket:
    __slots__ = ("lock", "ops")

    def __init__(self, limit: int):
        self.lock = threading.Lock()
        self.ops: Deque[StoredOperation] = deque(maxlen=limit)


class UserHistoryIndex:
    """Bounded, insertion-ordered operation history per user.

    When an append would exceed ``limit`` the oldest entries are dropped
    from the head; retained entries are never reordered.
    """

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self._limit = limit
        self._registry_lock = threading.Lock()
        self._buckets: Dict[str, _UserBucket] = {}

    @property
    def limit(self) -> int:
        return self._limit

    def _bucket(self, user_id: str, create: bool = False) -> Optional[_UserBucket]:
        with self._registry_lock:
            bucket = self._buckets.get(user_id)
            if bucket is None and create:
                bucket = _UserBucket(self._limit)
                self._buckets[user_id] = bucket
            return bucket

    def append(self, user_id: str, op: StoredOperation) -> int:
        """Append *op* to *user_id*'s history; returns the new length."""
        bucket = self._bucket(user_id, create=True)
        with bucket.lock:
            bucket.ops.append(op)
            return len(bucket.ops)

    def list(self, user_id: str) -> Tuple[StoredOperation, ...]:
        """Snapshot of *user_id*'s history, oldest first.

        Each call re-reads current state; an unknown user yields ``()``.
        """
        bucket = self._bucket(user_id)
        if bucket is None:
            return ()
        with bucket.lock:
            return tuple(bucket.ops)

    def recent(self, user_id: str, limit: Optional[int] = None) -> List[StoredOperation]:
        """Newest-first view, optionally capped at *limit* entries."""
        ops = list(reversed(self.list(user_id)))
        return ops if limit is None else ops[:limit]

    def update_receipt(self, user_id: str, receipt: AnchorReceipt) -> bool:
        """Swap in a newer receipt for the entry with the same transaction id."""
        bucket = self._bucket(user_id)
        if bucket is None:
            return False
        with bucket.lock:
            for op in bucket.ops:
                if op.transaction_id == receipt.transaction_id:
                    op.receipt = receipt
                    return True
        return False

    def users(self) -> List[str]:
        with self._registry_lock:
            return list(self._buckets)

    def clear(self, user_id: str) -> None:
        with self._registry_lock:
            self._buckets.pop(user_id, None)

    def __len__(self) -> int:
        """Total number of retained entries across all users."""
        with self._registry_lock:
            buckets = list(self._buckets.values())
        total = 0
        for bucket in buckets:
            with bucket.lock:
                total += len(bucket.ops)
        return total
