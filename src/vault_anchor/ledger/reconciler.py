"""Recover operation metadata from an anchored digest.

The ledger only holds (user id, digest).  To show a human-readable audit
row the digest has to be traced back to the event that produced it:

    1. **Indexed lookup**: the transaction id is known and still cached
       in the operation store.  This is the canonical path.
    2. **Digest match** (fallback): hash each candidate event and compare.
       Candidates come from one user's bounded history, newest first, so
       the scan is at most a hundred hashes.

A match on path 2 only shows that *some* candidate hashes to the digest;
it is a best-effort heuristic, not a proof.  Reconciliation never raises:
when nothing matches it returns the ``unknown_operation()`` sentinel so
the caller can always render a row.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from .digest import digest as compute_digest
from .exceptions import DigestError, NotFoundError
from .history import UserHistoryIndex
from .models import OperationEvent, StoredOperation, unknown_operation
from .operation_store import OperationStore

logger = logging.getLogger(__name__)


def reconcile(target_digest: str, candidates: Iterable[OperationEvent]) -> OperationEvent:
    """Return the first candidate whose digest equals *target_digest*.

    Candidate order is the tie-break policy: the first match wins.
    Candidates that cannot be digested are skipped.
    """
    if target_digest:
        for candidate in candidates:
            try:
                if compute_digest(candidate) == target_digest:
                    return candidate
            except DigestError as exc:
                logger.debug("Skipping undigestable candidate: %s", exc)
    return unknown_operation()


class MatchPath(str, Enum):
    INDEXED = "indexed"
    DIGEST_MATCH = "digest_match"
    UNKNOWN = "unknown"


@dataclass
class Reconciliation:
    """Outcome of :meth:`Reconciler.resolve`."""

    event: OperationEvent
    path: MatchPath
    operation: Optional[StoredOperation] = None

    @property
    def matched(self) -> bool:
        return self.path is not MatchPath.UNKNOWN

    def to_dict(self) -> dict:
        return {
            "matched": self.matched,
            "path": self.path.value,
            "event": self.event.to_dict(),
            "operation": self.operation.to_dict() if self.operation else None,
        }


class Reconciler:
    """Single entry point for digest / transaction id reconciliation."""

    def __init__(self, store: OperationStore, history: UserHistoryIndex):
        self._store = store
        self._history = history

    def resolve(
        self,
        digest: Optional[str] = None,
        transaction_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Reconciliation:
        """Resolve an anchored operation to its event.

        Tries the operation store by *transaction_id* first.  If that
        misses (evicted, never stored) and a *digest* is given, falls back
        to matching *user_id*'s history, newest first.  An indexed hit
        whose digest disagrees with *digest* is not trusted.
        """
        if transaction_id:
            try:
                op = self._store.get(transaction_id)
            except NotFoundError:
                op = None
            if op is not None and (not digest or op.digest == digest):
                return Reconciliation(op.event, MatchPath.INDEXED, op)

        if digest and user_id:
            recent = self._history.recent(user_id)
            event = reconcile(digest, [op.event for op in recent])
            if not event.is_unknown:
                op = next((op for op in recent if op.event is event), None)
                return Reconciliation(event, MatchPath.DIGEST_MATCH, op)

        return Reconciliation(unknown_operation(), MatchPath.UNKNOWN)
