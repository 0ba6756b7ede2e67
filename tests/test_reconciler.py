"""Tests for digest reconciliation."""

from datetime import timedelta

import pytest

from vault_anchor.ledger import (
    AnchorReceipt,
    InMemoryOperationStore,
    MatchPath,
    OperationEvent,
    Reconciler,
    StoredOperation,
    UserHistoryIndex,
    digest,
    reconcile,
)

TS = "2024-01-01T00:00:00Z"

OP_A = OperationEvent(action="CREATE", entity_id="cred-a", timestamp=TS, title="A")
OP_B = OperationEvent(action="UPDATE", entity_id="cred-b", timestamp=TS, title="B")
OP_C = OperationEvent(action="DELETE", entity_id="cred-c", timestamp=TS)


class TestReconcile:

    def test_match(self):
        assert reconcile(digest(OP_A), [OP_A, OP_B, OP_C]) is OP_A

    def test_match_later_candidate(self):
        assert reconcile(digest(OP_C), [OP_A, OP_B, OP_C]) is OP_C

    def test_miss_returns_unknown(self):
        result = reconcile(digest(OP_A), [OP_B, OP_C])
        assert result.is_unknown
        assert result.entity_id == "unknown"
        assert result.title == "Unknown Operation"

    def test_empty_candidates(self):
        assert reconcile(digest(OP_A), []).is_unknown

    def test_empty_digest(self):
        assert reconcile("", [OP_A]).is_unknown

    def test_first_match_wins(self):
        twin = OperationEvent(action="CREATE", entity_id="cred-a", timestamp=TS, title="A")
        assert reconcile(digest(OP_A), [twin, OP_A]) is twin

    def test_skips_undigestable_candidates(self):
        broken = OperationEvent(action="CREATE", entity_id="", timestamp=TS)
        assert reconcile(digest(OP_B), [broken, OP_B]) is OP_B

    def test_accepts_generator(self):
        assert reconcile(digest(OP_B), (e for e in [OP_A, OP_B])) is OP_B


def _stored(tx, event, user_id="u1"):
    return StoredOperation(
        receipt=AnchorReceipt(tx, user_id, digest(event), status="confirmed", block_number=1),
        event=event,
    )


@pytest.fixture
def parts():
    store = InMemoryOperationStore()
    history = UserHistoryIndex()
    for tx, event in (("tx-a", OP_A), ("tx-b", OP_B)):
        op = _stored(tx, event)
        store.put(tx, op)
        history.append("u1", op)
    return store, history, Reconciler(store, history)


class TestReconciler:

    def test_indexed_lookup(self, parts):
        _, _, reconciler = parts
        result = reconciler.resolve(transaction_id="tx-a")
        assert result.path is MatchPath.INDEXED
        assert result.event is OP_A
        assert result.operation.transaction_id == "tx-a"

    def test_indexed_lookup_checks_digest(self, parts):
        _, _, reconciler = parts
        result = reconciler.resolve(digest=digest(OP_A), transaction_id="tx-a")
        assert result.path is MatchPath.INDEXED

    def test_digest_match_after_eviction(self, parts):
        store, _, reconciler = parts
        later = store.get("tx-b").stored_at + timedelta(seconds=1)
        assert store.evict_older_than(timedelta(0), now=later) == 2
        result = reconciler.resolve(digest=digest(OP_B), transaction_id="tx-b", user_id="u1")
        assert result.path is MatchPath.DIGEST_MATCH
        assert result.event is OP_B
        assert result.operation.transaction_id == "tx-b"

    def test_indexed_hit_with_wrong_digest_falls_back(self, parts):
        _, _, reconciler = parts
        result = reconciler.resolve(digest=digest(OP_B), transaction_id="tx-a", user_id="u1")
        assert result.path is MatchPath.DIGEST_MATCH
        assert result.event is OP_B

    def test_unknown(self, parts):
        _, _, reconciler = parts
        result = reconciler.resolve(digest=digest(OP_C), user_id="u1")
        assert result.path is MatchPath.UNKNOWN
        assert not result.matched
        assert result.event.is_unknown
        assert result.operation is None

    def test_digest_without_user_is_unknown(self, parts):
        _, _, reconciler = parts
        assert not reconciler.resolve(digest=digest(OP_A)).matched

    def test_to_dict(self, parts):
        _, _, reconciler = parts
        data = reconciler.resolve(transaction_id="tx-a").to_dict()
        assert data["matched"] is True
        assert data["path"] == "indexed"
        assert data["event"]["entityId"] == "cred-a"
        assert data["operation"]["transactionId"] == "tx-a"
