# Ledger Module - Tamper-evident operation ledger
#
# Every credential mutation is digested, anchored on an external ledger,
# and cached so audits can map an on-chain digest back to what happened.

from .anchor_port import InMemoryLedger, LedgerAnchorPort
from .digest import canonicalize, digest, is_valid_digest
from .exceptions import (
    DigestError,
    DuplicateOperationError,
    LedgerError,
    LedgerSubmitError,
    NotFoundError,
    SubmitFailure,
)
from .history import UserHistoryIndex
from .http_anchor import HttpLedgerGateway
from .models import (
    AnchorReceipt,
    AnchorStatus,
    DigestSource,
    OperationAction,
    OperationEvent,
    StoredOperation,
    Verification,
    unknown_operation,
)
from .operation_store import (
    InMemoryOperationStore,
    OperationStore,
    SQLiteOperationStore,
)
from .reconciler import MatchPath, Reconciler, Reconciliation, reconcile
from .service import LedgerAuditService, create_service

__all__ = [
    # Data model
    "AnchorReceipt",
    "AnchorStatus",
    "OperationAction",
    "OperationEvent",
    "StoredOperation",
    "Verification",
    "DigestSource",
    "unknown_operation",
    # Digest
    "canonicalize",
    "digest",
    "is_valid_digest",
    # Ledger port
    "LedgerAnchorPort",
    "InMemoryLedger",
    "HttpLedgerGateway",
    # Storage
    "OperationStore",
    "InMemoryOperationStore",
    "SQLiteOperationStore",
    "UserHistoryIndex",
    # Reconciliation
    "reconcile",
    "Reconciler",
    "Reconciliation",
    "MatchPath",
    # Service
    "LedgerAuditService",
    "create_service",
    # Errors
    "LedgerError",
    "DigestError",
    "LedgerSubmitError",
    "SubmitFailure",
    "NotFoundError",
    "DuplicateOperationError",
]
