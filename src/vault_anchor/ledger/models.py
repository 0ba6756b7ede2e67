"""Data model for anchored credential operations.

An ``OperationEvent`` describes one credential mutation.  It is hashed,
the digest is anchored on the ledger, and the returned ``AnchorReceipt``
is joined with the event into a ``StoredOperation`` for audit queries.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

CREDENTIAL_RESOURCE = "CREDENTIAL"
UNKNOWN_ENTITY_ID = "unknown"

Timestamp = Union[str, int, float, datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_utc(dt: datetime) -> str:
    """Render *dt* as ISO-8601 UTC with a ``Z`` suffix (naive = UTC)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class OperationAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    UNKNOWN = "UNKNOWN"     # reconciliation sentinel only


class AnchorStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class OperationEvent:
    """One credential mutation, as it is fingerprinted and anchored.

    Detail fields (``title``, ``category``, ``has_url``) carry non-secret
    metadata and are only set for CREATE/UPDATE.
    """

    action: OperationAction
    entity_id: str
    timestamp: Timestamp
    resource: str = CREDENTIAL_RESOURCE
    title: Optional[str] = None
    category: Optional[str] = None
    has_url: Optional[bool] = None

    def __post_init__(self):
        if not isinstance(self.action, OperationAction):
            object.__setattr__(self, "action", OperationAction(self.action))

    @classmethod
    def from_credential(
        cls,
        action: Union[OperationAction, str],
        credential_id: str,
        credential: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[Timestamp] = None,
    ) -> "OperationEvent":
        """Build an event for a credential mutation.

        Only ``title``, ``category`` and whether a URL is set are copied
        from *credential*; passwords, usernames and notes never are.
        """
        action = OperationAction(action)
        if timestamp is None:
            timestamp = iso_utc(utc_now())

        details: Dict[str, Any] = {}
        if credential is not None and action in (
            OperationAction.CREATE, OperationAction.UPDATE
        ):
            details = {
                "title": credential.get("title"),
                "category": credential.get("category"),
                "has_url": bool(credential.get("url")),
            }

        return cls(
            action=action,
            entity_id=str(credential_id),
            timestamp=timestamp,
            **details,
        )

    @property
    def is_unknown(self) -> bool:
        return self.action is OperationAction.UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        timestamp = self.timestamp
        if isinstance(timestamp, datetime):
            timestamp = iso_utc(timestamp)
        return {
            "action": self.action.value,
            "resource": self.resource,
            "entityId": self.entity_id,
            "timestamp": timestamp,
            "title": self.title,
            "category": self.category,
            "hasUrl": self.has_url,
        }


def unknown_operation(now: Optional[datetime] = None) -> OperationEvent:
    """Sentinel returned when a digest matches no known operation."""
    return OperationEvent(
        action=OperationAction.UNKNOWN,
        entity_id=UNKNOWN_ENTITY_ID,
        timestamp=iso_utc(now or utc_now()),
        resource=CREDENTIAL_RESOURCE,
        title="Unknown Operation",
        category="Unknown",
    )


@dataclass(frozen=True)
class AnchorReceipt:
    """Result of submitting a digest to the ledger."""

    transaction_id: str
    user_id: str
    digest: str
    status: AnchorStatus = AnchorStatus.PENDING
    block_number: Optional[int] = None
    error: Optional[str] = None
    gas_used: Optional[int] = None

    def __post_init__(self):
        if not self.transaction_id:
            raise ValueError("transaction_id must not be empty")
        if not isinstance(self.status, AnchorStatus):
            object.__setattr__(self, "status", AnchorStatus(self.status))

    @property
    def is_final(self) -> bool:
        return self.status is not AnchorStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transactionId": self.transaction_id,
            "userId": self.user_id,
            "digest": self.digest,
            "status": self.status.value,
            "blockNumber": self.block_number,
            "error": self.error,
            "gasUsed": self.gas_used,
        }


@dataclass
class StoredOperation:
    """An anchored event: receipt + event + insertion time.

    ``receipt`` is the only field that changes after creation, and only
    by whole-object replacement when a pending receipt resolves.
    """

    receipt: AnchorReceipt
    event: OperationEvent
    stored_at: datetime = field(default_factory=utc_now)

    @property
    def transaction_id(self) -> str:
        return self.receipt.transaction_id

    @property
    def user_id(self) -> str:
        return self.receipt.user_id

    @property
    def digest(self) -> str:
        return self.receipt.digest

    @property
    def action(self) -> OperationAction:
        return self.event.action

    def to_dict(self, explorer_url: str = "") -> Dict[str, Any]:
        receipt = self.receipt
        row = {
            "transactionId": receipt.transaction_id,
            "userId": receipt.user_id,
            "digest": receipt.digest,
            "blockNumber": receipt.block_number,
            "status": receipt.status.value,
            "error": receipt.error,
            **self.event.to_dict(),
            "storedAt": iso_utc(self.stored_at),
        }
        if explorer_url:
            row["explorerUrl"] = f"{explorer_url.rstrip('/')}/{receipt.transaction_id}"
        return row


class DigestSource(str, Enum):
    LEDGER = "ledger"
    CACHE = "cache"     # ledger unreachable, local copy used


@dataclass(frozen=True)
class Verification:
    """Outcome of checking an event against its anchored digest.

    ``cache_consistent`` is None unless both the ledger and the local
    cache were read; False means the cached digest was altered.
    """

    transaction_id: str
    valid: bool
    current_digest: str
    anchored_digest: str
    source: DigestSource
    block_number: Optional[int] = None
    cache_consistent: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transactionId": self.transaction_id,
            "integrityValid": self.valid,
            "currentDigest": self.current_digest,
            "anchoredDigest": self.anchored_digest,
            "source": self.source.value,
            "blockNumber": self.block_number,
            "cacheConsistent": self.cache_consistent,
        }
