"""Deterministic digests of operation events.

The digest is SHA-256 over a canonical JSON rendering of the event.  The
canonical form is built from a fixed schema and serialized with sorted
keys and no whitespace, so two logically equal events always hash the
same no matter how the caller assembled them.
"""

import hashlib
import json
import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict

from .exceptions import DigestError
from .models import OperationEvent, iso_utc

DIGEST_HEX_LENGTH = 64

_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


def _canonical_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return iso_utc(value)
    return value


def canonical_form(event: OperationEvent) -> Dict[str, Any]:
    """Schema-ordered mapping used as hash input.

    Optional detail fields are included only when set, so a DELETE event
    and a CREATE event with no details share the same shape.
    """
    if not isinstance(event, OperationEvent):
        raise DigestError(f"Expected OperationEvent, got {type(event).__name__}")
    if not event.entity_id:
        raise DigestError("Event has no entity_id")
    if event.timestamp is None or event.timestamp == "":
        raise DigestError("Event has no timestamp")

    form: Dict[str, Any] = {
        "action": _canonical_value(event.action),
        "resource": _canonical_value(event.resource),
        "entityId": _canonical_value(event.entity_id),
        "timestamp": _canonical_value(event.timestamp),
    }
    if event.title is not None:
        form["title"] = _canonical_value(event.title)
    if event.category is not None:
        form["category"] = _canonical_value(event.category)
    if event.has_url is not None:
        form["hasUrl"] = _canonical_value(event.has_url)
    return form


def canonicalize(event: OperationEvent) -> bytes:
    """Serialize *event* to its canonical UTF-8 JSON bytes.

    Raises:
        DigestError: if any field cannot be serialized (or is NaN/inf).
    """
    form = canonical_form(event)
    try:
        text = json.dumps(
            form,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError) as exc:
        raise DigestError(f"Event is not serializable: {exc}") from exc
    return text.encode("utf-8")


def digest(event: OperationEvent) -> str:
    """Return the 64-char hex SHA-256 digest of *event*.

    Never returns an empty value: any failure raises ``DigestError`` and
    the caller must abort the mutation rather than anchor garbage.
    """
    return hashlib.sha256(canonicalize(event)).hexdigest()


def is_valid_digest(value: Any) -> bool:
    """True if *value* looks like a digest produced by :func:`digest`."""
    return isinstance(value, str) and bool(_DIGEST_RE.match(value))
