"""Tests for canonical serialization and operation digests."""

import hashlib
from datetime import datetime, timedelta, timezone

import pytest

from vault_anchor.ledger import DigestError, OperationAction, OperationEvent
from vault_anchor.ledger.digest import (
    DIGEST_HEX_LENGTH,
    canonical_form,
    canonicalize,
    digest,
    is_valid_digest,
)

TS = "2024-01-01T00:00:00Z"


def _event(**overrides):
    fields = dict(action="CREATE", entity_id="cred-1", timestamp=TS, title="Example")
    fields.update(overrides)
    return OperationEvent(**fields)


class TestCanonicalForm:

    def test_canonical_bytes(self):
        event = OperationEvent(action="CREATE", entity_id="c1", timestamp=TS)
        assert canonicalize(event) == (
            b'{"action":"CREATE","entityId":"c1",'
            b'"resource":"CREDENTIAL","timestamp":"2024-01-01T00:00:00Z"}'
        )

    def test_optional_fields_omitted_when_unset(self):
        form = canonical_form(OperationEvent(action="DELETE", entity_id="c1", timestamp=TS))
        assert set(form) == {"action", "resource", "entityId", "timestamp"}

    def test_optional_fields_included_when_set(self):
        form = canonical_form(_event(category="Email", has_url=False))
        assert form["title"] == "Example"
        assert form["category"] == "Email"
        assert form["hasUrl"] is False

    def test_datetime_timestamp_normalized_to_utc(self):
        aware = datetime(2024, 1, 1, 2, 0, tzinfo=timezone(timedelta(hours=2)))
        assert canonical_form(_event(timestamp=aware))["timestamp"] == TS

    def test_construction_order_does_not_matter(self):
        a = OperationEvent(action="UPDATE", entity_id="c1", timestamp=TS,
                           title="T", category="C")
        b = OperationEvent(category="C", title="T", timestamp=TS,
                           entity_id="c1", action=OperationAction.UPDATE)
        assert canonicalize(a) == canonicalize(b)

    def test_unicode_kept_verbatim(self):
        assert "Bank ü".encode("utf-8") in canonicalize(_event(title="Bank ü"))


class TestDigest:

    def test_matches_sha256_of_canonical_bytes(self):
        event = _event()
        assert digest(event) == hashlib.sha256(canonicalize(event)).hexdigest()

    def test_deterministic(self):
        event = _event()
        assert digest(event) == digest(event) == digest(_event())

    def test_fixed_length_hex(self):
        value = digest(_event())
        assert len(value) == DIGEST_HEX_LENGTH
        assert is_valid_digest(value)

    def test_create_update_delete_differ(self):
        digests = {
            digest(_event(action=action, title=None))
            for action in ("CREATE", "UPDATE", "DELETE")
        }
        assert len(digests) == 3

    @pytest.mark.parametrize("field,value", [
        ("entity_id", "cred-2"),
        ("timestamp", "2024-01-01T00:00:01Z"),
        ("title", "Other"),
        ("category", "Banking"),
        ("has_url", True),
    ])
    def test_any_field_change_changes_digest(self, field, value):
        assert digest(_event(**{field: value})) != digest(_event())

    def test_has_url_false_differs_from_unset(self):
        assert digest(_event(has_url=False)) != digest(_event())


class TestDigestErrors:

    def test_rejects_non_event(self):
        with pytest.raises(DigestError):
            digest({"action": "CREATE", "entityId": "c1"})

    def test_rejects_empty_entity_id(self):
        with pytest.raises(DigestError):
            digest(_event(entity_id=""))

    @pytest.mark.parametrize("timestamp", [None, ""])
    def test_rejects_missing_timestamp(self, timestamp):
        with pytest.raises(DigestError):
            digest(_event(timestamp=timestamp))

    def test_rejects_nan(self):
        with pytest.raises(DigestError):
            digest(_event(timestamp=float("nan")))

    def test_rejects_unserializable_field(self):
        with pytest.raises(DigestError):
            digest(_event(title=object()))


class TestIsValidDigest:

    @pytest.mark.parametrize("value", [
        "",
        "abc",
        "A" * 64,
        "g" * 64,
        "0" * 63,
        None,
        123,
    ])
    def test_invalid(self, value):
        assert not is_valid_digest(value)

    def test_valid(self):
        assert is_valid_digest("0123456789abcdef" * 4)
