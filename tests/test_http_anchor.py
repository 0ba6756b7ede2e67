"""
Tests for the HTTP ledger gateway adapter.

All HTTP calls go through httpx.MockTransport; no network access required.
Covers: broadcast, status, health check, auth header, error mapping.
"""

import json

import httpx
import pytest

from vault_anchor.ledger import (
    AnchorStatus,
    HttpLedgerGateway,
    LedgerSubmitError,
    NotFoundError,
    SubmitFailure,
)

BASE_URL = "https://anchor.test"
DIGEST = "ab" * 32


def _receipt(status="confirmed", **extra):
    data = {
        "transactionId": "0xabc",
        "userId": "u1",
        "digest": DIGEST,
        "status": status,
        "blockNumber": 42 if status == "confirmed" else None,
        "gasUsed": 21000 if status == "confirmed" else None,
    }
    data.update(extra)
    return data


def _gateway(handler, api_key=""):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpLedgerGateway(BASE_URL, api_key=api_key, client=client)


def _fixed(status_code, body=None):
    def handler(request):
        return httpx.Response(status_code, json=body if body is not None else {})
    return handler


class TestHttpLedgerGateway:

    def test_requires_base_url(self):
        with pytest.raises(ValueError):
            HttpLedgerGateway("")

    def test_broadcast_posts_digest(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=_receipt("pending"))

        receipt = _gateway(handler, api_key="secret").broadcast("u1", DIGEST)
        assert seen["method"] == "POST"
        assert seen["url"] == f"{BASE_URL}/anchors"
        assert seen["body"] == {"userId": "u1", "digest": DIGEST}
        assert seen["auth"] == "Bearer secret"
        assert receipt.status is AnchorStatus.PENDING
        assert receipt.block_number is None

    def test_no_auth_header_without_key(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=_receipt())

        _gateway(handler).broadcast("u1", DIGEST)
        assert seen["auth"] is None

    def test_get_status_parses_receipt(self):
        def handler(request):
            assert request.url.path == "/anchors/0xabc"
            return httpx.Response(200, json=_receipt())

        receipt = _gateway(handler).get_status("0xabc")
        assert receipt.status is AnchorStatus.CONFIRMED
        assert receipt.block_number == 42
        assert receipt.gas_used == 21000

    def test_get_status_not_found(self):
        with pytest.raises(NotFoundError):
            _gateway(_fixed(404, {"error": "unknown tx"})).get_status("0xabc")

    def test_submit_polls_until_confirmed(self):
        calls = {"status": 0}

        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json=_receipt("pending"))
            calls["status"] += 1
            if calls["status"] < 2:
                return httpx.Response(404, json={"error": "not indexed"})
            return httpx.Response(200, json=_receipt())

        receipt = _gateway(handler).submit("u1", DIGEST, timeout=5, poll_interval=0.001)
        assert receipt.status is AnchorStatus.CONFIRMED
        assert calls["status"] == 2


class TestErrorMapping:

    @pytest.mark.parametrize("status_code,reason", [
        (402, SubmitFailure.INSUFFICIENT_FUNDS),
        (409, SubmitFailure.REVERTED),
        (422, SubmitFailure.REVERTED),
        (408, SubmitFailure.NETWORK),
        (429, SubmitFailure.NETWORK),
        (500, SubmitFailure.NETWORK),
        (503, SubmitFailure.NETWORK),
    ])
    def test_status_codes(self, status_code, reason):
        gateway = _gateway(_fixed(status_code, {"error": "boom"}))
        with pytest.raises(LedgerSubmitError) as exc_info:
            gateway.broadcast("u1", DIGEST)
        assert exc_info.value.reason is reason
        assert "boom" in exc_info.value.message

    def test_transport_error_is_network(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(LedgerSubmitError) as exc_info:
            _gateway(handler).broadcast("u1", DIGEST)
        assert exc_info.value.reason is SubmitFailure.NETWORK
        assert exc_info.value.retryable

    def test_other_client_errors_raise_http_error(self):
        with pytest.raises(httpx.HTTPStatusError):
            _gateway(_fixed(400, {"error": "bad request"})).broadcast("u1", DIGEST)

    def test_malformed_broadcast_reply_is_terminal(self):
        with pytest.raises(LedgerSubmitError) as exc_info:
            _gateway(_fixed(200, {"status": "confirmed"})).broadcast("u1", DIGEST)
        assert exc_info.value.reason is SubmitFailure.MALFORMED_RESPONSE
        assert not exc_info.value.retryable

    def test_non_json_broadcast_reply_is_terminal(self):
        def handler(request):
            return httpx.Response(200, text="<html>ok</html>")

        with pytest.raises(LedgerSubmitError) as exc_info:
            _gateway(handler).broadcast("u1", DIGEST)
        assert exc_info.value.reason is SubmitFailure.MALFORMED_RESPONSE
        assert "<html>" in exc_info.value.message

    def test_non_json_status_reply_is_network(self):
        def handler(request):
            return httpx.Response(200, text="<html>ok</html>")

        with pytest.raises(LedgerSubmitError) as exc_info:
            _gateway(handler).get_status("0xabc")
        assert exc_info.value.reason is SubmitFailure.NETWORK

    def test_non_object_json_reply(self):
        with pytest.raises(LedgerSubmitError):
            _gateway(_fixed(200, ["not", "a", "receipt"])).broadcast("u1", DIGEST)

    def test_plain_text_error_body(self):
        def handler(request):
            return httpx.Response(402, text="wallet empty")

        with pytest.raises(LedgerSubmitError) as exc_info:
            _gateway(handler).broadcast("u1", DIGEST)
        assert exc_info.value.message == "wallet empty"

    def test_submit_counts_errors(self):
        gateway = _gateway(_fixed(402, {"error": "no funds"}))
        with pytest.raises(LedgerSubmitError):
            gateway.submit("u1", DIGEST)
        assert gateway.get_stats()["total_errors"] == 1


class TestHealthCheck:

    def test_healthy(self):
        assert _gateway(_fixed(200, {"ok": True})).health_check()

    def test_unhealthy_on_server_error(self):
        assert not _gateway(_fixed(503)).health_check()

    def test_unhealthy_when_unreachable(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        assert not _gateway(handler).health_check()


class TestLatestAnchor:

    def test_latest_anchor_parses_receipt(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return httpx.Response(200, json=_receipt())

        receipt = _gateway(handler).latest_anchor("u1")
        assert seen["url"] == f"{BASE_URL}/users/u1/latest"
        assert receipt.digest == DIGEST
        assert receipt.block_number == 42

    def test_latest_anchor_none_when_user_unknown(self):
        assert _gateway(_fixed(404, {"error": "no anchors"})).latest_anchor("u1") is None

    def test_latest_anchor_unreachable(self):
        with pytest.raises(LedgerSubmitError) as exc_info:
            _gateway(_fixed(503)).latest_anchor("u1")
        assert exc_info.value.retryable
