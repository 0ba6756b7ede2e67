# Ledger Anchor Port - HTTP gateway adapter
#
# Talks to an anchoring gateway that fronts the chain node and wallet
# (signing, gas estimation and contract calls happen behind it).
#
# Gateway API:
#   POST /anchors               {"userId", "digest"}  -> receipt
#   GET  /anchors/{tx_id}                             -> receipt
#   GET  /users/{user_id}/latest                      -> newest receipt
#   GET  /health                                      -> 200 when ready
#
# Receipt JSON: transactionId, userId, digest, status, blockNumber,
# error, gasUsed.
#
# Retries are NOT done here: a retried broadcast costs another fee, so
# the service decides when a NETWORK failure is safe to retry.  A 2xx
# broadcast reply that cannot be read means the transaction may already
# be on its way, so it is reported as MALFORMED_RESPONSE (terminal), never
# as NETWORK.

import logging
from typing import Any, Dict, Optional

import httpx

from .anchor_port import LedgerAnchorPort
from .exceptions import LedgerSubmitError, NotFoundError, SubmitFailure
from .models import AnchorReceipt

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SEC = 15.0

# Gateway status codes with a fixed meaning in the failure taxonomy
_INSUFFICIENT_FUNDS_CODES = {402}
_REVERTED_CODES = {409, 422}
_RETRYABLE_CODES = {408, 425, 429}


class HttpLedgerGateway(LedgerAnchorPort):
    """Ledger adapter for an HTTP anchoring gateway.

    Usage::

        gateway = HttpLedgerGateway("https://anchor.internal", api_key="...")
        receipt = gateway.submit("u1", digest, timeout=30)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = REQUEST_TIMEOUT_SEC,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__("http")
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    # ------------------------------------------------------------------
    # LedgerAnchorPort interface
    # ------------------------------------------------------------------

    def broadcast(self, user_id: str, digest: str) -> AnchorReceipt:
        resp = self._request(
            "POST", "/anchors", json={"userId": user_id, "digest": digest},
        )
        return self._parse_receipt(resp, SubmitFailure.MALFORMED_RESPONSE)

    def get_status(self, transaction_id: str) -> AnchorReceipt:
        resp = self._request("GET", f"/anchors/{transaction_id}")
        if resp.status_code == 404:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return self._parse_receipt(resp, SubmitFailure.NETWORK)

    def latest_anchor(self, user_id: str) -> Optional[AnchorReceipt]:
        resp = self._request("GET", f"/users/{user_id}/latest")
        if resp.status_code == 404:
            return None
        return self._parse_receipt(resp, SubmitFailure.NETWORK)

    def health_check(self) -> bool:
        try:
            resp = self._request("GET", "/health")
            return resp.status_code == 200
        except LedgerSubmitError:
            return False

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _build_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {
            "Accept": "application/json",
            "User-Agent": "VaultAnchor/0.1",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send one request and translate failures into the ledger taxonomy.

        A 404 is returned to the caller; it only means "not found" for
        status queries.
        """
        try:
            resp = self._client.request(
                method,
                f"{self._base_url}{path}",
                headers=self._build_headers(),
                timeout=self._timeout,
                **kwargs,
            )
        except httpx.TransportError as exc:
            raise LedgerSubmitError(
                SubmitFailure.NETWORK, f"{method} {path} failed: {exc}"
            ) from exc

        code = resp.status_code
        if code < 400 or code == 404:
            return resp

        reason = self._error_message(resp)
        if code in _INSUFFICIENT_FUNDS_CODES:
            raise LedgerSubmitError(SubmitFailure.INSUFFICIENT_FUNDS, reason)
        if code in _REVERTED_CODES:
            raise LedgerSubmitError(SubmitFailure.REVERTED, reason)
        if code >= 500 or code in _RETRYABLE_CODES:
            logger.warning("Ledger gateway returned %d for %s %s", code, method, path)
            raise LedgerSubmitError(SubmitFailure.NETWORK, f"gateway {code}: {reason}")

        resp.raise_for_status()
        return resp

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text or f"HTTP {resp.status_code}"
        if isinstance(body, dict):
            return str(body.get("error") or body.get("detail") or body)
        return str(body)

    @staticmethod
    def _parse_receipt(resp: httpx.Response, failure: SubmitFailure) -> AnchorReceipt:
        """Decode a receipt body; anything unreadable raises *failure*."""
        try:
            data: Dict[str, Any] = resp.json()
            block = data.get("blockNumber")
            gas = data.get("gasUsed")
            return AnchorReceipt(
                transaction_id=data["transactionId"],
                user_id=data["userId"],
                digest=data["digest"],
                status=data.get("status", "pending"),
                block_number=int(block) if block is not None else None,
                error=data.get("error"),
                gas_used=int(gas) if gas is not None else None,
            )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise LedgerSubmitError(
                failure,
                f"malformed gateway receipt ({exc}): {resp.text[:200]!r}",
            ) from exc
