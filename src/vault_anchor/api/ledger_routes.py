# Ledger API - Audit query endpoints
#
# Endpoints for the vault UI's activity log:
#   GET  /api/ledger/status                         - service + ledger status
#   POST /api/ledger/operations                     - anchor a credential mutation
#   GET  /api/ledger/operations/{tx_id}             - one anchored operation
#   POST /api/ledger/operations/{tx_id}/refresh     - re-poll a pending receipt
#   GET  /api/ledger/history/{user_id}              - user's recent operations
#   POST /api/ledger/reconcile                      - digest -> operation
#   POST /api/ledger/verify                         - integrity check
#   GET  /api/ledger/vault/{user_id}                - newest anchor, decoded
#
# Handlers that call the ledger block on it, so they are plain ``def``
# and run in FastAPI's threadpool.

from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from ..ledger import (
    DigestError,
    DuplicateOperationError,
    LedgerAuditService,
    LedgerSubmitError,
    NotFoundError,
    OperationAction,
    OperationEvent,
)
from ..ledger.models import CREDENTIAL_RESOURCE
from .security import verify_session_token

router = APIRouter(prefix="/api/ledger", tags=["ledger"])


def get_ledger_service(request: Request) -> LedgerAuditService:
    """Service owned by the app (set up in ``create_app``)."""
    service = getattr(request.app.state, "ledger_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger service not initialized",
        )
    return service


# Request/Response Models
class RecordOperationRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=200)
    action: str = Field(..., pattern="^(CREATE|UPDATE|DELETE)$")
    credential_id: str = Field(..., min_length=1, max_length=200)
    title: Optional[str] = Field(None, max_length=100)
    category: Optional[str] = Field(None, max_length=50)
    url: Optional[str] = None
    timestamp: Optional[str] = None
    timeout: Optional[float] = Field(None, gt=0, le=600)


class OperationEventModel(BaseModel):
    action: str = Field(..., pattern="^(CREATE|UPDATE|DELETE)$")
    entity_id: str = Field(..., min_length=1)
    timestamp: Union[str, int, float]
    resource: str = CREDENTIAL_RESOURCE
    title: Optional[str] = None
    category: Optional[str] = None
    has_url: Optional[bool] = None

    def to_event(self) -> OperationEvent:
        return OperationEvent(
            action=OperationAction(self.action),
            entity_id=self.entity_id,
            timestamp=self.timestamp,
            resource=self.resource,
            title=self.title,
            category=self.category,
            has_url=self.has_url,
        )


class ReconcileRequest(BaseModel):
    digest: Optional[str] = Field(None, pattern="^[0-9a-f]{64}$")
    transaction_id: Optional[str] = None
    user_id: Optional[str] = None


class VerifyRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1)
    event: OperationEventModel


def _submit_error(exc: LedgerSubmitError) -> HTTPException:
    """Network failures are temporary (503); the rest are terminal (502)."""
    code = (
        status.HTTP_503_SERVICE_UNAVAILABLE
        if exc.retryable
        else status.HTTP_502_BAD_GATEWAY
    )
    return HTTPException(
        status_code=code,
        detail={"reason": exc.reason.value, "message": exc.message},
    )


# Endpoints

@router.get("/status")
def get_ledger_status(
    service: LedgerAuditService = Depends(get_ledger_service),
    token: str = Depends(verify_session_token),
):
    """Service statistics and ledger adapter status."""
    return {
        "success": True,
        "service": service.get_status(),
        "settings": service.settings.to_dict(),
    }


@router.post("/operations")
def record_operation(
    request: RecordOperationRequest,
    service: LedgerAuditService = Depends(get_ledger_service),
    token: str = Depends(verify_session_token),
):
    """
    Anchor one credential mutation.

    Returns the stored operation; ``status`` is ``pending`` when the
    ledger did not confirm within the timeout (poll ``/refresh`` later).
    """
    credential = None
    if request.title is not None or request.category is not None or request.url:
        credential = {
            "title": request.title,
            "category": request.category,
            "url": request.url,
        }
    event = OperationEvent.from_credential(
        request.action,
        request.credential_id,
        credential=credential,
        timestamp=request.timestamp,
    )

    try:
        op = service.record(request.user_id, event, timeout=request.timeout)
    except DigestError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )
    except DuplicateOperationError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        )
    except LedgerSubmitError as e:
        raise _submit_error(e)

    if op is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger anchoring is disabled",
        )

    return {
        "success": True,
        "operation": op.to_dict(service.settings.explorer_url),
    }


@router.get("/operations/{transaction_id}")
async def get_operation(
    transaction_id: str,
    service: LedgerAuditService = Depends(get_ledger_service),
    token: str = Depends(verify_session_token),
):
    """Cached operation metadata for a transaction id."""
    try:
        op = service.get_operation(transaction_id)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Operation not found",
        )
    return {"success": True, "operation": op.to_dict(service.settings.explorer_url)}


@router.post("/operations/{transaction_id}/refresh")
def refresh_operation(
    transaction_id: str,
    service: LedgerAuditService = Depends(get_ledger_service),
    token: str = Depends(verify_session_token),
):
    """Re-query the ledger for a pending operation."""
    try:
        op = service.refresh(transaction_id)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Operation not found",
        )
    except LedgerSubmitError as e:
        raise _submit_error(e)
    return {"success": True, "operation": op.to_dict(service.settings.explorer_url)}


@router.get("/history/{user_id}")
async def get_user_history(
    user_id: str,
    limit: Optional[int] = None,
    service: LedgerAuditService = Depends(get_ledger_service),
    token: str = Depends(verify_session_token),
):
    """A user's anchored operations, newest first."""
    ops = list(reversed(service.get_user_history(user_id)))
    if limit is not None:
        ops = ops[:max(limit, 0)]
    explorer = service.settings.explorer_url
    return {
        "success": True,
        "user_id": user_id,
        "count": len(ops),
        "operations": [op.to_dict(explorer) for op in ops],
    }


@router.post("/reconcile")
async def reconcile_digest(
    request: ReconcileRequest,
    service: LedgerAuditService = Depends(get_ledger_service),
    token: str = Depends(verify_session_token),
):
    """
    Map an anchored digest (or transaction id) back to its operation.

    Never fails for an unmatched digest: the result is the
    ``UNKNOWN`` operation with ``matched = false``.
    """
    if not request.digest and not request.transaction_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide a digest or a transaction_id",
        )
    result = service.resolve(
        digest=request.digest,
        transaction_id=request.transaction_id,
        user_id=request.user_id,
    )
    return {"success": True, **result.to_dict()}


@router.post("/verify")
def verify_operation(
    request: VerifyRequest,
    service: LedgerAuditService = Depends(get_ledger_service),
    token: str = Depends(verify_session_token),
):
    """
    Check that an event still hashes to the digest anchored on the ledger.

    ``source`` is ``ledger`` when the anchored digest was read back from
    the ledger and ``cache`` when the ledger could not answer.
    """
    event = request.event.to_event()
    try:
        result = service.verify(request.transaction_id, event)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Operation not found",
        )
    except DigestError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )
    except LedgerSubmitError as e:
        raise _submit_error(e)

    return {
        "success": True,
        **result.to_dict(),
        "message": (
            "Operation integrity verified - no tampering detected"
            if result.valid
            else "Operation integrity compromised - data has been modified"
        ),
    }


@router.get("/vault/{user_id}")
def get_latest_anchor(
    user_id: str,
    service: LedgerAuditService = Depends(get_ledger_service),
    token: str = Depends(verify_session_token),
):
    """Newest digest anchored for a user, decoded to its operation."""
    try:
        receipt = service.latest_anchor(user_id)
    except LedgerSubmitError as e:
        raise _submit_error(e)
    if receipt is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No anchored operations for this user",
        )
    resolution = service.resolve(
        digest=receipt.digest,
        transaction_id=receipt.transaction_id,
        user_id=user_id,
    )
    return {
        "success": True,
        "user_id": user_id,
        "anchor": receipt.to_dict(),
        **resolution.to_dict(),
    }
