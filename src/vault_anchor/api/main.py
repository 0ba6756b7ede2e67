# Vault Anchor - FastAPI Backend
#
# REST API for anchoring credential mutations and querying the audit
# trail.  The ledger service lives on ``app.state.ledger_service`` and is
# started/stopped with the app lifespan.

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..core import EventSeverity, EventType, get_audit_logger
from ..ledger import LedgerAuditService, create_service
from .ledger_routes import router as ledger_router
from .security import get_session_token, initialize_session_token

logger = logging.getLogger(__name__)

# Local UI origins only
_allowed_origins = [
    "http://localhost:3000", "http://127.0.0.1:3000",
    "http://localhost:8000", "http://127.0.0.1:8000",
]


def create_app(service: Optional[LedgerAuditService] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        service: Pre-built ledger service (tests inject one); otherwise
                 one is created from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        initialize_session_token(os.environ.get("VAULT_ANCHOR_SESSION_TOKEN"))

        ledger_service = service or create_service()
        ledger_service.start()
        app.state.ledger_service = ledger_service

        get_audit_logger().log_event(
            event_type=EventType.SYSTEM_START,
            severity=EventSeverity.INFO,
            message="Vault Anchor API server starting (session token initialized)",
        )
        try:
            yield
        finally:
            get_audit_logger().log_event(
                event_type=EventType.SYSTEM_STOP,
                severity=EventSeverity.INFO,
                message="Vault Anchor API server shutting down",
            )
            ledger_service.stop()
            app.state.ledger_service = None

    app = FastAPI(
        title="Vault Anchor API",
        description="Tamper-evident ledger audit trail for credential vaults",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(ledger_router)

    @app.get("/api/session")
    async def get_session():
        """
        Session token for the local UI.

        Unprotected because the UI needs it to authenticate; the server
        binds to localhost and the token changes on every restart.
        """
        return {"session_token": get_session_token()}

    @app.get("/api/health")
    async def health_check():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }

    return app


def start_api_server(host: str = "127.0.0.1", port: int = 8000):
    """
    Start FastAPI server.

    Args:
        host: Host to bind to (default: localhost only for security)
        port: Port to listen on
    """
    uvicorn.run(create_app(), host=host, port=port, log_level="info")
