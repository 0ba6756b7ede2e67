# Ledger Audit - Structured Logging & Forensics
#
# Append-only audit log for every ledger anchoring decision.
# Each anchored credential mutation, confirmation, cache eviction and
# reconciliation miss is written as one structured JSON line with a
# timestamp and event ID so an operator can trace what reached the chain.
#
# Never log credential secrets here: only digests, transaction ids and
# the non-secret event metadata (action, entity id, title, category).

import logging
import os
import socket
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog


class EventType(str, Enum):
    """
    Types of ledger events that can be logged.
    """
    # Anchoring
    ANCHOR_SUBMITTED = "ledger.anchor.submitted"
    ANCHOR_CONFIRMED = "ledger.anchor.confirmed"
    ANCHOR_PENDING = "ledger.anchor.pending"
    ANCHOR_FAILED = "ledger.anchor.failed"
    ANCHOR_DUPLICATE = "ledger.anchor.duplicate"

    # Operation cache
    OPERATION_STORED = "ledger.operation.stored"
    CACHE_EVICTED = "ledger.cache.evicted"

    # Audit queries
    RECONCILE_MISS = "ledger.reconcile.miss"
    VERIFY_FAILED = "ledger.verify.failed"

    # System Events
    SYSTEM_START = "system.start"
    SYSTEM_STOP = "system.stop"


class EventSeverity(str, Enum):
    """
    Severity levels for ledger events.

    - INFO: Normal activity (anchored, stored, evicted)
    - INVESTIGATE: Something unusual (pending past timeout, reconcile miss)
    - ALERT: Anchoring failed and the user must be told why
    - CRITICAL: Integrity check failed (possible tampering)
    """
    INFO = "info"
    INVESTIGATE = "investigate"
    ALERT = "alert"
    CRITICAL = "critical"


class AuditLogger:
    """
    Append-only audit logger for ledger events.

    Features:
    - Structured JSON logging (structlog)
    - Automatic timestamp and event ID
    - Host context capture
    - One log file per day under ``log_dir``
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Initialize audit logger.

        Args:
            log_dir: Directory for audit logs (default: ./audit_logs)
        """
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer()
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self.log_file = self._setup_file_handler()
        self.logger = structlog.get_logger("vault_anchor.audit")

    def _setup_file_handler(self) -> Path:
        """Attach a file handler for today's log to the audit logger."""
        today = datetime.now().strftime("%Y-%m-%d")
        log_file = self.log_dir / f"audit_{today}.log"

        audit_logger = logging.getLogger("vault_anchor.audit")
        audit_logger.setLevel(logging.INFO)
        for handler in audit_logger.handlers:
            if (
                isinstance(handler, logging.FileHandler)
                and handler.baseFilename == os.path.abspath(log_file)
            ):
                return log_file

        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter('%(message)s'))
        audit_logger.addHandler(file_handler)
        return log_file

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        user_context: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Log a ledger event (append-only).

        Args:
            event_type: Type of event (from EventType enum)
            severity: Severity level (from EventSeverity enum)
            message: Human-readable event description
            details: Additional event details (digest, transaction id, ...)
            user_context: Acting user (user_id, session, ...)

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())

        event_data = {
            "event_id": event_id,
            "event_type": event_type.value,
            "severity": severity.value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "details": details or {},
            "user_context": user_context or self._get_default_user_context(),
        }

        self.logger.info("ledger_event", **event_data)
        return event_id

    def log_anchor_event(
        self,
        event_type: EventType,
        user_id: str,
        transaction_id: Optional[str],
        digest: str,
        severity: EventSeverity = EventSeverity.INFO,
        details: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Log an anchoring lifecycle event for one user's operation.

        Returns:
            str: Event ID
        """
        message = f"Ledger: {event_type.value} - {transaction_id or 'no-tx'}"

        event_details = dict(details or {})
        event_details["transaction_id"] = transaction_id
        event_details["digest"] = digest

        return self.log_event(
            event_type=event_type,
            severity=severity,
            message=message,
            details=event_details,
            user_context={"user_id": user_id},
        )

    def _get_default_user_context(self) -> Dict[str, Any]:
        """Get default context (OS user, hostname, etc.)."""
        return {
            "os_user": os.getenv("USERNAME") or os.getenv("USER"),
            "hostname": socket.gethostname(),
            "platform": sys.platform,
        }


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
