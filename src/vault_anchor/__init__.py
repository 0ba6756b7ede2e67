# Vault Anchor - Main Package
#
# Tamper-evident audit trail for credential vaults: every credential
# mutation is fingerprinted, anchored on an external ledger, and can be
# mapped back from its on-ledger digest during an audit.

__version__ = "0.1.0"
__author__ = "Vault Anchor Team"
__description__ = "Tamper-evident ledger audit trail for credential vaults"

from .core import (
    EventSeverity,
    EventType,
    LedgerSettings,
    get_audit_logger,
)

__all__ = [
    "__version__",
    "EventType",
    "EventSeverity",
    "LedgerSettings",
    "get_audit_logger",
]
