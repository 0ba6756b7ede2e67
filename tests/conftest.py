"""
Shared pytest fixtures for the Vault Anchor test suite.

Autouse fixtures below isolate tests from the live application data:
  - Audit logger -> temp directory (keeps test events out of ./audit_logs)
  - Ledger env   -> cleared        (a developer's .env must not leak in)
"""

import pytest


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path, monkeypatch):
    """Redirect the global AuditLogger to a temp directory for every test.

    Without this, any test that (directly or indirectly) calls
    ``get_audit_logger().log_event(...)`` writes into the real
    ``./audit_logs/`` directory.
    """
    import vault_anchor.core.audit_log as audit_mod

    # Reset the singleton so the next get_audit_logger() builds a fresh
    # instance pointing at the temp directory.
    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = None

    orig_init = audit_mod.AuditLogger.__init__

    def patched_init(self, log_dir=None):
        orig_init(self, log_dir=log_dir or tmp_path / "audit_logs")

    monkeypatch.setattr(audit_mod.AuditLogger, "__init__", patched_init)

    yield

    audit_mod._audit_logger = old_logger


@pytest.fixture(autouse=True)
def _isolate_ledger_env(monkeypatch):
    """Remove LEDGER_* variables so settings start from their defaults."""
    import os

    for name in list(os.environ):
        if name.startswith("LEDGER_") or name == "VAULT_ANCHOR_SESSION_TOKEN":
            monkeypatch.delenv(name, raising=False)
