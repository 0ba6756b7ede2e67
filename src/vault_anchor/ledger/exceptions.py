"""
Ledger Exception Classes
"""

from enum import Enum


class LedgerError(Exception):
    """Base exception for ledger anchoring operations"""
    pass


class DigestError(LedgerError):
    """Raised when an event cannot be canonicalized or hashed"""
    pass


class NotFoundError(LedgerError):
    """Raised when a transaction id has no stored record"""
    pass


class DuplicateOperationError(LedgerError):
    """Raised when a transaction id is stored twice"""
    pass


class SubmitFailure(str, Enum):
    """Why a ledger submission failed."""
    NETWORK = "network"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    REVERTED = "reverted"
    # Gateway accepted the broadcast but its reply could not be read
    MALFORMED_RESPONSE = "malformed_response"


class LedgerSubmitError(LedgerError):
    """Raised when the external ledger rejects or cannot receive a digest.

    Only ``SubmitFailure.NETWORK`` is retryable.  Insufficient funds,
    reverted transactions and unreadable broadcast replies are terminal
    and surfaced with their reason.
    """

    def __init__(self, reason: SubmitFailure, message: str = ""):
        self.reason = SubmitFailure(reason)
        self.message = message or self.reason.value
        super().__init__(f"{self.reason.value}: {self.message}")

    @property
    def retryable(self) -> bool:
        return self.reason is SubmitFailure.NETWORK
