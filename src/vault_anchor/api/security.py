# API Security - Session token for the audit API
#
# A random session token is generated when the API starts.  Every ledger
# endpoint requires it in the X-Session-Token header, so other local
# processes cannot read a user's operation history without it.

import secrets
from typing import Optional

from fastapi import Header, HTTPException, status

# Generated once per backend instance
_SESSION_TOKEN: Optional[str] = None


def initialize_session_token(token: Optional[str] = None) -> str:
    """
    Set the session token for this backend instance.

    Args:
        token: Use this token instead of generating one (e.g. from
               ``VAULT_ANCHOR_SESSION_TOKEN`` in a deployment).

    Returns:
        The active session token (for frontend initialization)
    """
    global _SESSION_TOKEN
    _SESSION_TOKEN = token or secrets.token_urlsafe(32)
    return _SESSION_TOKEN


def get_session_token() -> str:
    """
    Get the current session token.

    Raises:
        RuntimeError: If session token hasn't been initialized
    """
    if _SESSION_TOKEN is None:
        raise RuntimeError("Session token not initialized. Call initialize_session_token() first.")
    return _SESSION_TOKEN


async def verify_session_token(x_session_token: str = Header(None)) -> str:
    """
    FastAPI dependency to verify the session token.

    Raises:
        HTTPException: 503 before initialization, 401 if the token is
            missing or invalid
    """
    if _SESSION_TOKEN is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session token not initialized"
        )

    if x_session_token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Session-Token header"
        )

    # Constant-time comparison
    if not secrets.compare_digest(x_session_token, _SESSION_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid session token"
        )

    return x_session_token
