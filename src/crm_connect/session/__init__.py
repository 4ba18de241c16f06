"""Client-side API session validation and refresh.

Exports:
    SessionManager: validate / single-flight refresh / ensure_valid_session.
    SessionRefreshLoop: Periodic driver with an expiry callback.
    SessionValidation: Result of validate().
    HttpIdentityClient: Client for /api/v1/auth/refresh.
    Session: Access/refresh token pair with expiry.
    is_session_error: Classifier for "session is gone" errors.
"""

from src.crm_connect.session.identity import (
    HttpIdentityClient,
    IdentityError,
    Session,
    session_from_tokens,
)
from src.crm_connect.session.manager import (
    SessionManager,
    SessionRefreshLoop,
    SessionValidation,
    is_network_error,
    is_session_error,
)

__all__ = [
    "HttpIdentityClient",
    "IdentityError",
    "Session",
    "SessionManager",
    "SessionRefreshLoop",
    "SessionValidation",
    "is_network_error",
    "is_session_error",
    "session_from_tokens",
]
