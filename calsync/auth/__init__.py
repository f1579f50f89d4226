"""Authentication and credential module."""

from calsync.auth.session import (
    create_session_token,
    verify_session_token,
    get_current_user,
)
from calsync.auth.tokens import ensure_valid_access_token

__all__ = [
    "create_session_token",
    "verify_session_token",
    "get_current_user",
    "ensure_valid_access_token",
]
