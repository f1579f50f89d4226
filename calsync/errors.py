"""Sync error taxonomy.

Every failure that crosses the engine boundary is a ``SyncError`` carrying a
machine-readable ``reason`` and whether the caller may retry. A rejected sync
cursor is not an error and never appears here.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for sync engine failures."""

    reason = "sync_failed"
    retryable = False
    status_code = 500

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        if reason:
            self.reason = reason

    def to_payload(self) -> dict:
        return {
            "error": self.reason,
            "detail": str(self),
            "retryable": self.retryable,
        }


class NotFoundError(SyncError):
    """Unknown account or mapping."""

    reason = "not_found"
    status_code = 404


class CredentialRefreshError(SyncError):
    """The provider rejected the refresh token; the user must re-authorize."""

    reason = "credential_refresh_failed"
    status_code = 409


class ProviderUnavailableError(SyncError):
    """Transport failure, timeout or 5xx from the provider."""

    reason = "provider_unavailable"
    retryable = True
    status_code = 503


class ProviderRequestError(SyncError):
    """Non-transient provider rejection (4xx other than an invalidated cursor)."""

    reason = "provider_error"
    status_code = 502
