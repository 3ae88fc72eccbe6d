"""
Poller error taxonomy.

Every failure the poller raises derives from SyncError so a tick boundary can
catch poller failures without catching programming errors.
"""

from typing import Optional

TOO_OLD_REVISION = "TOO_OLD_REVISION"


class SyncError(Exception):
    """Base class for all order poller errors."""


class ConfigError(SyncError):
    """The engine cannot start (no tenants, storage unavailable)."""


class AuthError(SyncError):
    """The upstream rejected the tenant's API login."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamError(SyncError):
    """
    Non-success response from the ordering API.

    Carries the structured error body `{correlationId, error, errorDescription}`
    when the upstream sent one.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        correlation_id: str = "",
        error: str = "",
        error_description: str = "",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.correlation_id = correlation_id
        self.error = error
        self.error_description = error_description


class StaleCursorError(UpstreamError):
    """Requested revision is older than the upstream keeps history for."""


class TransientError(UpstreamError):
    """Any other upstream or transport failure; the next tick retries."""


class NoCursorError(SyncError):
    """No revision has been stored for the tenant yet."""

    def __init__(self, tenant_id: int) -> None:
        super().__init__(f"no stored revision for tenant {tenant_id}")
        self.tenant_id = tenant_id


class IngestionError(SyncError):
    """A batch could not be persisted; the whole batch was rolled back."""
