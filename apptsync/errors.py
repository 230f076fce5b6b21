"""Error taxonomy for calendar and conferencing synchronization.

Adapters and repositories raise these; the reconciliation engine converts them
into `SyncResult` values at its public boundary so callers never see a partial
success.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for every failure scoped to one user/appointment/provider."""

    kind = "sync_failed"


class NotConnected(SyncError):
    """No active integration exists for the (user, provider) pair."""

    kind = "not_connected"

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"{provider} is not connected")


class AuthExchangeFailed(SyncError):
    """The provider rejected an authorization code exchange."""

    kind = "auth_exchange_failed"


class RefreshFailed(SyncError):
    """The provider rejected a refresh token.

    `permanent` is set when the provider reports the grant as invalid or
    revoked; the integration is deactivated in that case.
    """

    kind = "refresh_failed"

    def __init__(self, message: str, *, permanent: bool = False):
        self.permanent = permanent
        super().__init__(message)


class NotFound(SyncError):
    kind = "not_found"


class AlreadySynced(SyncError):
    """Another push already owns the (appointment, provider) ledger slot."""

    kind = "already_synced"


class SyncFailed(SyncError):
    """A remote call failed during push or provisioning."""

    kind = "sync_failed"

    def __init__(self, provider: str, cause: object):
        self.provider = provider
        self.cause = cause
        super().__init__(f"Failed to sync with {provider}: {cause}")


class ImportSkipped(SyncError):
    """A remote event could not be imported (e.g. all-day or malformed)."""

    kind = "import_skipped"


class UnsupportedOperation(SyncError):
    """The adapter does not carry the capability for the requested operation."""

    kind = "unsupported"


class ProviderError(SyncError):
    """Generic failure talking to a provider API."""

    kind = "sync_failed"

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
