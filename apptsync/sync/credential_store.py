"""Per-user OAuth credential storage with single-flight refresh."""

import logging
from typing import List, Optional
from sqlalchemy.orm import Session

from apptsync.config import SyncSettings, get_settings
from apptsync.database.integration_repository import IntegrationRepository
from apptsync.database.models import IntegrationDB
from apptsync.errors import NotConnected, RefreshFailed
from apptsync.integrations.registry import AdapterRegistry
from apptsync.models.integration import Integration, Provider, TokenSet, credential_provider_for
from apptsync.sync.locks import KeyedLocks
from apptsync.timeutil import utcnow

logger = logging.getLogger(__name__)

# Shared by every CredentialStore in the process.
refresh_locks = KeyedLocks()


class CredentialStore:
    """Reads, saves and refreshes token sets per (user, provider).

    `provider` may be any provider; it is mapped to the one whose integration
    holds the grant (Google Meet uses the Google Calendar integration).
    """

    def __init__(
        self,
        db: Session,
        registry: AdapterRegistry,
        settings: Optional[SyncSettings] = None,
        *,
        locks: Optional[KeyedLocks] = None,
    ):
        self.db = db
        self.registry = registry
        self.settings = settings or get_settings()
        self.locks = locks if locks is not None else refresh_locks
        self.integrations = IntegrationRepository(db)

    def get_active_integration(self, user_id: str, provider) -> IntegrationDB:
        owner = credential_provider_for(provider).value
        row = self.integrations.get_active(user_id, owner)
        if row is None:
            raise NotConnected(owner)
        return row

    def get(self, user_id: str, provider) -> TokenSet:
        """Stored token set, without refreshing. Raises NotConnected."""
        row = self.get_active_integration(user_id, provider)
        return TokenSet.from_blob(self.integrations.read_credentials(row))

    def save(self, user_id: str, provider, token_set: TokenSet) -> Integration:
        """Store a token set (upsert on user/provider) and reactivate the integration."""
        owner = credential_provider_for(provider).value
        row = self.integrations.upsert(user_id, owner, token_set.to_blob())
        logger.info(f"Connected {owner} for user {user_id}")
        return row.to_pydantic()

    def list_integrations(self, user_id: str) -> List[Integration]:
        return [row.to_pydantic() for row in self.integrations.list_for_user(user_id)]

    def disconnect(self, user_id: str, provider) -> bool:
        """Delete the integration; its ledger entries are removed with it."""
        owner = credential_provider_for(provider).value
        deleted = self.integrations.delete(user_id, owner) > 0
        if deleted:
            logger.info(f"Disconnected {owner} for user {user_id}")
        return deleted

    def get_access_token(self, user_id: str, provider) -> str:
        """Return a usable access token, refreshing first when it is near expiry.

        A failed refresh is logged and the previous access token returned.
        Raises NotConnected when no active integration exists.
        """
        current = self.get(user_id, provider)
        if current.is_fresh(utcnow(), self.settings.token_refresh_skew_sec) or not current.refresh_token:
            return current.access_token
        try:
            return self.refresh_and_persist(user_id, provider, stale_access_token=current.access_token).access_token
        except RefreshFailed as e:
            logger.warning(
                f"Token refresh failed for {credential_provider_for(provider).value}, user {user_id}; "
                f"using previous token: {str(e)}"
            )
            return current.access_token

    def refresh_and_persist(
        self,
        user_id: str,
        provider,
        *,
        stale_access_token: Optional[str] = None,
    ) -> TokenSet:
        """Refresh through the provider and replace the stored blob.

        Single-flight per (user, provider). If another caller already swapped
        out `stale_access_token` while this one waited, the stored token set is
        returned as is. A permanent rejection deactivates the integration.

        Raises:
            RefreshFailed: If the provider rejects the refresh or cannot be reached
            NotConnected: If the integration is gone
        """
        owner = credential_provider_for(provider)
        adapter = self.registry.get(owner)
        try:
            with self.locks.hold((user_id, owner.value), timeout=self.settings.sync_lock_timeout_sec):
                row = self.get_active_integration(user_id, owner)
                row = self.integrations.reload(row.id) or row
                current = TokenSet.from_blob(self.integrations.read_credentials(row))
                if stale_access_token is not None and current.access_token != stale_access_token:
                    logger.debug(f"{owner.value} token for user {user_id} already refreshed by another caller")
                    return current
                if not current.refresh_token:
                    raise RefreshFailed(f"No refresh token stored for {owner.value}")
                try:
                    refreshed = adapter.refresh(current.refresh_token)
                except RefreshFailed as e:
                    if e.permanent:
                        logger.warning(f"{owner.value} refresh token for user {user_id} was revoked; deactivating")
                        self.integrations.deactivate(row)
                    raise
                if not refreshed.refresh_token:
                    refreshed.refresh_token = current.refresh_token
                self.integrations.replace_credentials(row, refreshed.to_blob())
                logger.debug(f"Refreshed {owner.value} token for user {user_id}")
                return refreshed
        except TimeoutError as e:
            raise RefreshFailed(f"Timed out waiting for {owner.value} refresh lock") from e
