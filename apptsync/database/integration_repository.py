"""Repository for per-user provider integrations and their OAuth credentials.

Security notes:
- Credential blobs hold refresh tokens: store encrypted-at-rest and never log raw values.
- Callers must ensure values are not leaked to client or logs.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from apptsync.database.models import IntegrationDB
from apptsync.timeutil import utcnow

logger = logging.getLogger(__name__)


def _require_fernet() -> Fernet:
    key = os.getenv("TOKEN_ENCRYPTION_KEY", "").strip()
    if not key:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY is not set. "
            "Set it to a Fernet key (base64 urlsafe 32-byte) to enable encrypted credential storage."
        )
    return Fernet(key)


def encrypt_secret(raw: str) -> str:
    f = _require_fernet()
    return f.encrypt(raw.encode("utf-8")).decode("utf-8")


def decrypt_secret(enc: str) -> str:
    f = _require_fernet()
    try:
        return f.decrypt(enc.encode("utf-8")).decode("utf-8")
    except InvalidToken as e:
        raise RuntimeError("Stored credentials could not be decrypted; TOKEN_ENCRYPTION_KEY may be wrong.") from e


def encrypt_blob(blob: Dict[str, Any]) -> str:
    return encrypt_secret(json.dumps(blob, sort_keys=True))


def decrypt_blob(enc: str) -> Dict[str, Any]:
    return json.loads(decrypt_secret(enc))


class IntegrationRepository:
    """Repository for IntegrationDB rows (one per user/provider)."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, user_id: str, provider: str) -> Optional[IntegrationDB]:
        return (
            self.db.query(IntegrationDB)
            .filter(IntegrationDB.user_id == user_id, IntegrationDB.provider == provider)
            .first()
        )

    def get_active(self, user_id: str, provider: str) -> Optional[IntegrationDB]:
        return (
            self.db.query(IntegrationDB)
            .filter(
                IntegrationDB.user_id == user_id,
                IntegrationDB.provider == provider,
                IntegrationDB.is_active.is_(True),
            )
            .first()
        )

    def reload(self, integration_id: str) -> Optional[IntegrationDB]:
        """Re-read a row from the database, discarding what the session cached."""
        return (
            self.db.query(IntegrationDB)
            .filter(IntegrationDB.id == integration_id)
            .populate_existing()
            .first()
        )

    def list_for_user(self, user_id: str) -> List[IntegrationDB]:
        return (
            self.db.query(IntegrationDB)
            .filter(IntegrationDB.user_id == user_id)
            .order_by(IntegrationDB.provider)
            .all()
        )

    def list_active(self, providers: Optional[List[str]] = None) -> List[IntegrationDB]:
        query = self.db.query(IntegrationDB).filter(IntegrationDB.is_active.is_(True))
        if providers:
            query = query.filter(IntegrationDB.provider.in_(providers))
        return query.order_by(IntegrationDB.user_id, IntegrationDB.provider).all()

    def read_credentials(self, row: IntegrationDB) -> Dict[str, Any]:
        return decrypt_blob(row.credentials_encrypted)

    def upsert(self, user_id: str, provider: str, credentials: Dict[str, Any]) -> IntegrationDB:
        """Create or replace the integration for (user, provider) and mark it active."""
        try:
            row = self.get(user_id, provider)
            if row is None:
                row = IntegrationDB(
                    user_id=user_id,
                    provider=provider,
                    credentials_encrypted=encrypt_blob(credentials),
                    is_active=True,
                )
                self.db.add(row)
            else:
                row.credentials_encrypted = encrypt_blob(credentials)
                row.is_active = True
                row.updated_at = utcnow()
            self.db.commit()
        except IntegrityError:
            # A concurrent callback inserted the row first; overwrite it.
            self.db.rollback()
            row = self.get(user_id, provider)
            if row is None:
                raise
            row.credentials_encrypted = encrypt_blob(credentials)
            row.is_active = True
            row.updated_at = utcnow()
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to save {provider} integration for user {user_id}: {type(e).__name__}: {str(e)}")
            raise
        self.db.refresh(row)
        logger.debug(f"Saved {provider} integration {row.id} for user {user_id}")
        return row

    def replace_credentials(self, row: IntegrationDB, credentials: Dict[str, Any]) -> IntegrationDB:
        """Replace the stored credential blob in place."""
        try:
            row.credentials_encrypted = encrypt_blob(credentials)
            row.updated_at = utcnow()
            self.db.commit()
            self.db.refresh(row)
            return row
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to store refreshed credentials for integration {row.id}: {type(e).__name__}: {str(e)}")
            raise

    def deactivate(self, row: IntegrationDB) -> None:
        try:
            row.is_active = False
            row.updated_at = utcnow()
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to deactivate integration {row.id}: {type(e).__name__}: {str(e)}")
            raise

    def touch_last_synced(self, row: IntegrationDB) -> None:
        try:
            row.last_synced_at = utcnow()
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to update last_synced_at for integration {row.id}: {type(e).__name__}: {str(e)}")
            raise

    def delete(self, user_id: str, provider: str) -> int:
        """Delete the integration and every ledger entry that depends on it.

        Returns number of integration rows deleted (0 or 1).
        """
        row = self.get(user_id, provider)
        if row is None:
            return 0
        try:
            # ORM cascade removes the ledger rows along with the integration.
            dropped = len(row.sync_entries)
            self.db.delete(row)
            self.db.commit()
            logger.debug(f"Deleted {provider} integration for user {user_id} and {dropped} ledger entries")
            return 1
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to delete {provider} integration for user {user_id}: {type(e).__name__}: {str(e)}")
            raise
