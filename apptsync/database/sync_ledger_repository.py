"""Repository for the sync ledger (`calendar_sync` table).

Each row correlates one local appointment with one remote event or meeting for
one provider. Both uniqueness rules live in the schema:

- (appointment_id, provider): at most one mirror per provider per appointment
- (integration_id, external_event_id): a remote event is mirrored at most once

A row whose `external_event_id` is NULL is a claim: a push reserved the slot and
has not yet heard back from the provider.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from apptsync.database.models import CalendarSyncDB
from apptsync.errors import AlreadySynced
from apptsync.models.sync import LedgerEntry
from apptsync.timeutil import utcnow

logger = logging.getLogger(__name__)


class SyncLedgerRepository:
    """Repository for CalendarSyncDB rows."""

    def __init__(self, db: Session):
        self.db = db

    def _row_for(self, appointment_id: str, provider: str) -> Optional[CalendarSyncDB]:
        return (
            self.db.query(CalendarSyncDB)
            .filter(
                CalendarSyncDB.appointment_id == appointment_id,
                CalendarSyncDB.provider == provider,
            )
            .populate_existing()
            .first()
        )

    def find_by_appointment(self, appointment_id: str, provider: str) -> Optional[LedgerEntry]:
        """Entry for (appointment, provider), claims included."""
        row = self._row_for(appointment_id, provider)
        return row.to_pydantic() if row else None

    def find_by_external_id(
        self,
        external_event_id: str,
        provider: str,
        integration_id: Optional[str] = None,
    ) -> Optional[LedgerEntry]:
        query = self.db.query(CalendarSyncDB).filter(
            CalendarSyncDB.external_event_id == external_event_id,
            CalendarSyncDB.provider == provider,
        )
        if integration_id is not None:
            query = query.filter(CalendarSyncDB.integration_id == integration_id)
        row = query.first()
        return row.to_pydantic() if row else None

    def list_for_appointment(self, appointment_id: str) -> List[LedgerEntry]:
        rows = (
            self.db.query(CalendarSyncDB)
            .filter(CalendarSyncDB.appointment_id == appointment_id)
            .order_by(CalendarSyncDB.provider)
            .all()
        )
        return [row.to_pydantic() for row in rows]

    def upsert(self, entry: LedgerEntry, *, commit: bool = True) -> LedgerEntry:
        """Insert a completed entry.

        An existing entry with the same external ID is returned unchanged; any
        other existing entry, or a unique violation raised by the database,
        becomes `AlreadySynced`. On violation the whole session transaction is
        rolled back, so with `commit=False` rows the caller added alongside are
        discarded too.
        """
        existing = self._row_for(entry.appointment_id, entry.provider)
        if existing is not None:
            if existing.external_event_id == entry.external_event_id:
                return existing.to_pydantic()
            raise AlreadySynced(
                f"Appointment {entry.appointment_id} is already mirrored to {entry.provider}"
            )

        row = CalendarSyncDB.from_pydantic(entry)
        self.db.add(row)
        try:
            if commit:
                self.db.commit()
                self.db.refresh(row)
            else:
                self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            logger.info(
                f"Ledger conflict for appointment {entry.appointment_id} on {entry.provider}: {type(e).__name__}"
            )
            raise AlreadySynced(
                f"Appointment {entry.appointment_id} or event {entry.external_event_id} is already mirrored"
            ) from e
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to write ledger entry for appointment {entry.appointment_id}: {type(e).__name__}: {str(e)}")
            raise
        logger.debug(f"Recorded {entry.provider} event {entry.external_event_id} for appointment {entry.appointment_id}")
        return row.to_pydantic()

    def claim(
        self,
        user_id: str,
        appointment_id: str,
        integration_id: str,
        provider: str,
        *,
        stale_after_sec: Optional[int] = None,
    ) -> LedgerEntry:
        """Reserve the (appointment, provider) slot before creating a remote event.

        Raises AlreadySynced when another entry or live claim holds the slot. A
        claim not touched for `stale_after_sec` seconds is taken over.
        """
        existing = self._row_for(appointment_id, provider)
        if existing is not None:
            if existing.external_event_id is None and stale_after_sec is not None:
                if existing.updated_at < utcnow() - timedelta(seconds=stale_after_sec):
                    return self._take_over(existing)
            raise AlreadySynced(f"Appointment {appointment_id} already has a {provider} mirror or pending push")

        row = CalendarSyncDB(
            user_id=user_id,
            appointment_id=appointment_id,
            integration_id=integration_id,
            provider=provider,
            external_event_id=None,
        )
        self.db.add(row)
        try:
            self.db.commit()
            self.db.refresh(row)
        except IntegrityError as e:
            self.db.rollback()
            raise AlreadySynced(f"Lost the {provider} claim for appointment {appointment_id}") from e
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to claim ledger slot for appointment {appointment_id}: {type(e).__name__}: {str(e)}")
            raise
        return row.to_pydantic()

    def _take_over(self, stale: CalendarSyncDB) -> LedgerEntry:
        # Compare-and-set on updated_at so only one taker wins.
        now = utcnow()
        try:
            affected = (
                self.db.query(CalendarSyncDB)
                .filter(
                    CalendarSyncDB.id == stale.id,
                    CalendarSyncDB.external_event_id.is_(None),
                    CalendarSyncDB.updated_at == stale.updated_at,
                )
                .update({CalendarSyncDB.updated_at: now}, synchronize_session=False)
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to take over stale claim {stale.id}: {type(e).__name__}: {str(e)}")
            raise
        if affected != 1:
            raise AlreadySynced(f"Claim {stale.id} was taken over by another push")
        logger.warning(f"Took over stale {stale.provider} claim for appointment {stale.appointment_id}")
        self.db.refresh(stale)
        return stale.to_pydantic()

    def complete_claim(
        self,
        entry_id: str,
        external_event_id: str,
        *,
        claimed_at: Optional[datetime] = None,
    ) -> Optional[LedgerEntry]:
        """Fill in the provider's ID on a claim the caller still holds.

        Compare-and-set on a NULL external ID and, when `claimed_at` is given, on
        the claim's `updated_at` as returned by `claim`. A claim that another push
        took over or completed is never overwritten.

        Returns None if the claim no longer exists.

        Raises:
            AlreadySynced: If the claim was taken over or completed by another
                push, or the event is already mirrored by another appointment
        """
        filters = [CalendarSyncDB.id == entry_id, CalendarSyncDB.external_event_id.is_(None)]
        if claimed_at is not None:
            filters.append(CalendarSyncDB.updated_at == claimed_at)
        try:
            affected = (
                self.db.query(CalendarSyncDB)
                .filter(*filters)
                .update(
                    {CalendarSyncDB.external_event_id: external_event_id, CalendarSyncDB.updated_at: utcnow()},
                    synchronize_session=False,
                )
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise AlreadySynced(f"Event {external_event_id} is already mirrored by another appointment") from e
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to complete ledger claim {entry_id}: {type(e).__name__}: {str(e)}")
            raise

        row = self.db.query(CalendarSyncDB).filter(CalendarSyncDB.id == entry_id).populate_existing().first()
        if row is None:
            return None
        if affected != 1:
            logger.warning(
                f"Claim {entry_id} for appointment {row.appointment_id} was taken over; "
                f"not recording {row.provider} event {external_event_id}"
            )
            raise AlreadySynced(f"Claim {entry_id} was taken over by another push")
        return row.to_pydantic()

    def release_claim(self, entry_id: str, *, claimed_at: Optional[datetime] = None) -> bool:
        """Drop a claim that never received an external ID.

        With `claimed_at`, only a claim still holding that `updated_at` is
        dropped, so a push whose claim was taken over leaves the taker's alone.
        """
        filters = [CalendarSyncDB.id == entry_id, CalendarSyncDB.external_event_id.is_(None)]
        if claimed_at is not None:
            filters.append(CalendarSyncDB.updated_at == claimed_at)
        try:
            affected = self.db.query(CalendarSyncDB).filter(*filters).delete(synchronize_session=False)
            self.db.commit()
            return affected == 1
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to release ledger claim {entry_id}: {type(e).__name__}: {str(e)}")
            raise

    def delete(self, appointment_id: str, provider: str) -> bool:
        """Remove the entry for (appointment, provider). Returns False if none existed."""
        row = self._row_for(appointment_id, provider)
        if row is None:
            return False
        try:
            self.db.delete(row)
            self.db.commit()
            logger.debug(f"Removed {provider} ledger entry for appointment {appointment_id}")
            return True
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to remove {provider} ledger entry for appointment {appointment_id}: {type(e).__name__}: {str(e)}")
            raise
