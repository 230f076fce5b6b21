"""Repository for Appointment database operations.

Only the narrow slice of the scheduling domain the sync engine depends on.
"""

import logging
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session

from apptsync.models.appointment import Appointment
from apptsync.database.models import AppointmentDB
from apptsync.timeutil import to_utc_naive, utcnow

logger = logging.getLogger(__name__)


class AppointmentRepository:
    """Repository for Appointment database operations."""

    def __init__(self, db: Session):
        self.db = db

    def _get_row(self, appointment_id: str) -> Optional[AppointmentDB]:
        return self.db.query(AppointmentDB).filter(AppointmentDB.id == appointment_id).first()

    def get(self, appointment_id: str) -> Optional[Appointment]:
        row = self._get_row(appointment_id)
        return row.to_pydantic() if row else None

    def get_for_user(self, appointment_id: str, user_id: str) -> Optional[Appointment]:
        """Get appointment by ID, only if owned by `user_id`."""
        row = self.db.query(AppointmentDB).filter(
            AppointmentDB.id == appointment_id,
            AppointmentDB.user_id == user_id,
        ).first()
        return row.to_pydantic() if row else None

    def create(
        self,
        user_id: str,
        title: str,
        start_time: datetime,
        end_time: datetime,
        *,
        location: Optional[str] = None,
        notes: Optional[str] = None,
        client_id: Optional[str] = None,
        calendar_synced: bool = False,
        commit: bool = True,
    ) -> AppointmentDB:
        """Create an appointment.

        With `commit=False` the row is only flushed so the caller can add
        dependent rows and commit (or roll back) them together.
        """
        row = AppointmentDB(
            user_id=user_id,
            client_id=client_id,
            title=title,
            start_time=to_utc_naive(start_time),
            end_time=to_utc_naive(end_time),
            location=location,
            notes=notes,
            calendar_synced=calendar_synced,
        )
        self.db.add(row)
        if not commit:
            self.db.flush()
            return row
        try:
            self.db.commit()
            self.db.refresh(row)
            logger.debug(f"Created appointment {row.id}: {title[:50]}")
            return row
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to create appointment for user {user_id}: {type(e).__name__}: {str(e)}")
            raise

    def mark_calendar_synced(self, appointment_id: str, synced: bool = True) -> None:
        row = self._get_row(appointment_id)
        if row is None or bool(row.calendar_synced) == synced:
            return
        try:
            row.calendar_synced = synced
            row.updated_at = utcnow()
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to mark appointment {appointment_id} synced: {type(e).__name__}: {str(e)}")
            raise

    def set_video(self, appointment_id: str, url: Optional[str], platform: Optional[str]) -> None:
        """Attach (or clear, with None) the conference join URL."""
        row = self._get_row(appointment_id)
        if row is None:
            return
        try:
            row.video_url = url
            row.video_platform = platform
            row.updated_at = utcnow()
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to set video link on appointment {appointment_id}: {type(e).__name__}: {str(e)}")
            raise

    def delete(self, appointment_id: str, user_id: str) -> bool:
        """Delete an appointment owned by `user_id`; ledger rows go with it."""
        row = self.db.query(AppointmentDB).filter(
            AppointmentDB.id == appointment_id,
            AppointmentDB.user_id == user_id,
        ).first()
        if row is None:
            return False
        try:
            self.db.delete(row)
            self.db.commit()
            logger.debug(f"Deleted appointment {appointment_id}")
            return True
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to delete appointment {appointment_id}: {type(e).__name__}: {str(e)}")
            raise
