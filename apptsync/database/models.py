"""SQLAlchemy database models for apptsync."""

from datetime import datetime
import uuid
from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from apptsync.database.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class UserDB(Base):
    """Database model for User."""

    __tablename__ = "users"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_pydantic(self):
        """Convert database model to Pydantic model."""
        from apptsync.models.user import User
        return User(
            id=self.id,
            email=self.email,
            name=self.name,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_pydantic(cls, user):
        """Create database model from Pydantic model."""
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class ClientDB(Base):
    """Client record (scheduling domain). Only name/email are read here."""

    __tablename__ = "clients"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class AppointmentDB(Base):
    """Database model for Appointment."""

    __tablename__ = "appointments"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    client_id = Column(String, ForeignKey("clients.id", ondelete="SET NULL"), nullable=True)

    title = Column(String, nullable=False)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False)
    location = Column(String, nullable=True)
    notes = Column(String, nullable=True)

    calendar_synced = Column(Boolean, nullable=False, default=False)
    video_url = Column(String, nullable=True)
    video_platform = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = relationship("ClientDB", lazy="joined")
    sync_entries = relationship(
        "CalendarSyncDB",
        back_populates="appointment",
        cascade="all, delete-orphan",
    )

    def to_pydantic(self):
        """Convert database model to Pydantic model."""
        from apptsync.models.appointment import Appointment
        return Appointment(
            id=self.id,
            user_id=self.user_id,
            client_id=self.client_id,
            title=self.title,
            start_time=self.start_time,
            end_time=self.end_time,
            location=self.location,
            notes=self.notes,
            calendar_synced=bool(self.calendar_synced),
            video_url=self.video_url,
            video_platform=self.video_platform,
            client_name=self.client.name if self.client else None,
            client_email=self.client.email if self.client else None,
        )


class IntegrationDB(Base):
    """Per-user OAuth integration with one provider.

    The credential blob is stored encrypted-at-rest (see repository layer); do NOT log it.
    """

    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_integration_user_provider"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String, nullable=False)

    credentials_encrypted = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    sync_entries = relationship(
        "CalendarSyncDB",
        back_populates="integration",
        cascade="all, delete-orphan",
    )

    def to_pydantic(self):
        """Convert database model to Pydantic model (without credentials)."""
        from apptsync.models.integration import Integration
        return Integration(
            id=self.id,
            user_id=self.user_id,
            provider=self.provider,
            is_active=bool(self.is_active),
            last_synced_at=self.last_synced_at,
            created_at=self.created_at,
        )


class CalendarSyncDB(Base):
    """Sync ledger: one row per mirrored (appointment, provider).

    A row with a NULL external_event_id is a claim held by an in-flight push.
    """

    __tablename__ = "calendar_sync"
    __table_args__ = (
        UniqueConstraint("appointment_id", "provider", name="uq_calendar_sync_appointment_provider"),
        UniqueConstraint("integration_id", "external_event_id", name="uq_calendar_sync_integration_event"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    appointment_id = Column(String, ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True)
    integration_id = Column(String, ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False, index=True)
    external_event_id = Column(String, nullable=True)
    provider = Column(String, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    appointment = relationship("AppointmentDB", back_populates="sync_entries")
    integration = relationship("IntegrationDB", back_populates="sync_entries")

    def to_pydantic(self):
        """Convert database model to Pydantic model."""
        from apptsync.models.sync import LedgerEntry
        return LedgerEntry(
            id=self.id,
            user_id=self.user_id,
            appointment_id=self.appointment_id,
            integration_id=self.integration_id,
            provider=self.provider,
            external_event_id=self.external_event_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_pydantic(cls, entry):
        """Create database model from Pydantic model."""
        return cls(
            id=entry.id or _new_id(),
            user_id=entry.user_id,
            appointment_id=entry.appointment_id,
            integration_id=entry.integration_id,
            external_event_id=entry.external_event_id,
            provider=entry.provider,
        )
