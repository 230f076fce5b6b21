"""Provider-agnostic event shapes, ledger entries and sync results."""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field

from apptsync.errors import SyncError
from apptsync.models.appointment import Appointment


class EventSpec(BaseModel):
    """What an adapter needs to create or update a remote event/meeting."""

    title: str = Field(..., description="Event title")
    notes: str = Field("", description="Description / body")
    location: str = Field("", description="Location string")
    start: datetime = Field(..., description="Start (naive UTC)")
    end: datetime = Field(..., description="End (naive UTC)")
    attendee_email: Optional[str] = Field(None, description="Single attendee to invite")
    attendee_name: Optional[str] = Field(None, description="Attendee display name")
    create_conference: bool = Field(False, description="Ask the provider for a conferencing link")
    request_id: Optional[str] = Field(None, description="Idempotency key for conference creation")

    @classmethod
    def from_appointment(
        cls,
        appointment: Appointment,
        *,
        create_conference: bool = False,
        request_id: Optional[str] = None,
    ) -> "EventSpec":
        return cls(
            title=appointment.title,
            notes=appointment.notes or "",
            location=appointment.location or "",
            start=appointment.start_time,
            end=appointment.end_time,
            attendee_email=appointment.client_email,
            attendee_name=appointment.client_name,
            create_conference=create_conference,
            request_id=request_id,
        )


class ExternalEvent(BaseModel):
    """A remote event/meeting mapped back to provider-agnostic fields.

    `start`/`end` are None when the provider returned an all-day or otherwise
    unschedulable item.
    """

    id: str = Field(..., description="Provider's opaque event/meeting ID")
    title: Optional[str] = None
    notes: Optional[str] = None
    location: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    join_url: Optional[str] = Field(None, description="Conference join URL, when one exists")


class LedgerEntry(BaseModel):
    """Mapping between a local appointment and a remote event for one provider.

    `external_event_id` is None only while a push holds the slot (a claim).
    """

    id: Optional[str] = None
    user_id: str
    appointment_id: str
    integration_id: str
    provider: str
    external_event_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_claim(self) -> bool:
        return self.external_event_id is None


class SyncResultKind(str, Enum):
    """Discriminator for `SyncResult`."""
    SUCCESS = "success"
    NOT_CONNECTED = "not_connected"
    NOT_FOUND = "not_found"
    ALREADY_SYNCED = "already_synced"
    SYNC_FAILED = "sync_failed"
    UNSUPPORTED = "unsupported"


_KIND_BY_ERROR = {
    "not_connected": SyncResultKind.NOT_CONNECTED,
    "not_found": SyncResultKind.NOT_FOUND,
    "already_synced": SyncResultKind.ALREADY_SYNCED,
    "unsupported": SyncResultKind.UNSUPPORTED,
}


class SyncResult(BaseModel):
    """Outcome of push, delete or conference provisioning."""

    kind: SyncResultKind = Field(..., description="Success or the failure kind")
    provider: str = Field(..., description="Provider the operation targeted")
    appointment_id: str = Field(..., description="Appointment the operation targeted")
    external_event_id: Optional[str] = Field(None, description="Remote event/meeting ID")
    join_url: Optional[str] = Field(None, description="Conference join URL (provisioning)")
    created: bool = Field(False, description="True when a new remote event was created")
    message: Optional[str] = Field(None, description="Human-readable failure reason")

    class Config:
        """Pydantic configuration."""
        use_enum_values = True

    @property
    def ok(self) -> bool:
        return self.kind == SyncResultKind.SUCCESS

    @classmethod
    def success(cls, provider: str, appointment_id: str, **kwargs) -> "SyncResult":
        return cls(kind=SyncResultKind.SUCCESS, provider=provider, appointment_id=appointment_id, **kwargs)

    @classmethod
    def from_error(cls, error: SyncError, provider: str, appointment_id: str) -> "SyncResult":
        kind = _KIND_BY_ERROR.get(error.kind, SyncResultKind.SYNC_FAILED)
        return cls(kind=kind, provider=provider, appointment_id=appointment_id, message=str(error))


class PullResult(BaseModel):
    """Outcome of importing remote events for one user/provider."""

    provider: str
    connected: bool = True
    imported_count: int = 0
    already_mirrored_count: int = 0
    skipped_count: int = 0
    imported_appointment_ids: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None
