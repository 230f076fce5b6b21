"""Appointment data model for apptsync."""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class Appointment(BaseModel):
    """Appointment as owned by the scheduling domain.

    The sync engine only ever changes `calendar_synced` and the video fields.
    """

    id: str = Field(..., description="Unique appointment identifier")
    user_id: str = Field(..., description="Owning user ID")
    client_id: Optional[str] = Field(None, description="Optional client reference")
    title: str = Field(..., description="Appointment title")
    start_time: datetime = Field(..., description="Start (naive UTC)")
    end_time: datetime = Field(..., description="End (naive UTC)")
    location: Optional[str] = Field(None, description="Free-form location")
    notes: Optional[str] = Field(None, description="Notes shown as the event description")
    calendar_synced: bool = Field(False, description="Whether a calendar mirror exists")
    video_url: Optional[str] = Field(None, description="Conference join URL")
    video_platform: Optional[str] = Field(None, description="Conference platform tag")

    # Joined from the client record, when there is one.
    client_name: Optional[str] = Field(None, description="Client display name")
    client_email: Optional[str] = Field(None, description="Client email, used as attendee")
