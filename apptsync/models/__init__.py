"""Data models for apptsync."""

from apptsync.models.appointment import Appointment
from apptsync.models.integration import (
    CONFERENCE_PROVIDERS,
    CONNECTABLE_PROVIDERS,
    Integration,
    Provider,
    TokenSet,
    credential_provider_for,
)
from apptsync.models.sync import (
    EventSpec,
    ExternalEvent,
    LedgerEntry,
    PullResult,
    SyncResult,
    SyncResultKind,
)
from apptsync.models.user import User

__all__ = [
    "Appointment",
    "CONFERENCE_PROVIDERS",
    "CONNECTABLE_PROVIDERS",
    "Integration",
    "Provider",
    "TokenSet",
    "credential_provider_for",
    "EventSpec",
    "ExternalEvent",
    "LedgerEntry",
    "PullResult",
    "SyncResult",
    "SyncResultKind",
    "User",
]
