"""Provider, token set and integration models for apptsync."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class Provider(str, Enum):
    """External providers the engine talks to."""
    GOOGLE_CALENDAR = "google_calendar"
    MICROSOFT_CALENDAR = "microsoft_calendar"
    ZOOM = "zoom"
    GOOGLE_MEET = "google_meet"


# Providers a user connects through OAuth. Google Meet rides on the Google Calendar grant.
CONNECTABLE_PROVIDERS = frozenset({Provider.GOOGLE_CALENDAR, Provider.MICROSOFT_CALENDAR, Provider.ZOOM})

CONFERENCE_PROVIDERS = frozenset({Provider.ZOOM, Provider.GOOGLE_MEET})


def credential_provider_for(provider: Provider) -> Provider:
    """Return the provider whose OAuth integration holds credentials for `provider`."""
    if Provider(provider) == Provider.GOOGLE_MEET:
        return Provider.GOOGLE_CALENDAR
    return Provider(provider)


class TokenSet(BaseModel):
    """OAuth2 token set.

    Providers return more than the fields modelled here; anything extra is kept
    in `extra` and written back verbatim so the stored blob stays opaque.
    """

    access_token: str = Field(..., description="Bearer token for API calls")
    refresh_token: Optional[str] = Field(None, description="Refresh token, if granted")
    expires_at: Optional[datetime] = Field(None, description="Access token expiry (naive UTC)")
    scope: Optional[str] = Field(None, description="Granted scopes")
    token_type: Optional[str] = Field(None, description="Usually 'Bearer'")
    extra: Dict[str, Any] = Field(default_factory=dict, description="Other provider fields")

    @classmethod
    def from_token_response(cls, data: Dict[str, Any], now: datetime) -> "TokenSet":
        """Build from an OAuth token endpoint response (`expires_in` is relative)."""
        known = {"access_token", "refresh_token", "expires_in", "scope", "token_type"}
        expires_at = None
        if data.get("expires_in") is not None:
            expires_at = now + timedelta(seconds=int(data["expires_in"]))
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
            scope=data.get("scope"),
            token_type=data.get("token_type"),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_blob(self) -> Dict[str, Any]:
        blob: Dict[str, Any] = dict(self.extra)
        blob.update(
            {
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "expires_at": self.expires_at.isoformat() if self.expires_at else None,
                "scope": self.scope,
                "token_type": self.token_type,
            }
        )
        return blob

    @classmethod
    def from_blob(cls, blob: Dict[str, Any]) -> "TokenSet":
        known = {"access_token", "refresh_token", "expires_at", "scope", "token_type"}
        expires_at = blob.get("expires_at")
        return cls(
            access_token=blob.get("access_token") or "",
            refresh_token=blob.get("refresh_token"),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            scope=blob.get("scope"),
            token_type=blob.get("token_type"),
            extra={k: v for k, v in blob.items() if k not in known},
        )

    def is_fresh(self, now: datetime, skew_seconds: int = 60) -> bool:
        """True when the access token is known to outlive `now + skew`."""
        if not self.access_token or self.expires_at is None:
            return False
        return self.expires_at > now + timedelta(seconds=skew_seconds)


class Integration(BaseModel):
    """A user's OAuth connection to one provider (credentials never included)."""

    id: str = Field(..., description="Integration ID")
    user_id: str = Field(..., description="Owning user ID")
    provider: Provider = Field(..., description="Connected provider")
    is_active: bool = Field(True, description="False once refresh is permanently rejected")
    last_synced_at: Optional[datetime] = Field(None, description="Last completed pull")
    created_at: Optional[datetime] = Field(None, description="Creation timestamp")

    class Config:
        """Pydantic configuration."""
        use_enum_values = True
