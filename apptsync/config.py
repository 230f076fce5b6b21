"""Configuration for apptsync.

Provider OAuth clients and sync tuning knobs are read from the environment once
at startup and passed explicitly into the adapters and the engine.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


class OAuthClientConfig(BaseModel):
    """OAuth2 client registration for one provider."""

    client_id: str = Field("", description="OAuth client ID")
    client_secret: str = Field("", description="OAuth client secret")
    redirect_uri: str = Field("", description="Registered callback URL")

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    @classmethod
    def from_env(cls, prefix: str) -> "OAuthClientConfig":
        """Read `<PREFIX>_CLIENT_ID`, `<PREFIX>_CLIENT_SECRET` and `<PREFIX>_REDIRECT_URI`."""
        return cls(
            client_id=os.getenv(f"{prefix}_CLIENT_ID", ""),
            client_secret=os.getenv(f"{prefix}_CLIENT_SECRET", ""),
            redirect_uri=os.getenv(f"{prefix}_REDIRECT_URI", ""),
        )


class SyncSettings(BaseModel):
    """Process-wide settings for adapters and the reconciliation engine."""

    google: OAuthClientConfig = Field(default_factory=OAuthClientConfig)
    microsoft: OAuthClientConfig = Field(default_factory=OAuthClientConfig)
    zoom: OAuthClientConfig = Field(default_factory=OAuthClientConfig)
    microsoft_tenant: str = "common"

    app_url: str = "http://localhost:3000"

    http_timeout_sec: float = 15.0
    pull_window_days: int = 30
    token_refresh_skew_sec: int = 60
    sync_lock_timeout_sec: float = 30.0
    sync_claim_stale_sec: int = 300
    # 0 disables the background pull runner.
    pull_interval_sec: int = 0

    default_calendar_id: str = "primary"
    zoom_timezone: str = "UTC"

    @classmethod
    def from_env(cls) -> "SyncSettings":
        return cls(
            google=OAuthClientConfig.from_env("GOOGLE"),
            microsoft=OAuthClientConfig.from_env("MICROSOFT"),
            zoom=OAuthClientConfig.from_env("ZOOM"),
            microsoft_tenant=os.getenv("MICROSOFT_TENANT", "common"),
            app_url=os.getenv("APP_URL", "http://localhost:3000").rstrip("/"),
            http_timeout_sec=_env_float("HTTP_TIMEOUT_SEC", 15.0),
            pull_window_days=_env_int("PULL_WINDOW_DAYS", 30),
            token_refresh_skew_sec=_env_int("TOKEN_REFRESH_SKEW_SEC", 60),
            sync_lock_timeout_sec=_env_float("SYNC_LOCK_TIMEOUT_SEC", 30.0),
            sync_claim_stale_sec=_env_int("SYNC_CLAIM_STALE_SEC", 300),
            pull_interval_sec=_env_int("PULL_INTERVAL_SEC", 0),
            default_calendar_id=os.getenv("GOOGLE_CALENDAR_ID", "primary"),
        )


_settings: Optional[SyncSettings] = None


def get_settings() -> SyncSettings:
    """Return the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = SyncSettings.from_env()
    return _settings
