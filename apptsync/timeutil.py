"""Timestamp helpers.

All datetimes are persisted as naive UTC. Provider payloads arrive as RFC 3339
strings with offsets (Google), offset-less UTC with 7 fractional digits
(Microsoft Graph) or `Z`-suffixed strings (Zoom).
"""

import re
from datetime import datetime, timezone
from typing import Optional

_FRACTION_RE = re.compile(r"\.(\d+)")


def utcnow() -> datetime:
    """Naive UTC now, matching what the database stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(dt: datetime) -> datetime:
    """Normalize an aware or naive (assumed UTC) datetime to naive UTC."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_rfc3339(dt: datetime) -> str:
    """Format as `YYYY-MM-DDTHH:MM:SSZ` (UTC, no fraction)."""
    return to_utc_naive(dt).replace(microsecond=0).isoformat() + "Z"


def parse_provider_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a provider timestamp into naive UTC. Returns None for empty values.

    Raises ValueError on malformed input.
    """
    if not value:
        return None
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    # fromisoformat only accepts up to microseconds.
    s = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), s, count=1)
    return to_utc_naive(datetime.fromisoformat(s))


def floor_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between two datetimes, rounded down."""
    return int((to_utc_naive(end) - to_utc_naive(start)).total_seconds() // 60)
