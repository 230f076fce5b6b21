"""JWT token generation and validation for apptsync.

Two token kinds share the signing key: bearer access tokens for API callers
and short-lived OAuth `state` tokens that carry the user and provider through
a provider's consent screen.
"""

import os
import jwt
from datetime import datetime, timedelta
from typing import Optional, Dict, Tuple
from dotenv import load_dotenv

load_dotenv()

# JWT configuration
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))
OAUTH_STATE_EXPIRATION_MINUTES = int(os.getenv("OAUTH_STATE_EXPIRATION_MINUTES", "10"))

OAUTH_STATE_PURPOSE = "oauth_state"


def create_access_token(user_id: str) -> str:
    """Create a JWT access token for a user.

    Args:
        user_id: User ID to encode in token

    Returns:
        Encoded JWT token string
    """
    payload = {
        "sub": user_id,  # Subject (user ID)
        "exp": datetime.utcnow() + timedelta(hours=JWT_EXPIRATION_HOURS),
        "iat": datetime.utcnow(),  # Issued at
    }
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict]:
    """Decode and validate a JWT, returning None if it is invalid or expired."""
    try:
        return jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def get_user_id_from_token(token: str) -> Optional[str]:
    """Extract user ID from a bearer access token (state tokens are rejected)."""
    payload = decode_access_token(token)
    if payload and payload.get("purpose") is None:
        return payload.get("sub")
    return None


def create_oauth_state(user_id: str, provider: str) -> str:
    payload = {
        "sub": user_id,
        "provider": provider,
        "purpose": OAUTH_STATE_PURPOSE,
        "exp": datetime.utcnow() + timedelta(minutes=OAUTH_STATE_EXPIRATION_MINUTES),
        "iat": datetime.utcnow(),
    }
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_oauth_state(state: str) -> Optional[Tuple[str, str]]:
    """Return (user_id, provider) for a valid state token, else None."""
    payload = decode_access_token(state)
    if not payload or payload.get("purpose") != OAUTH_STATE_PURPOSE:
        return None
    user_id = payload.get("sub")
    provider = payload.get("provider")
    if not user_id or not provider:
        return None
    return user_id, provider
