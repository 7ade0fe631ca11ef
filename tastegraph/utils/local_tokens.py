"""HS256 bearer tokens identifying API callers."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from tastegraph.config.settings import settings

ALGORITHM = "HS256"


def create_access_token(user_id: str, email: str, expires_in: Optional[int] = None) -> str:
    """Issue a token for ``user_id``; lifetime defaults to LOCAL_AUTH_TOKEN_EXP_SECONDS."""
    now = datetime.now(timezone.utc)
    lifetime = expires_in if expires_in is not None else settings.LOCAL_AUTH_TOKEN_EXP_SECONDS
    payload = {
        "sub": user_id,
        "email": email,
        "iat": now,
        "exp": now + timedelta(seconds=lifetime),
    }
    return jwt.encode(payload, settings.LOCAL_AUTH_SECRET, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Decode and verify a token.

    Raises:
        ValueError: If the token is malformed, tampered with or expired
    """
    try:
        return jwt.decode(token, settings.LOCAL_AUTH_SECRET, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise ValueError(f"Invalid token: {exc}") from exc
