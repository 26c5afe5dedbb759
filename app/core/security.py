"""Bearer tokens for the mobile client: HS256 JWTs whose ``sub`` is the user id."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from app.config import get_settings

settings = get_settings()

ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24


def _signing_keys() -> List[str]:
    # BACKEND_JWT_SECRET signs new tokens; SECRET_KEY is still accepted
    return list(dict.fromkeys(k for k in (settings.BACKEND_JWT_SECRET, settings.SECRET_KEY) if k))


def create_access_token(user_id: int, expires_minutes: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    lifetime = ACCESS_TOKEN_EXPIRE_MINUTES if expires_minutes is None else expires_minutes
    claims = {"sub": str(user_id), "iat": now, "exp": now + timedelta(minutes=lifetime)}
    return jwt.encode(claims, _signing_keys()[0], algorithm=settings.ALGORITHM)


def user_id_from_token(token: str) -> Optional[int]:
    """Return the user id a valid token was issued for, or None."""
    for key in _signing_keys():
        try:
            claims = jwt.decode(token, key, algorithms=[settings.ALGORITHM])
        except ExpiredSignatureError:
            return None
        except JWTError:
            continue
        try:
            return int(claims.get("sub"))
        except (TypeError, ValueError):
            return None
    return None
