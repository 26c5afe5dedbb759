"""Dependencies for v1 API routes."""

from typing import Callable, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AuthenticationError
from app.core.security import user_id_from_token
from app.database import get_db
from app.models import User
from app.services.payment_service import PaymentProvider, get_payment_provider

security = HTTPBearer(auto_error=False)


async def get_current_v1_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    if credentials is None:
        raise AuthenticationError("User not authenticated")

    user_id = user_id_from_token(credentials.credentials)
    if user_id is None:
        raise AuthenticationError("Invalid or expired token")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        raise AuthenticationError("User not found")
    return user


def get_provider_resolver() -> Callable[[Optional[str]], PaymentProvider]:
    """Return the callable that maps a provider name to an adapter (overridable in tests)."""
    return get_payment_provider
