import logging

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import PyJWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lab_booking.config import get_settings
from lab_booking.core.exceptions import ForbiddenError, UnauthorizedError
from lab_booking.core.security import decode_token
from lab_booking.database import get_db
from lab_booking.models.user import User, UserRole

security_scheme = HTTPBearer()
logger = logging.getLogger(__name__)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the identity token to a local user, provisioning it on first use."""
    try:
        payload = decode_token(credentials.credentials)
        if payload.get("type") != "access":
            raise UnauthorizedError("Invalid token type")
        external_id = str(payload["sub"])
    except (PyJWTError, KeyError, ValueError):
        raise UnauthorizedError("Invalid or expired token")

    result = await db.execute(select(User).where(User.external_id == external_id))
    user = result.scalar_one_or_none()

    if user is None:
        settings = get_settings()
        user = User(
            external_id=external_id,
            email=payload.get("email"),
            name=payload.get("name") or external_id,
            role=(
                UserRole.ADMIN
                if external_id in settings.ADMIN_EXTERNAL_IDS
                else UserRole.USER
            ),
        )
        db.add(user)
        await db.commit()
        logger.info("Provisioned user %s (%s)", external_id, user.role.value)
    if not user.is_active:
        raise UnauthorizedError("User account is inactive")

    return user


async def get_current_admin(
    current_user: User = Depends(get_current_user),
) -> User:
    """Require admin role."""
    if current_user.role != UserRole.ADMIN:
        raise ForbiddenError("Admin access required")
    return current_user
