from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import async_session
from .models import User, UserRole
from .notifications import AuditLogNotificationSink, NotificationSink
from .utils.auth import decode_access_token, parse_bearer


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


async def get_current_user_id(
    authorization: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> int:
    settings = get_settings()
    try:
        token = parse_bearer(authorization)
        user_id = decode_access_token(token, secret=settings.auth_secret, algorithms=[settings.auth_algorithm])
    except ValueError as exc:
        raise _unauthorized(str(exc)) from exc

    try:
        found = await session.scalar(select(User.id).where(User.id == user_id))
    except ProgrammingError as exc:
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="user store unavailable") from exc
    if found is None:
        raise _unauthorized("unknown user")
    return user_id


async def get_admin_role(
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> UserRole:
    role = await session.scalar(select(User.role).where(User.id == user_id))
    if role != UserRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="administrator role required")
    return UserRole.ADMIN


def get_notification_sink() -> NotificationSink:
    return AuditLogNotificationSink()
