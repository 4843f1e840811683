"""User persistence and password reset tokens."""

from __future__ import annotations

from datetime import datetime
import uuid
from typing import Optional

from sqlalchemy import delete, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.errors import NotFoundError
from app.models.base import utcnow
from app.models.platform import PasswordResetToken
from app.models.role import OrgRole, UserOrgRole
from app.models.user import User
from app.store.base import contains, count_rows, page_window, translate_errors


async def get_user(session: AsyncSession, user_id: uuid.UUID) -> Optional[User]:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def require_user(session: AsyncSession, user_id: uuid.UUID) -> User:
    user = await get_user(session, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


async def get_user_by_email(session: AsyncSession, email: str) -> Optional[User]:
    result = await session.execute(select(User).where(User.email == email.strip().lower()))
    return result.scalar_one_or_none()


async def get_user_by_username(session: AsyncSession, username: str) -> Optional[User]:
    result = await session.execute(select(User).where(User.username == username))
    return result.scalar_one_or_none()


async def get_user_by_keycloak_id(session: AsyncSession, keycloak_user_id: str) -> Optional[User]:
    result = await session.execute(select(User).where(User.keycloak_user_id == keycloak_user_id))
    return result.scalar_one_or_none()


async def users_by_emails(session: AsyncSession, emails: list[str]) -> list[User]:
    if not emails:
        return []
    lowered = sorted({e.strip().lower() for e in emails})
    result = await session.execute(select(User).where(User.email.in_(lowered)))
    return list(result.scalars().all())


async def save_user(session: AsyncSession, user: User) -> User:
    user.updated_at = utcnow()
    async with translate_errors("user.save", "User already exists"):
        session.add(user)
        await session.flush()
    return user


async def find_org_users(
    session: AsyncSession,
    org_id: uuid.UUID,
    page_number: int,
    page_size: int,
    search: str = "",
) -> tuple[list[tuple[User, list[str]]], int]:
    """Members of an organization with their role names in it."""
    member_ids = select(UserOrgRole.user_id).where(UserOrgRole.org_id == org_id).distinct()
    stmt = select(User).where(User.id.in_(member_ids))
    if search:
        stmt = stmt.where(
            or_(contains(User.email, search), contains(User.first_name, search), contains(User.last_name, search))
        )
    total = await count_rows(session, stmt)
    result = await session.execute(page_window(stmt.order_by(User.email), page_number, page_size))
    users = list(result.scalars().all())
    if not users:
        return [], total

    roles_result = await session.execute(
        select(UserOrgRole.user_id, OrgRole.name)
        .join(OrgRole, OrgRole.id == UserOrgRole.org_role_id)
        .where(UserOrgRole.org_id == org_id, UserOrgRole.user_id.in_([u.id for u in users]))
    )
    roles: dict[uuid.UUID, list[str]] = {}
    for user_id, name in roles_result.all():
        roles.setdefault(user_id, []).append(name)
    return [(user, sorted(roles.get(user.id, []))) for user in users], total


# ---------------------------------------------------------------------------
# Password reset tokens
# ---------------------------------------------------------------------------

async def create_reset_token(
    session: AsyncSession, user_id: uuid.UUID, token: str, expires_at: datetime
) -> PasswordResetToken:
    row = PasswordResetToken(user_id=user_id, token=token, expires_at=expires_at)
    async with translate_errors("reset_token.create"):
        session.add(row)
        await session.flush()
    return row


async def get_reset_token(
    session: AsyncSession, user_id: uuid.UUID, token: str
) -> Optional[PasswordResetToken]:
    result = await session.execute(
        select(PasswordResetToken).where(
            PasswordResetToken.user_id == user_id, PasswordResetToken.token == token
        )
    )
    return result.scalar_one_or_none()


async def delete_reset_token(session: AsyncSession, token_id: uuid.UUID) -> None:
    async with translate_errors("reset_token.delete"):
        await session.execute(delete(PasswordResetToken).where(PasswordResetToken.id == token_id))


async def delete_expired_reset_tokens(session: AsyncSession, now: datetime) -> int:
    async with translate_errors("reset_token.purge"):
        result = await session.execute(
            delete(PasswordResetToken).where(PasswordResetToken.expires_at < now)
        )
    return result.rowcount
