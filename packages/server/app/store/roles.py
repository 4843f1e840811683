"""
Role catalog and user-org-role membership.

The catalog (``org_roles``) is platform-wide; ``user_org_roles`` binds a
user to a catalog role inside one organization, or platform-wide when
``org_id`` is null.
"""

from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.models.role import OrgRole, UserOrgRole
from app.models.user import User
from app.store.base import translate_errors
from credhub_shared.schemas.common import OrgRoles


async def list_org_roles(session: AsyncSession) -> list[OrgRole]:
    result = await session.execute(select(OrgRole).order_by(OrgRole.name))
    return list(result.scalars().all())


async def get_role_by_name(session: AsyncSession, name: str) -> Optional[OrgRole]:
    result = await session.execute(select(OrgRole).where(OrgRole.name == name))
    return result.scalar_one_or_none()


async def ensure_role(session: AsyncSession, name: str, description: str) -> OrgRole:
    role = await get_role_by_name(session, name)
    if role:
        return role
    role = OrgRole(name=name, description=description)
    async with translate_errors("org_role.create"):
        session.add(role)
        await session.flush()
    return role


async def user_org_roles(
    session: AsyncSession, user_id: uuid.UUID, org_id: uuid.UUID
) -> list[tuple[UserOrgRole, OrgRole]]:
    result = await session.execute(
        select(UserOrgRole, OrgRole)
        .join(OrgRole, OrgRole.id == UserOrgRole.org_role_id)
        .where(UserOrgRole.user_id == user_id, UserOrgRole.org_id == org_id)
    )
    return list(result.all())


async def role_names_by_org(session: AsyncSession, user_id: uuid.UUID) -> list[tuple[Optional[uuid.UUID], str]]:
    """Every (org_id, role name) pair the user holds; org_id is None for platform roles."""
    result = await session.execute(
        select(UserOrgRole.org_id, OrgRole.name)
        .join(OrgRole, OrgRole.id == UserOrgRole.org_role_id)
        .where(UserOrgRole.user_id == user_id)
    )
    return list(result.all())


async def add_user_org_roles(
    session: AsyncSession,
    user_id: uuid.UUID,
    org_id: Optional[uuid.UUID],
    bindings: list[tuple[uuid.UUID, Optional[str]]],
) -> list[UserOrgRole]:
    """Insert one row per (catalog role id, IdP role id) binding."""
    rows = [
        UserOrgRole(user_id=user_id, org_id=org_id, org_role_id=role_id, idp_role_id=idp_role_id)
        for role_id, idp_role_id in bindings
    ]
    async with translate_errors("user_org_role.create", "Role already assigned"):
        session.add_all(rows)
        await session.flush()
    return rows


async def delete_user_org_roles(session: AsyncSession, user_id: uuid.UUID, org_id: uuid.UUID) -> int:
    async with translate_errors("user_org_role.delete"):
        result = await session.execute(
            delete(UserOrgRole).where(UserOrgRole.user_id == user_id, UserOrgRole.org_id == org_id)
        )
    return result.rowcount


async def count_user_memberships(session: AsyncSession, user_id: uuid.UUID) -> int:
    """Number of distinct organizations the user belongs to."""
    result = await session.execute(
        select(func.count(func.distinct(UserOrgRole.org_id))).where(
            UserOrgRole.user_id == user_id, UserOrgRole.org_id.is_not(None)
        )
    )
    return result.scalar_one()


async def is_member(session: AsyncSession, user_id: uuid.UUID, org_id: uuid.UUID) -> bool:
    result = await session.execute(
        select(UserOrgRole.id)
        .where(UserOrgRole.user_id == user_id, UserOrgRole.org_id == org_id)
        .limit(1)
    )
    return result.first() is not None


async def org_members(session: AsyncSession, org_id: uuid.UUID) -> list[User]:
    member_ids = select(UserOrgRole.user_id).where(UserOrgRole.org_id == org_id).distinct()
    result = await session.execute(select(User).where(User.id.in_(member_ids)))
    return list(result.scalars().all())


async def get_org_owner(session: AsyncSession, org_id: uuid.UUID) -> Optional[User]:
    result = await session.execute(
        select(User)
        .join(UserOrgRole, UserOrgRole.user_id == User.id)
        .join(OrgRole, OrgRole.id == UserOrgRole.org_role_id)
        .where(UserOrgRole.org_id == org_id, OrgRole.name == OrgRoles.OWNER.value)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def is_platform_admin(session: AsyncSession, user_id: uuid.UUID) -> bool:
    result = await session.execute(
        select(UserOrgRole.id)
        .join(OrgRole, OrgRole.id == UserOrgRole.org_role_id)
        .where(
            UserOrgRole.user_id == user_id,
            UserOrgRole.org_id.is_(None),
            OrgRole.name == OrgRoles.PLATFORM_ADMIN.value,
        )
        .limit(1)
    )
    return result.first() is not None
