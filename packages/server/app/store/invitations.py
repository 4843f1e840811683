"""Organization invitation persistence."""

from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.models.base import utcnow
from app.models.invitation import OrgInvitation
from app.models.organization import Organization
from app.store.base import contains, count_rows, page_window, translate_errors
from credhub_shared.schemas.organizations import InvitationStatus

# An invitation in either of these states blocks a new one for the same email
_BLOCKING_STATUSES = (InvitationStatus.PENDING.value, InvitationStatus.ACCEPTED.value)


async def check_invitation_exists(session: AsyncSession, email: str, org_id: uuid.UUID) -> bool:
    result = await session.execute(
        select(OrgInvitation.id)
        .where(
            OrgInvitation.email == email.lower(),
            OrgInvitation.org_id == org_id,
            OrgInvitation.status.in_(_BLOCKING_STATUSES),
        )
        .limit(1)
    )
    return result.first() is not None


async def create_invitation(
    session: AsyncSession,
    org_id: uuid.UUID,
    email: str,
    role_ids: list[str],
    created_by: uuid.UUID,
) -> OrgInvitation:
    invitation = OrgInvitation(
        org_id=org_id,
        email=email.lower(),
        org_roles=[str(r) for r in role_ids],
        created_by=created_by,
    )
    async with translate_errors("invitation.create"):
        session.add(invitation)
        await session.flush()
    return invitation


async def get_invitation(session: AsyncSession, invitation_id: uuid.UUID) -> Optional[OrgInvitation]:
    result = await session.execute(select(OrgInvitation).where(OrgInvitation.id == invitation_id))
    return result.scalar_one_or_none()


async def save_invitation(session: AsyncSession, invitation: OrgInvitation) -> OrgInvitation:
    invitation.updated_at = utcnow()
    async with translate_errors("invitation.save"):
        session.add(invitation)
        await session.flush()
    return invitation


async def delete_invitation(session: AsyncSession, invitation_id: uuid.UUID) -> int:
    async with translate_errors("invitation.delete"):
        result = await session.execute(delete(OrgInvitation).where(OrgInvitation.id == invitation_id))
    return result.rowcount


async def list_org_invitations(
    session: AsyncSession,
    org_id: uuid.UUID,
    page_number: int,
    page_size: int,
    search: str = "",
) -> tuple[list[OrgInvitation], int]:
    stmt = select(OrgInvitation).where(OrgInvitation.org_id == org_id)
    if search:
        stmt = stmt.where(contains(OrgInvitation.email, search))
    total = await count_rows(session, stmt)
    result = await session.execute(
        page_window(stmt.order_by(OrgInvitation.created_at.desc()), page_number, page_size)
    )
    return list(result.scalars().all()), total


async def list_user_invitations(
    session: AsyncSession,
    email: str,
    status: Optional[str],
    page_number: int,
    page_size: int,
    search: str = "",
) -> tuple[list[tuple[OrgInvitation, str]], int]:
    """Invitations addressed to ``email`` with the inviting organization's name."""
    stmt = (
        select(OrgInvitation, Organization.name)
        .join(Organization, Organization.id == OrgInvitation.org_id)
        .where(OrgInvitation.email == email.lower())
    )
    if status:
        stmt = stmt.where(OrgInvitation.status == status)
    if search:
        stmt = stmt.where(contains(Organization.name, search))
    total = await count_rows(session, stmt)
    result = await session.execute(
        page_window(stmt.order_by(OrgInvitation.created_at.desc()), page_number, page_size)
    )
    return list(result.all()), total


async def org_invitations(session: AsyncSession, org_id: uuid.UUID) -> list[OrgInvitation]:
    result = await session.execute(select(OrgInvitation).where(OrgInvitation.org_id == org_id))
    return list(result.scalars().all())
