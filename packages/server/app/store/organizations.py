"""
Organization persistence: CRUD, listings, DIDs, webhook endpoints and the
deletion cascade.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from sqlalchemy import delete, func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.errors import NotFoundError
from app.models.activity import UserActivity
from app.models.base import utcnow
from app.models.invitation import OrgInvitation
from app.models.organization import Organization, OrgDid, OrgNotificationEndpoint
from app.models.role import OrgRole, UserOrgRole
from app.store.base import contains, count_rows, page_window, translate_errors

log = structlog.get_logger()

# Dependent tables, children first; the organisation row goes last
CASCADE_TABLES = (
    ("user_activity", UserActivity),
    ("user_org_roles", UserOrgRole),
    ("org_invitations", OrgInvitation),
    ("notification", OrgNotificationEndpoint),
    ("org_dids", OrgDid),
)


async def get_organization(session: AsyncSession, org_id: uuid.UUID) -> Optional[Organization]:
    result = await session.execute(select(Organization).where(Organization.id == org_id))
    return result.scalar_one_or_none()


async def require_organization(session: AsyncSession, org_id: uuid.UUID) -> Organization:
    org = await get_organization(session, org_id)
    if not org:
        raise NotFoundError("Organization not found")
    return org


async def get_by_slug(session: AsyncSession, slug: str) -> Optional[Organization]:
    result = await session.execute(select(Organization).where(Organization.slug == slug))
    return result.scalar_one_or_none()


async def get_by_name(session: AsyncSession, name: str) -> Optional[Organization]:
    result = await session.execute(
        select(Organization).where(func.lower(Organization.name) == name.lower())
    )
    return result.scalar_one_or_none()


async def create_organization(session: AsyncSession, org: Organization) -> Organization:
    async with translate_errors("organization.create", "Organization already exists"):
        session.add(org)
        await session.flush()
    return org


async def save_organization(session: AsyncSession, org: Organization) -> Organization:
    org.updated_at = utcnow()
    async with translate_errors("organization.save", "Organization already exists"):
        session.add(org)
        await session.flush()
    return org


async def list_user_organizations(
    session: AsyncSession,
    user_id: uuid.UUID,
    page_number: int,
    page_size: int,
    search: str = "",
) -> tuple[list[tuple[Organization, list[str]]], int]:
    """Organizations the user holds any role in, with the role names."""
    member_org_ids = (
        select(UserOrgRole.org_id)
        .where(UserOrgRole.user_id == user_id, UserOrgRole.org_id.is_not(None))
        .distinct()
    )
    stmt = select(Organization).where(Organization.id.in_(member_org_ids))
    if search:
        stmt = stmt.where(or_(contains(Organization.name, search), contains(Organization.description, search)))
    total = await count_rows(session, stmt)

    result = await session.execute(
        page_window(stmt.order_by(Organization.created_at.desc()), page_number, page_size)
    )
    orgs = list(result.scalars().all())
    if not orgs:
        return [], total

    roles_result = await session.execute(
        select(UserOrgRole.org_id, OrgRole.name)
        .join(OrgRole, OrgRole.id == UserOrgRole.org_role_id)
        .where(UserOrgRole.user_id == user_id, UserOrgRole.org_id.in_([o.id for o in orgs]))
    )
    roles: dict[uuid.UUID, list[str]] = {}
    for org_id, name in roles_result.all():
        roles.setdefault(org_id, []).append(name)
    return [(org, sorted(roles.get(org.id, []))) for org in orgs], total


async def list_public_organizations(
    session: AsyncSession, page_number: int, page_size: int, search: str = ""
) -> tuple[list[Organization], int]:
    stmt = select(Organization).where(Organization.public_profile.is_(True))
    if search:
        stmt = stmt.where(or_(contains(Organization.name, search), contains(Organization.description, search)))
    total = await count_rows(session, stmt)
    result = await session.execute(
        page_window(stmt.order_by(Organization.name), page_number, page_size)
    )
    return list(result.scalars().all()), total


async def list_unregistered_organizations(session: AsyncSession) -> list[Organization]:
    result = await session.execute(
        select(Organization).where(Organization.idp_id.is_(None)).order_by(Organization.created_at)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# DIDs
# ---------------------------------------------------------------------------

async def list_org_dids(session: AsyncSession, org_id: uuid.UUID) -> list[OrgDid]:
    result = await session.execute(
        select(OrgDid).where(OrgDid.org_id == org_id).order_by(OrgDid.created_at)
    )
    return list(result.scalars().all())


async def set_primary_did(
    session: AsyncSession, org: Organization, did_row: OrgDid, namespace: Optional[str]
) -> None:
    """Unset the old primary and set the new one inside one savepoint."""
    async with translate_errors("org_did.set_primary"):
        async with session.begin_nested():
            await session.execute(
                update(OrgDid)
                .where(OrgDid.org_id == org.id, OrgDid.is_primary_did.is_(True))
                .values(is_primary_did=False)
            )
            await session.execute(
                update(OrgDid).where(OrgDid.id == did_row.id).values(is_primary_did=True)
            )
            org.primary_did = did_row.did
            org.did_namespace = namespace
            org.updated_at = utcnow()
            session.add(org)
            await session.flush()
    await session.refresh(did_row)


# ---------------------------------------------------------------------------
# Notification endpoints
# ---------------------------------------------------------------------------

async def upsert_notification_endpoint(
    session: AsyncSession, org_id: uuid.UUID, webhook_endpoint: str
) -> OrgNotificationEndpoint:
    result = await session.execute(
        select(OrgNotificationEndpoint).where(OrgNotificationEndpoint.org_id == org_id)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = OrgNotificationEndpoint(org_id=org_id, webhook_endpoint=webhook_endpoint)
    else:
        row.webhook_endpoint = webhook_endpoint
        row.updated_at = utcnow()
    async with translate_errors("notification.upsert"):
        session.add(row)
        await session.flush()
    return row


# ---------------------------------------------------------------------------
# Dashboard + cascade
# ---------------------------------------------------------------------------

async def dashboard_counts(session: AsyncSession, org_id: uuid.UUID) -> dict[str, int]:
    """Member, pending invitation and DID counts in a single statement."""
    users = (
        select(func.count(func.distinct(UserOrgRole.user_id)))
        .where(UserOrgRole.org_id == org_id)
        .scalar_subquery()
    )
    invitations = (
        select(func.count(OrgInvitation.id))
        .where(OrgInvitation.org_id == org_id, OrgInvitation.status == "pending")
        .scalar_subquery()
    )
    dids = select(func.count(OrgDid.id)).where(OrgDid.org_id == org_id).scalar_subquery()
    result = await session.execute(select(users, invitations, dids))
    user_count, invitation_count, did_count = result.one()
    return {"users": user_count, "pending_invitations": invitation_count, "dids": did_count}


async def delete_organization_cascade(session: AsyncSession, org_id: uuid.UUID) -> dict[str, int]:
    """Delete the organization and every dependent row; all or nothing.

    Returns per-table deleted row counts.
    """
    counts: dict[str, int] = {}
    async with translate_errors("organization.delete_cascade"):
        async with session.begin_nested():
            for table, model in CASCADE_TABLES:
                result = await session.execute(delete(model).where(model.org_id == org_id))
                counts[table] = result.rowcount
            result = await session.execute(delete(Organization).where(Organization.id == org_id))
            counts["organisation"] = result.rowcount
    log.info("store.org_cascade_deleted", org_id=str(org_id), counts=counts)
    return counts
