"""User activity log and organization deletion audit records."""

from __future__ import annotations

import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.models.activity import OrgDeletionRecord, UserActivity
from app.store.base import translate_errors


async def record_activity(
    session: AsyncSession,
    user_id: uuid.UUID,
    action: str,
    details: str = "",
    org_id: Optional[uuid.UUID] = None,
) -> UserActivity:
    row = UserActivity(user_id=user_id, org_id=org_id, action=action, details=details)
    async with translate_errors("user_activity.create"):
        session.add(row)
        await session.flush()
    return row


async def list_user_activity(session: AsyncSession, user_id: uuid.UUID, limit: int) -> list[UserActivity]:
    result = await session.execute(
        select(UserActivity)
        .where(UserActivity.user_id == user_id)
        .order_by(UserActivity.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def record_deletions(session: AsyncSession, records: list[OrgDeletionRecord]) -> None:
    async with translate_errors("org_deletion_record.create"):
        session.add_all(records)
        await session.flush()


async def list_deletion_records(session: AsyncSession, org_id: uuid.UUID) -> list[OrgDeletionRecord]:
    result = await session.execute(
        select(OrgDeletionRecord).where(OrgDeletionRecord.org_id == org_id).order_by(OrgDeletionRecord.created_at)
    )
    return list(result.scalars().all())
