"""Platform configuration row (there is at most one)."""

from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.models.base import utcnow
from app.models.platform import PlatformConfig
from app.store.base import translate_errors


async def get_platform_config(session: AsyncSession) -> Optional[PlatformConfig]:
    result = await session.execute(select(PlatformConfig).order_by(PlatformConfig.created_at).limit(1))
    return result.scalar_one_or_none()


async def upsert_platform_config(session: AsyncSession, **fields) -> PlatformConfig:
    config = await get_platform_config(session)
    if config is None:
        config = PlatformConfig(**fields)
    else:
        for key, value in fields.items():
            setattr(config, key, value)
        config.updated_at = utcnow()
    async with translate_errors("platform_config.save"):
        session.add(config)
        await session.flush()
    return config
