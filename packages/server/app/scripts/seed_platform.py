"""
Seed the role catalog and platform configuration; optionally grant platform admin.

Usage:
    python -m app.scripts.seed_platform
    python -m app.scripts.seed_platform --admin-email admin@example.com --admin-keycloak-id <sub>

Idempotent: existing roles, config and grants are left alone.
"""

from __future__ import annotations

import argparse
import asyncio
from typing import Optional

import structlog
from sqlalchemy.orm import sessionmaker

from app.core.config import Settings, get_settings
from app.core.database import async_session_factory, get_session_context, init_db
from app.core.logging import configure_logging
from app.models.user import User
from app.services.organizations import ROLE_DESCRIPTIONS
from app.store import platform as platform_store
from app.store import roles as role_store
from app.store import users as user_store
from credhub_shared.schemas.common import OrgRoles

log = structlog.get_logger()

CATALOG_DESCRIPTIONS = {
    **ROLE_DESCRIPTIONS,
    OrgRoles.HOLDER: "Credential holder",
    OrgRoles.PLATFORM_ADMIN: "Platform administrator",
}


async def seed(
    settings: Settings,
    admin_email: Optional[str] = None,
    admin_keycloak_id: Optional[str] = None,
    create_tables: bool = False,
    session_factory: sessionmaker = async_session_factory,
) -> None:
    if create_tables:
        await init_db()

    async with get_session_context(session_factory) as session:
        for role in OrgRoles:
            await role_store.ensure_role(session, role.value, CATALOG_DESCRIPTIONS[role])

        if await platform_store.get_platform_config(session) is None:
            await platform_store.upsert_platform_config(
                session,
                email_from=settings.email_from,
                platform_name=settings.platform_name,
                brand_logo_url=settings.brand_logo_url or None,
                support_email=settings.support_email,
            )
            log.info("seed.platform_config_created")

        if admin_email:
            await _grant_platform_admin(session, admin_email, admin_keycloak_id)

    log.info("seed.completed", roles=len(OrgRoles))


async def _grant_platform_admin(session, email: str, keycloak_id: Optional[str]) -> None:
    user = await user_store.get_user_by_email(session, email)
    if user is None:
        user = User(email=email.strip().lower(), is_email_verified=True, keycloak_user_id=keycloak_id)
        await user_store.save_user(session, user)
    elif keycloak_id and not user.keycloak_user_id:
        user.keycloak_user_id = keycloak_id
        await user_store.save_user(session, user)

    if await role_store.is_platform_admin(session, user.id):
        log.info("seed.platform_admin_exists", email=user.email)
        return

    role = await role_store.get_role_by_name(session, OrgRoles.PLATFORM_ADMIN.value)
    await role_store.add_user_org_roles(session, user.id, None, [(role.id, None)])
    log.info("seed.platform_admin_granted", email=user.email)


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Seed the Credential Hub database")
    parser.add_argument("--admin-email", help="Grant PLATFORM_ADMIN to this user (created if missing)")
    parser.add_argument("--admin-keycloak-id", help="Identity-provider user id for the admin")
    parser.add_argument("--create-tables", action="store_true", help="Create tables from models first (dev only)")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level, "text")
    asyncio.run(seed(settings, args.admin_email, args.admin_keycloak_id, args.create_tables))


if __name__ == "__main__":
    main()
