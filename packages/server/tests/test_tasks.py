"""
Maintenance job and seed script tests.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlmodel import select

from app.core.errors import IdentityProviderError
from app.models.base import utcnow
from app.models.platform import PasswordResetToken
from app.scripts.seed_platform import seed
from app.store import organizations as org_store
from app.store import platform as platform_store
from app.store import roles as role_store
from app.store import users as user_store
from app.tasks import maintenance
from app.tasks.maintenance import WorkerSettings, purge_expired_reset_tokens, repair_unregistered_orgs
from credhub_shared.schemas.common import OrgRoles


@pytest.fixture
def ctx(services, session_factory):
    return {"services": services, "session_factory": session_factory}


class TestRepairUnregisteredOrgs:
    async def test_registers_and_commits(self, ctx, factory, session):
        owner = await factory.user("u1@example.com")
        org = await factory.org("Acme")
        await factory.grant(owner, org, OrgRoles.OWNER)
        await session.commit()

        assert await repair_unregistered_orgs(ctx) == 1

        await session.refresh(org)
        assert org.idp_id == f"idp-{str(org.id)[:8]}"
        assert await org_store.list_unregistered_organizations(session) == []

    async def test_failures_are_retried_next_run(self, ctx, factory, session, keycloak):
        org = await factory.org("Acme")
        await session.commit()
        keycloak.create_client.side_effect = IdentityProviderError(upstream_status=503)

        assert await repair_unregistered_orgs(ctx) == 0

        assert [o.id for o in await org_store.list_unregistered_organizations(session)] == [org.id]


class TestPurgeExpiredResetTokens:
    async def test_only_expired_tokens_go(self, ctx, factory, session):
        user = await factory.user("u1@example.com")
        await user_store.create_reset_token(session, user.id, "stale", utcnow() - timedelta(minutes=5))
        await user_store.create_reset_token(session, user.id, "fresh", utcnow() + timedelta(minutes=30))
        await session.commit()

        assert await purge_expired_reset_tokens(ctx) == 1

        remaining = (await session.execute(select(PasswordResetToken.token))).scalars().all()
        assert remaining == ["fresh"]


class TestSchedule:
    def test_cron_jobs_cover_every_function(self):
        assert {job.coroutine for job in WorkerSettings.cron_jobs} == set(WorkerSettings.functions)

    def test_repair_runs_quarter_hourly_and_at_startup(self):
        jobs = {job.coroutine: job for job in WorkerSettings.cron_jobs}

        repair = jobs[repair_unregistered_orgs]
        assert repair.minute == {0, 15, 30, 45}
        assert repair.run_at_startup
        assert jobs[purge_expired_reset_tokens].minute == 0

    async def test_startup_builds_ctx_and_shutdown_releases(self, settings, monkeypatch):
        services = MagicMock()
        services.close = AsyncMock()
        close_redis = AsyncMock()
        monkeypatch.setattr(maintenance, "get_settings", lambda: settings)
        monkeypatch.setattr(maintenance, "configure_logging", MagicMock())
        monkeypatch.setattr(maintenance, "get_redis", AsyncMock(return_value=MagicMock()))
        monkeypatch.setattr(maintenance, "build_services", MagicMock(return_value=services))
        monkeypatch.setattr(maintenance, "close_redis", close_redis)
        ctx = {}

        await maintenance.startup(ctx)

        assert ctx["services"] is services
        assert ctx["session_factory"] is maintenance.async_session_factory

        await maintenance.shutdown(ctx)

        services.close.assert_awaited_once()
        close_redis.assert_awaited_once()
        assert "services" not in ctx


class TestSeed:
    async def test_seeds_catalog_config_and_admin(self, settings, session_factory, session):
        await seed(settings, "Admin@Example.com", "kc-admin", session_factory=session_factory)
        await seed(settings, "admin@example.com", "kc-admin", session_factory=session_factory)

        names = sorted(r.name for r in await role_store.list_org_roles(session))
        assert names == sorted(r.value for r in OrgRoles)
        assert (await platform_store.get_platform_config(session)).platform_name == settings.platform_name

        admin = await user_store.get_user_by_email(session, "admin@example.com")
        assert admin.keycloak_user_id == "kc-admin"
        assert await role_store.is_platform_admin(session, admin.id)
        grants = await role_store.role_names_by_org(session, admin.id)
        assert grants == [(None, "platform_admin")]
