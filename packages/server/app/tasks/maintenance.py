"""
Periodic maintenance jobs, run by an ARQ worker.

- repair_unregistered_orgs: organizations whose identity-provider registration
  failed get a client and their members' roles remapped.
- purge_expired_reset_tokens: drop password-reset tokens past their expiry.

Each job takes the ARQ ``ctx`` dict; ``startup`` adds ``services`` and
``session_factory`` to it. Run with ``arq app.tasks.maintenance.WorkerSettings``
or ``credhub-maintenance``.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from arq import cron, run_worker
from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.database import async_session_factory, get_session_context
from app.core.logging import configure_logging
from app.core.redis import close_redis, get_redis
from app.rpc.container import build_services
from app.store import users as user_store

log = structlog.get_logger()


async def repair_unregistered_orgs(ctx: dict) -> int:
    """Returns the number of organizations registered on this run."""
    async with get_session_context(ctx["session_factory"]) as session:
        result = await ctx["services"].organizations.register_orgs_map_users(session)

    if result.registered or result.failed:
        log.info("maintenance.orgs_repaired", registered=len(result.registered), failed=len(result.failed))
    return len(result.registered)


async def purge_expired_reset_tokens(ctx: dict) -> int:
    now = datetime.now(timezone.utc)
    async with get_session_context(ctx["session_factory"]) as session:
        count = await user_store.delete_expired_reset_tokens(session, now)

    if count:
        log.info("maintenance.reset_tokens_purged", count=count)
    return count


async def startup(ctx: dict) -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    redis_client = await get_redis(settings)
    ctx["services"] = build_services(settings, redis_client)
    ctx["session_factory"] = async_session_factory
    log.info("maintenance.started")


async def shutdown(ctx: dict) -> None:
    services = ctx.pop("services", None)
    if services is not None:
        await services.close()
    await close_redis()
    log.info("maintenance.stopped")


class WorkerSettings:
    functions = [repair_unregistered_orgs, purge_expired_reset_tokens]
    cron_jobs = [
        cron(repair_unregistered_orgs, minute={0, 15, 30, 45}, run_at_startup=True),
        cron(purge_expired_reset_tokens, minute=0),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)


def main() -> None:
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
