"""
Workflow worker: consumes RPC requests for one or more services from Redis.

    python -m app.rpc.worker --service organization --service user
"""

from __future__ import annotations

import argparse
import asyncio
import signal

import structlog

from app.core.config import get_settings
from app.core.database import async_session_factory
from app.core.logging import configure_logging
from app.core.redis import close_redis, get_redis
from app.rpc.container import build_services
from app.rpc.dispatcher import Dispatcher
from app.rpc.transport import RedisRpcServer

log = structlog.get_logger()

SERVICES = ("organization", "user")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Credential Hub workflow worker")
    parser.add_argument(
        "--service",
        action="append",
        choices=SERVICES,
        help="Service queue to consume (repeatable; default: all)",
    )
    return parser.parse_args(argv)


async def run(services: list[str]) -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    redis_client = await get_redis(settings)
    container = build_services(settings, redis_client)
    server = RedisRpcServer(redis_client, Dispatcher(container, async_session_factory), services)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await server.serve_forever(stop)
    finally:
        await container.close()
        await close_redis()
        log.info("worker.shutdown", services=services)


def main(argv=None) -> None:
    args = parse_args(argv)
    asyncio.run(run(args.service or list(SERVICES)))


if __name__ == "__main__":
    main()
