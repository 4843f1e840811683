"""
Request/reply transports between the HTTP gateway and the workflow workers.

Redis: the client RPUSHes an ``RpcRequest`` onto the target service's request
list and BLPOPs a per-request reply key; the server BLPOPs its service lists,
dispatches and RPUSHes the ``RpcReply`` (with a TTL) onto ``reply_to``.

Local: dispatches in-process, for single-process deployments and tests.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Optional, Sequence

import redis.asyncio as redis
import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import sessionmaker

from app.core.config import Settings
from app.core.errors import ServiceUnavailableError, from_status
from app.rpc.container import build_services
from app.rpc.dispatcher import Dispatcher
from credhub_shared.schemas.commands import RpcReply, RpcRequest

log = structlog.get_logger()

REQUEST_QUEUE_PREFIX = "ch:rpc:requests:"
REPLY_KEY_PREFIX = "ch:rpc:reply:"
REPLY_TTL_SECONDS = 60
POLL_SECONDS = 1


def unwrap(reply: RpcReply) -> Any:
    """Return the reply data or re-raise the forwarded error with its status."""
    if reply.error is not None:
        raise from_status(reply.error.status_code, reply.error.message)
    return reply.data


class LocalRpcClient:
    def __init__(self, dispatcher: Dispatcher):
        self._dispatcher = dispatcher

    async def send(self, command: Any) -> Any:
        reply = await self._dispatcher.reply(uuid.uuid4().hex, command)
        return unwrap(reply)

    async def close(self) -> None:
        await self._dispatcher.services.close()


class RedisRpcClient:
    def __init__(self, client: redis.Redis, reply_timeout_seconds: int):
        self._redis = client
        self._timeout = reply_timeout_seconds

    async def send(self, command: Any) -> Any:
        request_id = uuid.uuid4().hex
        reply_key = f"{REPLY_KEY_PREFIX}{request_id}"
        request = RpcRequest(request_id=request_id, reply_to=reply_key, command=command)

        await self._redis.rpush(f"{REQUEST_QUEUE_PREFIX}{command.service}", request.model_dump_json())
        popped = await self._redis.blpop([reply_key], timeout=self._timeout)
        if popped is None:
            log.error("rpc.reply_timeout", cmd=command.cmd, request_id=request_id)
            raise ServiceUnavailableError("Service did not respond in time")

        _, raw = popped
        return unwrap(RpcReply.model_validate_json(raw))

    async def close(self) -> None:
        return None


class RedisRpcServer:
    def __init__(self, client: redis.Redis, dispatcher: Dispatcher, services: Sequence[str]):
        self._redis = client
        self._dispatcher = dispatcher
        self._queues = [f"{REQUEST_QUEUE_PREFIX}{name}" for name in services]

    async def serve_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        log.info("rpc.server_started", queues=self._queues)
        while not stop.is_set():
            popped = await self._redis.blpop(self._queues, timeout=POLL_SECONDS)
            if popped is None:
                continue
            _, raw = popped
            await self.handle_raw(raw)
        log.info("rpc.server_stopped")

    async def handle_raw(self, raw: str) -> Optional[RpcReply]:
        try:
            request = RpcRequest.model_validate_json(raw)
        except PydanticValidationError as exc:
            # No reply key can be trusted; the caller times out
            log.error("rpc.malformed_request", error=str(exc))
            return None

        reply = await self._dispatcher.reply(request.request_id, request.command)
        async with self._redis.pipeline() as pipe:
            pipe.rpush(request.reply_to, reply.model_dump_json())
            pipe.expire(request.reply_to, REPLY_TTL_SECONDS)
            await pipe.execute()
        return reply


def build_rpc_client(
    settings: Settings,
    session_factory: sessionmaker,
    redis_client: Optional[redis.Redis] = None,
):
    """Redis request/reply when configured, otherwise dispatch in-process."""
    if settings.rpc_transport == "redis":
        if redis_client is None:
            raise ValueError("Redis transport requires a Redis client")
        return RedisRpcClient(redis_client, settings.rpc_reply_timeout_seconds)
    return LocalRpcClient(Dispatcher(build_services(settings, redis_client), session_factory))
