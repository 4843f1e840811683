"""
Non-durable read cache for idempotent lookups (role catalog, client roles).

Entries are incidental: a miss, a stale hit or a Redis outage only costs an
extra lookup. Never use it to deduplicate external calls.
"""

from __future__ import annotations

import json
from typing import Any

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

log = structlog.get_logger()

CACHE_PREFIX = "ch:cache:"


class ReadCache:
    def __init__(self, client: redis.Redis | None, ttl_seconds: int):
        self._client = client
        self._ttl = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self._client is not None and self._ttl > 0

    async def get_json(self, key: str) -> Any | None:
        if not self.enabled:
            return None
        try:
            raw = await self._client.get(f"{CACHE_PREFIX}{key}")
        except RedisError as exc:
            log.warning("cache.read_failed", key=key, error=str(exc))
            return None
        return json.loads(raw) if raw else None

    async def set_json(self, key: str, value: Any) -> None:
        if not self.enabled:
            return
        try:
            await self._client.setex(f"{CACHE_PREFIX}{key}", self._ttl, json.dumps(value))
        except RedisError as exc:
            log.warning("cache.write_failed", key=key, error=str(exc))

    async def invalidate(self, key: str) -> None:
        if not self.enabled:
            return
        try:
            await self._client.delete(f"{CACHE_PREFIX}{key}")
        except RedisError as exc:
            log.warning("cache.invalidate_failed", key=key, error=str(exc))
