"""Tenant-scoped cache backed by Redis."""

import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import redis.asyncio as redis

from src.config import settings
from src.modules.tenancy.constants import CACHE_PREFIX, SCOPE_CACHE_PREFIX

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TenantCache:
    """Redis-backed cache with tenant-scoped key namespacing.

    Data keys are ``tenant:{tenant_id}:{key}`` so one tenant's entries can be
    dropped in bulk on a tenant switch. Each user's resolved scope lives under
    ``scope:{user_id}`` and is invalidated whenever the scope can change.
    There is no stale-while-revalidate: an invalidated key is gone before the
    next read.
    """

    def __init__(self, redis_client: redis.Redis | None = None) -> None:
        self._redis = redis_client

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(settings.redis_url, decode_responses=True)
        return self._redis

    def _make_key(self, tenant_id: uuid.UUID, key: str) -> str:
        return f"{CACHE_PREFIX}:{tenant_id}:{key}"

    def _scope_key(self, user_id: uuid.UUID) -> str:
        return f"{SCOPE_CACHE_PREFIX}:{user_id}"

    async def get(self, tenant_id: uuid.UUID, key: str) -> Any | None:
        client = await self._get_redis()
        raw = await client.get(self._make_key(tenant_id, key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(
        self,
        tenant_id: uuid.UUID,
        key: str,
        value: Any,
        ttl: int | None = None,
    ) -> None:
        client = await self._get_redis()
        await client.set(
            self._make_key(tenant_id, key),
            json.dumps(value, default=str),
            ex=ttl or settings.tenant_cache_ttl_seconds,
        )

    async def delete(self, tenant_id: uuid.UUID, key: str) -> None:
        client = await self._get_redis()
        await client.delete(self._make_key(tenant_id, key))

    async def invalidate_tenant(self, tenant_id: uuid.UUID) -> int:
        """Delete all cached keys for the given tenant.

        Returns the number of keys deleted.
        """
        return await self.invalidate_prefix(tenant_id, "")

    async def invalidate_prefix(self, tenant_id: uuid.UUID, prefix: str) -> int:
        """Delete the tenant's keys starting with ``prefix``, e.g. ``rows:loads:``."""
        client = await self._get_redis()
        pattern = f"{self._make_key(tenant_id, prefix)}*"
        deleted_count = 0
        async for key in client.scan_iter(match=pattern, count=100):
            deleted_count += await client.delete(key)
        logger.debug("Invalidated %d cached keys for tenant=%s prefix=%r", deleted_count, tenant_id, prefix)
        return deleted_count

    async def get_or_set(
        self,
        tenant_id: uuid.UUID,
        key: str,
        factory: Callable[[], Awaitable[T]],
        ttl: int | None = None,
    ) -> T:
        """Return cached value if present, otherwise compute via factory, cache, and return.

        Args:
            tenant_id: Tenant namespace of the entry.
            key: Cache key within the tenant namespace.
            factory: Async callable that produces the value on cache miss.
            ttl: Time-to-live in seconds; defaults to ``tenant_cache_ttl_seconds``.

        Returns:
            The cached or freshly computed value.
        """
        cached = await self.get(tenant_id, key)
        if cached is not None:
            return cached
        value = await factory()
        await self.set(tenant_id, key, value, ttl=ttl)
        return value

    # ------------------------------------------------------------------
    # Per-user resolved scope
    # ------------------------------------------------------------------

    async def get_scope(self, user_id: uuid.UUID) -> dict | None:
        client = await self._get_redis()
        raw = await client.get(self._scope_key(user_id))
        if raw is None:
            return None
        return json.loads(raw)

    async def set_scope(self, user_id: uuid.UUID, payload: dict, ttl: int | None = None) -> None:
        client = await self._get_redis()
        await client.set(
            self._scope_key(user_id),
            json.dumps(payload, default=str),
            ex=max(1, ttl or settings.tenant_cache_ttl_seconds),
        )

    async def invalidate_scope(self, user_id: uuid.UUID) -> None:
        client = await self._get_redis()
        await client.delete(self._scope_key(user_id))
