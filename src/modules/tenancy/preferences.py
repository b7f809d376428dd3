"""Per-user tenancy preferences kept in a Redis hash.

Holds the selected tenant, the platform-admin "show all tenants" toggle and
whether the impersonation banner was dismissed. Cleared explicitly on logout
so nothing carries over into the next session.
"""

import logging
import uuid
from dataclasses import dataclass

import redis.asyncio as redis

from src.config import settings
from src.modules.tenancy.constants import PREFERENCES_PREFIX

logger = logging.getLogger(__name__)

FIELD_SELECTED_TENANT = "selected_tenant_id"
FIELD_SHOW_ALL = "show_all_tenants"
FIELD_BANNER_DISMISSED = "impersonation_banner_dismissed"


@dataclass(frozen=True)
class TenantPreferences:
    selected_tenant_id: uuid.UUID | None = None
    show_all_tenants: bool = False
    impersonation_banner_dismissed: bool = False


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        logger.warning("Discarding malformed tenant preference value %r", value)
        return None


class PreferenceStore:
    def __init__(self, redis_client: redis.Redis) -> None:
        self._redis = redis_client

    def _key(self, user_id: uuid.UUID) -> str:
        return f"{PREFERENCES_PREFIX}:{user_id}"

    async def get(self, user_id: uuid.UUID) -> TenantPreferences:
        raw = await self._redis.hgetall(self._key(user_id))
        if not raw:
            return TenantPreferences()
        return TenantPreferences(
            selected_tenant_id=_parse_uuid(raw.get(FIELD_SELECTED_TENANT)),
            show_all_tenants=raw.get(FIELD_SHOW_ALL) == "1",
            impersonation_banner_dismissed=raw.get(FIELD_BANNER_DISMISSED) == "1",
        )

    async def _write(self, user_id: uuid.UUID, mapping: dict[str, str]) -> None:
        key = self._key(user_id)
        await self._redis.hset(key, mapping=mapping)
        await self._redis.expire(key, settings.preference_ttl_seconds)

    async def set_selected_tenant(self, user_id: uuid.UUID, tenant_id: uuid.UUID) -> None:
        await self._write(user_id, {FIELD_SELECTED_TENANT: str(tenant_id)})

    async def set_show_all(self, user_id: uuid.UUID, enabled: bool) -> None:
        await self._write(user_id, {FIELD_SHOW_ALL: "1" if enabled else "0"})

    async def set_banner_dismissed(self, user_id: uuid.UUID, dismissed: bool) -> None:
        await self._write(user_id, {FIELD_BANNER_DISMISSED: "1" if dismissed else "0"})

    async def clear(self, user_id: uuid.UUID) -> None:
        await self._redis.delete(self._key(user_id))
