"""Unit tests for the tenant cache and per-user preference store."""

import json
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.modules.tenancy.cache import TenantCache
from src.modules.tenancy.preferences import PreferenceStore, TenantPreferences


async def _aiter(items):
    for item in items:
        yield item


# ---------------------------------------------------------------------------
# TenantCache
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cache_keys_are_namespaced_by_tenant():
    client = AsyncMock()
    tenant_id = uuid.uuid4()

    await TenantCache(client).set(tenant_id, "flag:inspector", {"enabled": True}, ttl=60)

    key, payload = client.set.call_args.args
    assert key == f"tenant:{tenant_id}:flag:inspector"
    assert json.loads(payload) == {"enabled": True}
    assert client.set.call_args.kwargs["ex"] == 60


@pytest.mark.asyncio
async def test_invalidate_tenant_deletes_only_that_namespace():
    client = AsyncMock()
    tenant_id = uuid.uuid4()
    keys = [f"tenant:{tenant_id}:rows:loads:abc", f"tenant:{tenant_id}:flag:inspector"]
    client.scan_iter = MagicMock(return_value=_aiter(keys))
    client.delete.return_value = 1

    deleted = await TenantCache(client).invalidate_tenant(tenant_id)

    assert deleted == 2
    assert client.scan_iter.call_args.kwargs["match"] == f"tenant:{tenant_id}:*"


@pytest.mark.asyncio
async def test_invalidate_prefix_matches_only_that_table():
    client = AsyncMock()
    tenant_id = uuid.uuid4()
    client.scan_iter = MagicMock(return_value=_aiter([f"tenant:{tenant_id}:rows:loads:abc"]))
    client.delete.return_value = 1

    deleted = await TenantCache(client).invalidate_prefix(tenant_id, "rows:loads:")

    assert deleted == 1
    assert client.scan_iter.call_args.kwargs["match"] == f"tenant:{tenant_id}:rows:loads:*"
    client.delete.assert_awaited_once_with(f"tenant:{tenant_id}:rows:loads:abc")


@pytest.mark.asyncio
async def test_get_or_set_computes_on_miss():
    client = AsyncMock()
    client.get.return_value = None
    factory = AsyncMock(return_value=[{"id": "1"}])

    value = await TenantCache(client).get_or_set(uuid.uuid4(), "rows:loads:x", factory)

    assert value == [{"id": "1"}]
    factory.assert_awaited_once()
    client.set.assert_awaited_once()


@pytest.mark.asyncio
async def test_get_or_set_returns_cached_value():
    client = AsyncMock()
    client.get.return_value = json.dumps([{"id": "1"}])
    factory = AsyncMock()

    value = await TenantCache(client).get_or_set(uuid.uuid4(), "rows:loads:x", factory)

    assert value == [{"id": "1"}]
    factory.assert_not_called()


@pytest.mark.asyncio
async def test_scope_cache_round_trip_keys():
    client = AsyncMock()
    user_id = uuid.uuid4()
    cache = TenantCache(client)

    await cache.set_scope(user_id, {"mode": "TENANT"}, ttl=0)
    await cache.invalidate_scope(user_id)

    assert client.set.call_args.args[0] == f"scope:{user_id}"
    assert client.set.call_args.kwargs["ex"] == 300
    client.delete.assert_awaited_once_with(f"scope:{user_id}")


# ---------------------------------------------------------------------------
# PreferenceStore
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_missing_preferences_use_defaults():
    client = AsyncMock()
    client.hgetall.return_value = {}

    prefs = await PreferenceStore(client).get(uuid.uuid4())

    assert prefs == TenantPreferences()


@pytest.mark.asyncio
async def test_preferences_are_parsed_from_hash():
    client = AsyncMock()
    tenant_id = uuid.uuid4()
    client.hgetall.return_value = {
        "selected_tenant_id": str(tenant_id),
        "show_all_tenants": "1",
        "impersonation_banner_dismissed": "0",
    }

    prefs = await PreferenceStore(client).get(uuid.uuid4())

    assert prefs.selected_tenant_id == tenant_id
    assert prefs.show_all_tenants is True
    assert prefs.impersonation_banner_dismissed is False


@pytest.mark.asyncio
async def test_malformed_selected_tenant_is_discarded():
    client = AsyncMock()
    client.hgetall.return_value = {"selected_tenant_id": "not-a-uuid"}

    prefs = await PreferenceStore(client).get(uuid.uuid4())

    assert prefs.selected_tenant_id is None


@pytest.mark.asyncio
async def test_writes_refresh_expiry():
    client = AsyncMock()
    user_id = uuid.uuid4()

    await PreferenceStore(client).set_show_all(user_id, True)

    client.hset.assert_awaited_once_with(f"prefs:{user_id}", mapping={"show_all_tenants": "1"})
    assert client.expire.call_args.args[0] == f"prefs:{user_id}"


@pytest.mark.asyncio
async def test_clear_removes_all_preferences():
    client = AsyncMock()
    user_id = uuid.uuid4()

    await PreferenceStore(client).clear(user_id)

    client.delete.assert_awaited_once_with(f"prefs:{user_id}")
