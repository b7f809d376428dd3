"""Unit tests for feature flag resolution and visibility gating."""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.exceptions import ScopeNotReadyException
from src.models.enums import ReleaseChannel, ScopeMode, TenantStatus
from src.modules.tenancy.feature_gate import (
    SOURCE_GLOBAL_DEFAULT,
    SOURCE_KILLSWITCH,
    SOURCE_NOT_FOUND,
    SOURCE_PLATFORM_SCOPE,
    SOURCE_RELEASE_CHANNEL,
    SOURCE_TENANT_OVERRIDE,
    FeatureFlagService,
    FeatureGateService,
    FlagResolution,
    is_visible,
)
from src.modules.tenancy.permissions import PermissionGrants
from src.modules.tenancy.schemas import EffectiveScope, TenantSummary


def _make_flag(default_enabled: bool = False, is_killswitch: bool = False):
    flag = MagicMock()
    flag.id = uuid.uuid4()
    flag.key = "inspector"
    flag.default_enabled = default_enabled
    flag.is_killswitch = is_killswitch
    return flag


def _scalar(value):
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


def _tenant(channel: ReleaseChannel = ReleaseChannel.PILOT) -> TenantSummary:
    return TenantSummary(
        id=uuid.uuid4(), name="Acme Logistics", slug="acme", status=TenantStatus.ACTIVE, release_channel=channel
    )


# ---------------------------------------------------------------------------
# is_visible
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("enabled", "is_admin", "has_role", "granted", "expected"),
    [
        (True, True, False, set(), True),
        (False, True, True, {"loads.view"}, False),
        (True, False, True, {"loads.view"}, True),
        (True, False, True, set(), False),
        (False, False, True, {"loads.view"}, False),
        (True, False, False, {"loads.view"}, False),
    ],
)
def test_is_visible_truth_table(enabled, is_admin, has_role, granted, expected):
    assert (
        is_visible(
            enabled,
            "loads.view",
            is_platform_admin=is_admin,
            has_custom_role=has_role,
            permissions=granted,
        )
        is expected
    )


def test_flag_only_gate_needs_a_role():
    assert is_visible(True, None, is_platform_admin=False, has_custom_role=True, permissions=set()) is True
    assert is_visible(True, None, is_platform_admin=False, has_custom_role=False, permissions=set()) is False


# ---------------------------------------------------------------------------
# FeatureFlagService
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_undefined_flag_is_disabled():
    db = AsyncMock()
    db.execute.return_value = _scalar(None)

    resolution = await FeatureFlagService(db).is_enabled_for_tenant("nonexistent", _tenant())

    assert resolution == FlagResolution(False, SOURCE_NOT_FOUND)


@pytest.mark.asyncio
async def test_killswitch_beats_tenant_override():
    db = AsyncMock()
    db.execute.side_effect = [_scalar(_make_flag(is_killswitch=True)), _scalar(True)]

    resolution = await FeatureFlagService(db).is_enabled_for_tenant("inspector", _tenant())

    assert resolution == FlagResolution(False, SOURCE_KILLSWITCH)
    assert db.execute.await_count == 1


@pytest.mark.asyncio
async def test_tenant_override_beats_release_channel():
    db = AsyncMock()
    db.execute.side_effect = [_scalar(_make_flag()), _scalar(True), _scalar(False)]

    resolution = await FeatureFlagService(db).is_enabled_for_tenant("inspector", _tenant())

    assert resolution == FlagResolution(True, SOURCE_TENANT_OVERRIDE)


@pytest.mark.asyncio
async def test_release_channel_beats_global_default():
    db = AsyncMock()
    db.execute.side_effect = [_scalar(_make_flag(default_enabled=False)), _scalar(None), _scalar(True)]

    resolution = await FeatureFlagService(db).is_enabled_for_tenant("inspector", _tenant())

    assert resolution == FlagResolution(True, SOURCE_RELEASE_CHANNEL)


@pytest.mark.asyncio
async def test_global_default_applies_last():
    db = AsyncMock()
    db.execute.side_effect = [_scalar(_make_flag(default_enabled=True)), _scalar(None), _scalar(None)]

    resolution = await FeatureFlagService(db).is_enabled_for_tenant("inspector", _tenant())

    assert resolution == FlagResolution(True, SOURCE_GLOBAL_DEFAULT)


@pytest.mark.asyncio
async def test_flag_resolution_is_cached_per_tenant():
    db = AsyncMock()
    cache = AsyncMock()
    cache.get_or_set.return_value = {"enabled": True, "source": SOURCE_TENANT_OVERRIDE}
    tenant = _tenant()

    resolution = await FeatureFlagService(db, cache).is_enabled_for_tenant("inspector", tenant)

    assert resolution == FlagResolution(True, SOURCE_TENANT_OVERRIDE)
    namespace, key, _factory = cache.get_or_set.call_args.args
    assert namespace == tenant.id
    assert key == "flag:inspector"
    db.execute.assert_not_called()


@pytest.mark.asyncio
async def test_global_resolution_for_all_tenants_scope():
    db = AsyncMock()
    db.execute.return_value = _scalar(_make_flag(default_enabled=True))

    resolution = await FeatureFlagService(db).is_enabled_globally("inspector")

    assert resolution == FlagResolution(True, SOURCE_PLATFORM_SCOPE)


# ---------------------------------------------------------------------------
# FeatureGateService
# ---------------------------------------------------------------------------


def _gate(flag: FlagResolution, grants: PermissionGrants) -> FeatureGateService:
    flags = AsyncMock()
    flags.is_enabled_for_tenant.return_value = flag
    flags.is_enabled_globally.return_value = flag
    permissions = AsyncMock()
    permissions.get_grants.return_value = grants
    return FeatureGateService(flags, permissions)


@pytest.mark.asyncio
async def test_gate_visible_with_flag_and_permission():
    gate = _gate(
        FlagResolution(True, SOURCE_RELEASE_CHANNEL),
        PermissionGrants(has_custom_role=True, permissions=frozenset({"inspector.view"})),
    )
    scope = EffectiveScope(mode=ScopeMode.TENANT, user_id=uuid.uuid4(), tenant_id=uuid.uuid4(), tenant=_tenant())

    decision = await gate.evaluate(scope, "inspector", "inspector.view")

    assert decision.visible is True
    assert decision.source == SOURCE_RELEASE_CHANNEL


@pytest.mark.asyncio
async def test_gate_hidden_for_user_without_role():
    gate = _gate(FlagResolution(True, SOURCE_GLOBAL_DEFAULT), PermissionGrants(has_custom_role=False))
    scope = EffectiveScope(mode=ScopeMode.TENANT, user_id=uuid.uuid4(), tenant_id=uuid.uuid4(), tenant=_tenant())

    decision = await gate.evaluate(scope, "inspector", "inspector.view")

    assert decision.feature_enabled is True
    assert decision.visible is False


@pytest.mark.asyncio
async def test_gate_uses_global_resolution_in_all_scope():
    gate = _gate(FlagResolution(False, SOURCE_PLATFORM_SCOPE), PermissionGrants(has_custom_role=False))
    scope = EffectiveScope(mode=ScopeMode.ALL, user_id=uuid.uuid4(), is_platform_admin=True)

    decision = await gate.evaluate(scope, "inspector")

    assert decision.visible is False
    gate.flags.is_enabled_globally.assert_awaited_once_with("inspector")


@pytest.mark.asyncio
async def test_gate_refuses_unready_scope():
    gate = _gate(FlagResolution(True, SOURCE_GLOBAL_DEFAULT), PermissionGrants(has_custom_role=True))
    with pytest.raises(ScopeNotReadyException):
        await gate.evaluate(EffectiveScope.not_ready(), "inspector")
