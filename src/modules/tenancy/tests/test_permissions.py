"""Unit tests for PermissionService."""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.modules.tenancy.permissions import PermissionService


def _scalar_result(value):
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


def _codes_result(codes: list[str]):
    result = MagicMock()
    result.scalars.return_value.all.return_value = codes
    return result


@pytest.mark.asyncio
async def test_has_custom_role_true_when_assignment_exists():
    db = AsyncMock()
    db.execute.return_value = _scalar_result(uuid.uuid4())

    assert await PermissionService(db).has_custom_role(uuid.uuid4()) is True


@pytest.mark.asyncio
async def test_has_custom_role_false_without_assignment():
    db = AsyncMock()
    db.execute.return_value = _scalar_result(None)

    assert await PermissionService(db).has_custom_role(uuid.uuid4()) is False


@pytest.mark.asyncio
async def test_get_user_permissions_returns_role_codes():
    db = AsyncMock()
    db.execute.return_value = _codes_result(["loads.view", "loads.edit"])

    codes = await PermissionService(db).get_user_permissions(uuid.uuid4())

    assert codes == frozenset({"loads.view", "loads.edit"})


@pytest.mark.asyncio
async def test_check_permission_matches_granted_code():
    db = AsyncMock()
    db.execute.return_value = _codes_result(["invoices.view"])
    svc = PermissionService(db)

    assert await svc.check_permission(uuid.uuid4(), "invoices.view") is True


@pytest.mark.asyncio
async def test_check_permission_denies_missing_code():
    db = AsyncMock()
    db.execute.return_value = _codes_result(["invoices.view"])
    svc = PermissionService(db)

    assert await svc.check_permission(uuid.uuid4(), "invoices.void") is False


@pytest.mark.asyncio
async def test_platform_admin_passes_without_query():
    db = AsyncMock()

    result = await PermissionService(db).check_permission(
        uuid.uuid4(), "anything.here", is_platform_admin=True
    )

    assert result is True
    db.execute.assert_not_called()


@pytest.mark.asyncio
async def test_grants_empty_without_custom_role():
    db = AsyncMock()
    db.execute.return_value = _scalar_result(None)

    grants = await PermissionService(db).get_grants(uuid.uuid4())

    assert grants.has_custom_role is False
    assert grants.permissions == frozenset()
    assert db.execute.await_count == 1


@pytest.mark.asyncio
async def test_grants_for_admin_without_role_include_all_codes():
    db = AsyncMock()
    db.execute.side_effect = [_scalar_result(None), _codes_result(["loads.view", "settings.manage"])]

    grants = await PermissionService(db).get_grants(uuid.uuid4(), is_platform_admin=True)

    assert grants.has_custom_role is False
    assert "settings.manage" in grants.permissions


@pytest.mark.asyncio
async def test_grants_without_user_are_empty():
    db = AsyncMock()

    grants = await PermissionService(db).get_grants(None)

    assert grants.has_custom_role is False
    db.execute.assert_not_called()
