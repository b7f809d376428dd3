"""Unit tests for ScopedQueryBuilder and RLS context application."""

import logging
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.exceptions import ForbiddenException, ScopeNotReadyException, ValidationException
from src.models.enums import ScopeMode
from src.modules.tenancy.constants import SECURITY_LOGGER
from src.modules.tenancy.schemas import EffectiveScope
from src.modules.tenancy.scoped_query import ScopedQueryBuilder
from src.modules.tenancy.service import apply_scope, with_tenant_context


def _tenant_scope(tenant_id: uuid.UUID | None = None) -> EffectiveScope:
    return EffectiveScope(mode=ScopeMode.TENANT, user_id=uuid.uuid4(), tenant_id=tenant_id or uuid.uuid4())


def _all_scope(is_platform_admin: bool = True) -> EffectiveScope:
    return EffectiveScope(mode=ScopeMode.ALL, user_id=uuid.uuid4(), is_platform_admin=is_platform_admin)


def _mock_db_returning_rows(rows: list[dict] | None = None, scalar=None):
    """AsyncSession mock whose every execute returns the given mapping rows."""
    db = AsyncMock()
    result = MagicMock()
    result.mappings.return_value.all.return_value = rows or []
    result.scalar.return_value = scalar
    db.execute.return_value = result
    return db


def _data_statements(db) -> list:
    """Statements sent after the set_config calls."""
    return [
        call.args[0]
        for call in db.execute.call_args_list
        if "set_config" not in str(call.args[0])
    ]


def _config_calls(db) -> dict[str, dict]:
    calls = {}
    for call in db.execute.call_args_list:
        sql = str(call.args[0])
        if "set_config" in sql:
            name = sql.split("'")[1]
            calls[name] = call.args[1] if len(call.args) > 1 else {}
    return calls


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_not_ready_scope_refuses_before_any_query():
    db = _mock_db_returning_rows()
    with pytest.raises(ScopeNotReadyException):
        ScopedQueryBuilder(db, EffectiveScope.not_ready())
    db.execute.assert_not_called()


def test_no_access_scope_refuses_before_any_query():
    db = _mock_db_returning_rows()
    with pytest.raises(ScopeNotReadyException):
        ScopedQueryBuilder(db, EffectiveScope(mode=ScopeMode.NO_ACCESS, user_id=uuid.uuid4()))
    db.execute.assert_not_called()


def test_all_scope_requires_platform_admin():
    with pytest.raises(ForbiddenException):
        ScopedQueryBuilder(_mock_db_returning_rows(), _all_scope(is_platform_admin=False))


def test_unknown_table_is_rejected():
    builder = ScopedQueryBuilder(_mock_db_returning_rows(), _tenant_scope())
    with pytest.raises(ValidationException):
        builder.table("profiles")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_tenant_scope_select_filters_on_tenant():
    tenant_id = uuid.uuid4()
    db = _mock_db_returning_rows([{"id": uuid.uuid4(), "tenant_id": tenant_id}])
    builder = ScopedQueryBuilder(db, _tenant_scope(tenant_id))

    rows = await builder.table("loads").select()

    assert len(rows) == 1
    stmt = _data_statements(db)[0]
    assert "loads.tenant_id = :tenant_id_1" in str(stmt)
    assert stmt.compile().params["tenant_id_1"] == tenant_id
    assert _config_calls(db)["app.current_tenant_id"] == {"tenant_id": str(tenant_id)}


@pytest.mark.asyncio
async def test_admin_all_scope_select_has_no_tenant_filter():
    db = _mock_db_returning_rows(
        [{"id": uuid.uuid4(), "tenant_id": uuid.uuid4()}, {"id": uuid.uuid4(), "tenant_id": uuid.uuid4()}]
    )
    builder = ScopedQueryBuilder(db, _all_scope())

    rows = await builder.table("loads").select()

    assert len(rows) == 2
    assert "WHERE" not in str(_data_statements(db)[0])
    assert _config_calls(db)["app.admin_bypass"] == {"val": "true"}


@pytest.mark.asyncio
async def test_row_from_other_tenant_is_dropped_and_logged(caplog):
    tenant_id = uuid.uuid4()
    forged_id = uuid.uuid4()
    db = _mock_db_returning_rows(
        [
            {"id": uuid.uuid4(), "tenant_id": tenant_id},
            {"id": forged_id, "tenant_id": uuid.uuid4()},
        ]
    )
    builder = ScopedQueryBuilder(db, _tenant_scope(tenant_id))

    with caplog.at_level(logging.WARNING, logger=SECURITY_LOGGER):
        rows = await builder.table("vehicles").select()

    assert [str(row["tenant_id"]) for row in rows] == [str(tenant_id)]
    assert builder.dropped_rows == 1
    assert any(
        "CrossTenantLeakDetected" in record.getMessage() and str(forged_id) in record.getMessage()
        for record in caplog.records
    )


@pytest.mark.asyncio
async def test_get_filters_by_id_and_tenant():
    tenant_id = uuid.uuid4()
    row_id = uuid.uuid4()
    db = _mock_db_returning_rows([])
    builder = ScopedQueryBuilder(db, _tenant_scope(tenant_id))

    row = await builder.table("carriers").get(row_id)

    assert row is None
    sql = str(_data_statements(db)[0])
    assert "carriers.id = :id_1" in sql
    assert "carriers.tenant_id = :tenant_id_1" in sql


@pytest.mark.asyncio
async def test_select_rejects_unknown_filter_column():
    builder = ScopedQueryBuilder(_mock_db_returning_rows(), _tenant_scope())
    with pytest.raises(ValidationException):
        await builder.table("loads").select({"not_a_column": 1})


@pytest.mark.asyncio
async def test_cached_select_uses_tenant_namespace():
    tenant_id = uuid.uuid4()
    cached_rows = [{"id": str(uuid.uuid4()), "tenant_id": str(tenant_id)}]
    cache = AsyncMock()
    cache.get_or_set.return_value = cached_rows
    db = _mock_db_returning_rows()
    builder = ScopedQueryBuilder(db, _tenant_scope(tenant_id), cache=cache)

    rows = await builder.table("customers").select({"name": "Globex"}, cached=True)

    assert rows == cached_rows
    namespace, key, _factory = cache.get_or_set.call_args.args
    assert namespace == tenant_id
    assert key.startswith("rows:customers:")


@pytest.mark.asyncio
async def test_cached_select_miss_returns_json_typed_rows():
    tenant_id = uuid.uuid4()
    row_id = uuid.uuid4()
    cache = AsyncMock()

    async def get_or_set(namespace, key, factory):
        return await factory()

    cache.get_or_set.side_effect = get_or_set
    db = _mock_db_returning_rows([{"id": row_id, "tenant_id": tenant_id, "name": "Globex"}])
    builder = ScopedQueryBuilder(db, _tenant_scope(tenant_id), cache=cache)

    rows = await builder.table("customers").select(cached=True)

    assert rows == [{"id": str(row_id), "tenant_id": str(tenant_id), "name": "Globex"}]


@pytest.mark.asyncio
async def test_writes_drop_cached_selects_for_the_table():
    tenant_id = uuid.uuid4()
    row_id = uuid.uuid4()
    cache = AsyncMock()
    db = _mock_db_returning_rows([{"id": row_id, "tenant_id": tenant_id, "load_number": "L-7"}])
    loads = ScopedQueryBuilder(db, _tenant_scope(tenant_id), cache=cache).table("loads")

    await loads.insert({"load_number": "L-7"})
    await loads.update(row_id, {"load_number": "L-8"})
    await loads.delete(row_id)

    assert cache.invalidate_prefix.await_count == 3
    for call in cache.invalidate_prefix.await_args_list:
        assert call.args == (tenant_id, "rows:loads:")


@pytest.mark.asyncio
async def test_all_scope_write_drops_cache_of_the_row_tenant():
    tenant_id = uuid.uuid4()
    cache = AsyncMock()
    db = _mock_db_returning_rows([{"id": uuid.uuid4(), "tenant_id": tenant_id, "name": "Initech"}])
    builder = ScopedQueryBuilder(db, _all_scope(), cache=cache)

    await builder.table("carriers").insert({"name": "Initech", "tenant_id": tenant_id})

    cache.invalidate_prefix.assert_awaited_once_with(tenant_id, "rows:carriers:")


@pytest.mark.asyncio
async def test_delete_of_missing_row_leaves_cache_alone():
    cache = AsyncMock()
    builder = ScopedQueryBuilder(_mock_db_returning_rows([]), _tenant_scope(), cache=cache)

    await builder.table("vehicles").delete(uuid.uuid4())

    cache.invalidate_prefix.assert_not_awaited()


@pytest.mark.asyncio
async def test_count_carries_tenant_filter():
    tenant_id = uuid.uuid4()
    db = _mock_db_returning_rows(scalar=7)
    builder = ScopedQueryBuilder(db, _tenant_scope(tenant_id))

    total = await builder.table("invoices").count()

    assert total == 7
    assert "invoices.tenant_id = :tenant_id_1" in str(_data_statements(db)[0])


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_insert_stamps_scope_tenant():
    tenant_id = uuid.uuid4()
    db = _mock_db_returning_rows([{"id": uuid.uuid4(), "tenant_id": tenant_id, "load_number": "L-100"}])
    builder = ScopedQueryBuilder(db, _tenant_scope(tenant_id))

    row = await builder.table("loads").insert({"load_number": "L-100"})

    assert row["load_number"] == "L-100"
    params = _data_statements(db)[0].compile().params
    assert params["tenant_id"] == tenant_id


@pytest.mark.asyncio
async def test_insert_for_other_tenant_is_forbidden():
    db = _mock_db_returning_rows()
    builder = ScopedQueryBuilder(db, _tenant_scope())

    with pytest.raises(ForbiddenException):
        await builder.table("loads").insert({"load_number": "L-1", "tenant_id": uuid.uuid4()})
    db.execute.assert_not_called()


@pytest.mark.asyncio
async def test_insert_in_all_scope_requires_explicit_tenant():
    builder = ScopedQueryBuilder(_mock_db_returning_rows(), _all_scope())
    with pytest.raises(ValidationException):
        await builder.table("loads").insert({"load_number": "L-1"})


@pytest.mark.asyncio
async def test_update_filters_by_id_and_tenant():
    tenant_id = uuid.uuid4()
    row_id = uuid.uuid4()
    db = _mock_db_returning_rows([{"id": row_id, "tenant_id": tenant_id, "origin": "Dallas, TX"}])
    builder = ScopedQueryBuilder(db, _tenant_scope(tenant_id))

    row = await builder.table("loads").update(row_id, {"origin": "Dallas, TX"})

    assert row["origin"] == "Dallas, TX"
    sql = str(_data_statements(db)[0])
    assert sql.startswith("UPDATE loads")
    assert "loads.id = :id_1" in sql
    assert "loads.tenant_id = :tenant_id_1" in sql


@pytest.mark.asyncio
async def test_update_cannot_move_row_to_another_tenant():
    db = _mock_db_returning_rows()
    builder = ScopedQueryBuilder(db, _tenant_scope())

    with pytest.raises(ValidationException):
        await builder.table("loads").update(uuid.uuid4(), {"tenant_id": uuid.uuid4()})
    db.execute.assert_not_called()


@pytest.mark.asyncio
async def test_update_rejects_protected_columns():
    builder = ScopedQueryBuilder(_mock_db_returning_rows(), _tenant_scope())
    with pytest.raises(ValidationException):
        await builder.table("loads").update(uuid.uuid4(), {"id": uuid.uuid4()})


@pytest.mark.asyncio
async def test_delete_filters_by_id_and_tenant():
    tenant_id = uuid.uuid4()
    row_id = uuid.uuid4()
    db = _mock_db_returning_rows([{"id": row_id, "tenant_id": tenant_id}])
    builder = ScopedQueryBuilder(db, _tenant_scope(tenant_id))

    deleted = await builder.table("vehicles").delete(row_id)

    assert deleted is True
    sql = str(_data_statements(db)[0])
    assert sql.startswith("DELETE FROM vehicles")
    assert "vehicles.id = :id_1" in sql
    assert "vehicles.tenant_id = :tenant_id_1" in sql


@pytest.mark.asyncio
async def test_delete_of_missing_row_returns_false():
    builder = ScopedQueryBuilder(_mock_db_returning_rows([]), _tenant_scope())
    assert await builder.table("vehicles").delete(uuid.uuid4()) is False


# ---------------------------------------------------------------------------
# RLS context
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_apply_scope_sets_tenant_and_disables_bypass():
    db = _mock_db_returning_rows()
    scope = _tenant_scope()

    await apply_scope(db, scope)

    calls = _config_calls(db)
    assert calls["app.current_tenant_id"] == {"tenant_id": str(scope.tenant_id)}
    assert calls["app.current_user_id"] == {"user_id": str(scope.user_id)}
    assert "app.admin_bypass" in calls


@pytest.mark.asyncio
async def test_apply_scope_refuses_unready_scope():
    db = _mock_db_returning_rows()
    with pytest.raises(ScopeNotReadyException):
        await apply_scope(db, EffectiveScope.not_ready())
    db.execute.assert_not_called()


@pytest.mark.asyncio
async def test_with_tenant_context_commits_after_callback():
    db = _mock_db_returning_rows()
    callback = AsyncMock(return_value="done")

    result = await with_tenant_context(db, _tenant_scope(), callback)

    assert result == "done"
    callback.assert_awaited_once_with(db)
    db.commit.assert_awaited_once()
