"""Scoped Query Builder: the only entry point for tenant-owned table access.

Every statement built here carries ``tenant_id = <scope tenant>`` unless the
scope is "all" under a verified platform admin. Updates and deletes filter by
primary key *and* tenant, and every result set is re-checked in Python before
it is returned, so a misconfigured RLS policy still cannot leak a row.
"""

import hashlib
import json
import logging
import uuid
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy import Table, delete, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.exceptions import ForbiddenException, ScopeNotReadyException, ValidationException
from src.models.carrier import Carrier
from src.models.customer import Customer
from src.models.enums import ScopeMode
from src.models.invoice import Invoice
from src.models.load import Load
from src.models.vehicle import Vehicle
from src.modules.tenancy.cache import TenantCache
from src.modules.tenancy.constants import SECURITY_LOGGER
from src.modules.tenancy.schemas import EffectiveScope
from src.modules.tenancy.service import apply_scope

logger = logging.getLogger(__name__)
security_logger = logging.getLogger(SECURITY_LOGGER)

TENANT_OWNED_TABLES: dict[str, type] = {
    "loads": Load,
    "vehicles": Vehicle,
    "carriers": Carrier,
    "customers": Customer,
    "invoices": Invoice,
}

# Columns callers may never write directly
_PROTECTED_COLUMNS = frozenset({"id", "created_at", "updated_at"})


def get_tenant_table(name: str) -> Table:
    model = TENANT_OWNED_TABLES.get(name)
    if model is None:
        raise ValidationException(
            f"Unknown tenant-owned table '{name}'",
            details=[{"field": "table", "allowed": sorted(TENANT_OWNED_TABLES)}],
        )
    return model.__table__


class ScopedQueryBuilder:
    """Builds tenant-filtered statements for one resolved scope.

    Construction fails with ``ScopeNotReadyException`` for an unready scope,
    before any statement reaches the database.
    """

    def __init__(
        self,
        session: AsyncSession,
        scope: EffectiveScope,
        cache: TenantCache | None = None,
    ) -> None:
        if not scope.is_ready:
            raise ScopeNotReadyException(
                "Tenant scope is not resolved; no data queries may run",
                details=[{"mode": scope.mode.value}],
            )
        if scope.mode == ScopeMode.ALL and not scope.is_platform_admin:
            raise ForbiddenException("Cross-tenant scope requires platform admin")
        self.session = session
        self.scope = scope
        self.cache = cache
        self.dropped_rows = 0
        self._context_applied = False

    def table(self, name: str) -> "ScopedTable":
        return ScopedTable(self, name, get_tenant_table(name))

    async def ensure_context(self) -> None:
        if not self._context_applied:
            await apply_scope(self.session, self.scope)
            self._context_applied = True

    def refilter(self, table_name: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Drop any row whose tenant_id does not match the scope."""
        if not self.scope.requires_filter:
            return rows
        expected = str(self.scope.tenant_id)
        kept = []
        for row in rows:
            if str(row.get("tenant_id")) == expected:
                kept.append(row)
                continue
            self.dropped_rows += 1
            security_logger.warning(
                "CrossTenantLeakDetected table=%s row=%s row_tenant=%s expected_tenant=%s user=%s",
                table_name,
                row.get("id"),
                row.get("tenant_id"),
                expected,
                self.scope.user_id,
            )
        return kept


class ScopedTable:
    def __init__(self, builder: ScopedQueryBuilder, name: str, table: Table) -> None:
        self.builder = builder
        self.name = name
        self.table = table

    @property
    def _scope(self) -> EffectiveScope:
        return self.builder.scope

    def _tenant_clause(self) -> list:
        if self._scope.requires_filter:
            return [self.table.c.tenant_id == self._scope.tenant_id]
        return []

    def _filter_clauses(self, filters: dict[str, Any] | None) -> list:
        clauses = []
        for column, value in (filters or {}).items():
            if column not in self.table.c:
                raise ValidationException(f"Unknown column '{column}' on table '{self.name}'")
            clauses.append(self.table.c[column] == value)
        return clauses

    def _check_values(self, values: dict[str, Any]) -> None:
        unknown = [key for key in values if key not in self.table.c]
        if unknown:
            raise ValidationException(
                f"Unknown columns for table '{self.name}': {', '.join(sorted(unknown))}"
            )
        protected = _PROTECTED_COLUMNS.intersection(values)
        if protected:
            raise ValidationException(
                f"Columns cannot be written directly: {', '.join(sorted(protected))}"
            )

    async def _fetch(self, stmt) -> list[dict[str, Any]]:
        await self.builder.ensure_context()
        result = await self.builder.session.execute(stmt)
        return [dict(row) for row in result.mappings().all()]

    async def _fetch_json(self, stmt) -> list[dict[str, Any]]:
        return jsonable_encoder(await self._fetch(stmt))

    async def _invalidate_rows(self, rows: list[dict[str, Any]]) -> None:
        """Drop cached selects on this table for every tenant the write touched."""
        if self.builder.cache is None:
            return
        for tenant_id in {str(row["tenant_id"]) for row in rows}:
            await self.builder.cache.invalidate_prefix(uuid.UUID(tenant_id), f"rows:{self.name}:")

    async def select(
        self,
        filters: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int | None = None,
        cached: bool = False,
    ) -> list[dict[str, Any]]:
        """Tenant-filtered rows.

        With ``cached=True`` the result goes through the tenant cache and rows
        come back JSON-typed (UUIDs and datetimes as strings) on hit and miss
        alike. Writes through this table drop the tenant's cached selects.
        """
        stmt = select(self.table).where(*self._tenant_clause(), *self._filter_clauses(filters))
        if order_by is not None:
            if order_by not in self.table.c:
                raise ValidationException(f"Unknown column '{order_by}' on table '{self.name}'")
            column = self.table.c[order_by]
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)

        if cached and self.builder.cache is not None and self._scope.requires_filter:
            key = self._cache_key(filters, order_by, descending, limit, offset)
            rows = await self.builder.cache.get_or_set(
                self._scope.tenant_id, key, lambda: self._fetch_json(stmt)
            )
        else:
            rows = await self._fetch(stmt)
        return self.builder.refilter(self.name, rows)

    async def get(self, row_id: uuid.UUID) -> dict[str, Any] | None:
        stmt = select(self.table).where(self.table.c.id == row_id, *self._tenant_clause())
        rows = self.builder.refilter(self.name, await self._fetch(stmt))
        return rows[0] if rows else None

    async def count(self, filters: dict[str, Any] | None = None) -> int:
        stmt = (
            select(func.count())
            .select_from(self.table)
            .where(*self._tenant_clause(), *self._filter_clauses(filters))
        )
        await self.builder.ensure_context()
        result = await self.builder.session.execute(stmt)
        return result.scalar() or 0

    async def insert(self, values: dict[str, Any]) -> dict[str, Any]:
        values = dict(values)
        self._check_values(values)
        requested = values.get("tenant_id")
        if self._scope.requires_filter:
            if requested is not None and str(requested) != str(self._scope.tenant_id):
                raise ForbiddenException("Cannot write rows for a different tenant")
            values["tenant_id"] = self._scope.tenant_id
        elif requested is None:
            raise ValidationException("tenant_id is required when writing in all-tenants scope")

        stmt = insert(self.table).values(**values).returning(*self.table.c)
        rows = self.builder.refilter(self.name, await self._fetch(stmt))
        await self._invalidate_rows(rows)
        return rows[0]

    async def update(self, row_id: uuid.UUID, values: dict[str, Any]) -> dict[str, Any] | None:
        values = dict(values)
        self._check_values(values)
        if "tenant_id" in values:
            if self._scope.requires_filter and str(values["tenant_id"]) == str(self._scope.tenant_id):
                values.pop("tenant_id")
            else:
                raise ValidationException("tenant_id cannot be changed")
        if not values:
            return await self.get(row_id)

        stmt = (
            update(self.table)
            .where(self.table.c.id == row_id, *self._tenant_clause())
            .values(**values)
            .returning(*self.table.c)
        )
        rows = self.builder.refilter(self.name, await self._fetch(stmt))
        await self._invalidate_rows(rows)
        return rows[0] if rows else None

    async def delete(self, row_id: uuid.UUID) -> bool:
        stmt = (
            delete(self.table)
            .where(self.table.c.id == row_id, *self._tenant_clause())
            .returning(self.table.c.id, self.table.c.tenant_id)
        )
        rows = self.builder.refilter(self.name, await self._fetch(stmt))
        await self._invalidate_rows(rows)
        return bool(rows)

    def _cache_key(self, filters, order_by, descending, limit, offset) -> str:
        params = json.dumps(
            {
                "filters": filters or {},
                "order_by": order_by,
                "desc": descending,
                "limit": limit,
                "offset": offset,
            },
            sort_keys=True,
            default=str,
        )
        digest = hashlib.sha256(params.encode()).hexdigest()[:16]
        return f"rows:{self.name}:{digest}"
