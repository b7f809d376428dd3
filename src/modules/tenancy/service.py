"""Apply an EffectiveScope to a database transaction as RLS session variables."""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from src.database.tenant import set_admin_bypass, set_tenant_context
from src.exceptions import ForbiddenException, ScopeNotReadyException
from src.models.enums import ScopeMode
from src.modules.tenancy.schemas import EffectiveScope

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def apply_scope(session: AsyncSession, scope: EffectiveScope) -> None:
    """Set the transaction's RLS variables from ``scope``.

    Tenant scopes pin ``app.current_tenant_id``. The "all" scope is only
    honoured for a verified platform admin and turns on ``app.admin_bypass``.
    Unready scopes are refused before any statement is sent.
    """
    if not scope.is_ready:
        raise ScopeNotReadyException("Tenant scope is not resolved yet")

    await set_tenant_context(
        session,
        tenant_id=str(scope.tenant_id) if scope.tenant_id else None,
        user_id=str(scope.user_id) if scope.user_id else None,
        impersonation_session_id=(
            str(scope.impersonation_session_id) if scope.impersonation_session_id else None
        ),
    )
    if scope.mode == ScopeMode.ALL:
        if not scope.is_platform_admin:
            raise ForbiddenException("Cross-tenant scope requires platform admin")
        await set_admin_bypass(session, enable=True)
        logger.debug("Admin bypass enabled for user=%s", scope.user_id)


async def with_tenant_context(
    session: AsyncSession,
    scope: EffectiveScope,
    callback: Callable[[AsyncSession], Awaitable[T]],
) -> T:
    """Execute a callback within a transaction that has the scope's RLS context set.

    The session variables are transaction-scoped via ``set_config(..., true)``,
    so admin bypass ends with the commit or rollback.

    Args:
        session: The async database session.
        scope: The resolved scope to apply.
        callback: An async callable that receives the session and returns a result.

    Returns:
        The result of the callback.
    """
    await apply_scope(session, scope)
    result = await callback(session)
    await session.commit()
    return result
