from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


async def set_tenant_context(
    session: AsyncSession,
    tenant_id: str | None,
    user_id: str | None = None,
    impersonation_session_id: str | None = None,
) -> None:
    """Set PostgreSQL session variables for RLS tenant isolation.

    Uses SET LOCAL semantics so variables are scoped to the current transaction.
    A ``None`` tenant_id writes an empty string, which the RLS policies treat
    as "no tenant" (deny), never as "all tenants".
    """
    await session.execute(
        text("SELECT set_config('app.current_tenant_id', :tenant_id, true)"),
        {"tenant_id": str(tenant_id) if tenant_id else ""},
    )
    if user_id:
        await session.execute(
            text("SELECT set_config('app.current_user_id', :user_id, true)"),
            {"user_id": str(user_id)},
        )
    if impersonation_session_id:
        await session.execute(
            text("SELECT set_config('app.impersonation_session_id', :session_id, true)"),
            {"session_id": str(impersonation_session_id)},
        )
    await session.execute(
        text("SELECT set_config('app.admin_bypass', 'false', true)")
    )


async def set_admin_bypass(session: AsyncSession, *, enable: bool = True) -> None:
    """Enable or disable admin RLS bypass for the current transaction."""
    await session.execute(
        text("SELECT set_config('app.admin_bypass', :val, true)"),
        {"val": "true" if enable else "false"},
    )
