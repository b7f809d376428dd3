from src.database.base import Base, TenantScopedMixin, TimestampMixin, UUIDPrimaryKeyMixin
from src.database.engine import async_session, engine
from src.database.session import close_redis, get_db, get_redis
from src.database.tenant import set_admin_bypass, set_tenant_context

__all__ = [
    "Base",
    "TenantScopedMixin",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "async_session",
    "engine",
    "get_db",
    "get_redis",
    "close_redis",
    "set_tenant_context",
    "set_admin_bypass",
]
