"""Tenancy module: tenant scope resolution, impersonation and tenant isolation."""

from src.modules.tenancy.auth import AuthenticatedUser, get_current_user
from src.modules.tenancy.dependencies import (
    get_effective_scope,
    get_scoped_query_builder,
    require_permission,
    require_role,
    require_scope,
)
from src.modules.tenancy.impersonation import ImpersonationService
from src.modules.tenancy.middleware import TenantContextMiddleware
from src.modules.tenancy.permissions import PermissionService
from src.modules.tenancy.realtime import RealtimeGate, SubscriptionRegistry
from src.modules.tenancy.resolver import TenantResolver
from src.modules.tenancy.schemas import EffectiveScope
from src.modules.tenancy.scoped_query import ScopedQueryBuilder
from src.modules.tenancy.service import apply_scope, with_tenant_context

__all__ = [
    # Schemas
    "EffectiveScope",
    # Auth
    "AuthenticatedUser",
    "get_current_user",
    # Middleware
    "TenantContextMiddleware",
    # Dependencies
    "get_effective_scope",
    "require_scope",
    "require_role",
    "require_permission",
    "get_scoped_query_builder",
    # Services
    "TenantResolver",
    "ImpersonationService",
    "ScopedQueryBuilder",
    "RealtimeGate",
    "SubscriptionRegistry",
    "PermissionService",
    "apply_scope",
    "with_tenant_context",
]
