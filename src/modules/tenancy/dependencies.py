"""FastAPI dependency functions for scope resolution and gating."""

import logging

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.session import get_db, get_redis
from src.exceptions import ForbiddenException, NoRoleException, NoTenantAccessException, ScopeNotReadyException
from src.models.enums import ScopeMode
from src.modules.tenancy.auth import AuthenticatedUser, get_current_user
from src.modules.tenancy.cache import TenantCache
from src.modules.tenancy.feature_gate import FeatureFlagService, FeatureGateService
from src.modules.tenancy.functions import FunctionsClient
from src.modules.tenancy.impersonation import ImpersonationService
from src.modules.tenancy.permissions import PermissionService
from src.modules.tenancy.preferences import PreferenceStore
from src.modules.tenancy.realtime import SubscriptionRegistry
from src.modules.tenancy.resolver import TenantResolver
from src.modules.tenancy.schemas import EffectiveScope
from src.modules.tenancy.scoped_query import ScopedQueryBuilder

logger = logging.getLogger(__name__)

_registry: SubscriptionRegistry | None = None
_functions_client: FunctionsClient | None = None


def get_tenant_cache() -> TenantCache:
    return TenantCache(get_redis())


def get_preference_store() -> PreferenceStore:
    return PreferenceStore(get_redis())


def get_subscription_registry() -> SubscriptionRegistry:
    global _registry
    if _registry is None:
        _registry = SubscriptionRegistry(get_redis())
    return _registry


def get_functions_client() -> FunctionsClient:
    global _functions_client
    if _functions_client is None:
        _functions_client = FunctionsClient()
    return _functions_client


def get_impersonation_service(
    db: AsyncSession = Depends(get_db),
    cache: TenantCache = Depends(get_tenant_cache),
    registry: SubscriptionRegistry = Depends(get_subscription_registry),
) -> ImpersonationService:
    return ImpersonationService(db, cache=cache, registry=registry)


def get_tenant_resolver(
    db: AsyncSession = Depends(get_db),
    cache: TenantCache = Depends(get_tenant_cache),
    preferences: PreferenceStore = Depends(get_preference_store),
    impersonation: ImpersonationService = Depends(get_impersonation_service),
) -> TenantResolver:
    return TenantResolver(db, cache, preferences, impersonation)


async def get_effective_scope(
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    resolver: TenantResolver = Depends(get_tenant_resolver),
) -> EffectiveScope:
    """Resolve the caller's scope server-side.

    Header hints copied by TenantContextMiddleware are passed along but
    only honoured when the resolver can verify them.
    """
    scope = await resolver.resolve(
        user,
        requested_tenant_id=getattr(request.state, "tenant_hint", None),
        impersonation_session_id=getattr(request.state, "impersonation_hint", None),
    )
    request.state.scope = scope
    return scope


def require_scope(scope: EffectiveScope = Depends(get_effective_scope)) -> EffectiveScope:
    """Dependency that guarantees a usable scope before any data call."""
    if scope.mode == ScopeMode.NO_ACCESS:
        raise NoTenantAccessException("No tenant access. Contact your administrator.")
    if not scope.is_ready:
        raise ScopeNotReadyException("Tenant scope is not resolved yet")
    return scope


def get_permission_service(db: AsyncSession = Depends(get_db)) -> PermissionService:
    return PermissionService(db)


async def require_role(
    scope: EffectiveScope = Depends(require_scope),
    permissions: PermissionService = Depends(get_permission_service),
) -> EffectiveScope:
    """Users without a custom role get NO_ROLE; platform admins pass."""
    if scope.is_platform_admin:
        return scope
    if not await permissions.has_custom_role(scope.user_id):
        logger.info("User %s has no custom role; data access refused", scope.user_id)
        raise NoRoleException("No role assigned. Contact your administrator.")
    return scope


def require_permission(permission: str):
    """Factory that returns a FastAPI dependency checking a specific permission code."""

    async def _check(
        scope: EffectiveScope = Depends(require_role),
        permissions: PermissionService = Depends(get_permission_service),
    ) -> EffectiveScope:
        has = await permissions.check_permission(
            scope.user_id, permission, is_platform_admin=scope.is_platform_admin
        )
        if not has:
            raise ForbiddenException(f"Permission denied: {permission}")
        return scope

    return _check


def get_feature_gate_service(
    db: AsyncSession = Depends(get_db),
    cache: TenantCache = Depends(get_tenant_cache),
    permissions: PermissionService = Depends(get_permission_service),
) -> FeatureGateService:
    return FeatureGateService(FeatureFlagService(db, cache), permissions)


def get_scoped_query_builder(
    scope: EffectiveScope = Depends(require_role),
    db: AsyncSession = Depends(get_db),
    cache: TenantCache = Depends(get_tenant_cache),
) -> ScopedQueryBuilder:
    return ScopedQueryBuilder(db, scope, cache=cache)
