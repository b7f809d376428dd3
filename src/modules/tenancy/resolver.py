"""Tenant Resolver: turns (user, admin flag, impersonation, preferences) into an EffectiveScope."""

import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.exceptions import (
    BusinessRuleException,
    ForbiddenException,
    NoTenantAccessException,
    NotFoundException,
)
from src.models.enums import AuditAction, ScopeMode
from src.models.impersonation_session import ImpersonationSession
from src.models.profile import Profile
from src.models.tenant import Tenant
from src.models.tenant_user import TenantUser
from src.modules.tenancy.audit import record_audit
from src.modules.tenancy.auth import AuthenticatedUser
from src.modules.tenancy.cache import TenantCache
from src.modules.tenancy.constants import DEFAULT_TENANT_SLUG
from src.modules.tenancy.impersonation import ImpersonationService
from src.modules.tenancy.preferences import PreferenceStore
from src.modules.tenancy.schemas import EffectiveScope, TenantSummary

logger = logging.getLogger(__name__)


def select_assigned_tenant(
    memberships: Sequence[Tenant], preferred_id: uuid.UUID | None = None
) -> Tenant | None:
    """Pick the tenant a user works in when not impersonating.

    Order: the saved preference if it is still a membership, the only
    membership, the ``default`` tenant, then the first membership.
    """
    if not memberships:
        return None
    if preferred_id is not None:
        for tenant in memberships:
            if tenant.id == preferred_id:
                return tenant
    if len(memberships) == 1:
        return memberships[0]
    for tenant in memberships:
        if tenant.slug == DEFAULT_TENANT_SLUG:
            return tenant
    return memberships[0]


def resolve_scope(
    *,
    user_id: uuid.UUID | None,
    is_platform_admin: bool,
    impersonation: ImpersonationSession | None,
    show_all_tenants: bool,
    assigned_tenant: Tenant | None,
    now: datetime,
) -> EffectiveScope:
    """Pure scope decision.

    1. an active impersonation session wins, flagged as impersonated;
    2. a platform admin with "show all tenants" gets the unscoped view;
    3. otherwise the assigned tenant;
    4. with no tenant, admins fall back to all tenants and everyone else
       gets ``NO_ACCESS``.
    """
    if user_id is None:
        return EffectiveScope.not_ready()

    if (
        impersonation is not None
        and is_platform_admin
        and impersonation.admin_user_id == user_id
        and impersonation.is_active(now)
        and impersonation.tenant is not None
    ):
        return EffectiveScope(
            mode=ScopeMode.TENANT,
            user_id=user_id,
            tenant_id=impersonation.tenant_id,
            tenant=TenantSummary.model_validate(impersonation.tenant),
            is_platform_admin=True,
            is_impersonating=True,
            impersonation_session_id=impersonation.id,
            valid_until=impersonation.expires_at,
        )

    if is_platform_admin and show_all_tenants:
        return EffectiveScope(mode=ScopeMode.ALL, user_id=user_id, is_platform_admin=True)

    if assigned_tenant is not None:
        return EffectiveScope(
            mode=ScopeMode.TENANT,
            user_id=user_id,
            tenant_id=assigned_tenant.id,
            tenant=TenantSummary.model_validate(assigned_tenant),
            is_platform_admin=is_platform_admin,
        )

    if is_platform_admin:
        return EffectiveScope(mode=ScopeMode.ALL, user_id=user_id, is_platform_admin=True)
    return EffectiveScope(mode=ScopeMode.NO_ACCESS, user_id=user_id)


class TenantResolver:
    def __init__(
        self,
        db: AsyncSession,
        cache: TenantCache,
        preferences: PreferenceStore,
        impersonation: ImpersonationService | None = None,
    ):
        self.db = db
        self.cache = cache
        self.preferences = preferences
        self.impersonation = impersonation or ImpersonationService(db, cache)

    async def resolve(
        self,
        user: AuthenticatedUser,
        *,
        requested_tenant_id: uuid.UUID | None = None,
        impersonation_session_id: uuid.UUID | None = None,
        now: datetime | None = None,
    ) -> EffectiveScope:
        now = now or datetime.now(UTC)
        # A per-request tenant hint bypasses the cached scope
        use_cache = requested_tenant_id is None
        if use_cache:
            cached = await self._cached_scope(user.id, impersonation_session_id, now)
            if cached is not None:
                return cached

        scope = await self._resolve_fresh(user, requested_tenant_id, impersonation_session_id, now)
        if use_cache:
            await self._store_scope(scope, now)
        return scope

    async def list_tenants(self, user: AuthenticatedUser) -> list[Tenant]:
        profile = await self._get_profile(user.id)
        if profile is not None and profile.is_platform_admin:
            result = await self.db.execute(select(Tenant).order_by(Tenant.name))
            return list(result.scalars().all())
        return await self._get_memberships(user.id)

    async def switch_tenant(
        self, user: AuthenticatedUser, tenant_id: uuid.UUID, now: datetime | None = None
    ) -> EffectiveScope:
        """Make ``tenant_id`` the user's tenant.

        The audit entry commits first; then the previous tenant's cached data
        and the user's cached scope are deleted before the new scope is
        resolved and returned.
        """
        now = now or datetime.now(UTC)
        current = await self.resolve(user, now=now)
        if current.is_impersonating:
            raise BusinessRuleException("Stop impersonating before switching tenants")

        profile = await self._get_profile(user.id)
        is_admin = profile is not None and profile.is_platform_admin
        memberships = await self._get_memberships(user.id)
        target = next((tenant for tenant in memberships if tenant.id == tenant_id), None)
        if target is None:
            if not is_admin:
                raise NoTenantAccessException(f"No access to tenant {tenant_id}")
            target = await self.db.get(Tenant, tenant_id)
            if target is None:
                raise NotFoundException(f"Tenant {tenant_id} not found")

        prefs = await self.preferences.get(user.id)
        if prefs.show_all_tenants and is_admin:
            await self._record_show_all(user.id, False, current)
            await self.preferences.set_show_all(user.id, False)
        await self.preferences.set_selected_tenant(user.id, target.id)
        await self.db.commit()

        if current.tenant_id is not None and current.tenant_id != target.id:
            await self.cache.invalidate_tenant(current.tenant_id)
        await self.cache.invalidate_scope(user.id)
        scope = await self.resolve(user, now=now)
        if current.tenant_id != scope.tenant_id:
            logger.info(
                "Tenant switch user=%s from=%s to=%s", user.id, current.tenant_id, scope.tenant_id
            )
        return scope

    async def set_show_all(
        self, user: AuthenticatedUser, enabled: bool, now: datetime | None = None
    ) -> EffectiveScope:
        now = now or datetime.now(UTC)
        profile = await self._get_profile(user.id)
        if profile is None or not profile.is_platform_admin:
            raise ForbiddenException("Only platform admins can view all tenants")

        prefs = await self.preferences.get(user.id)
        if prefs.show_all_tenants != enabled:
            current = await self.resolve(user, now=now)
            await self._record_show_all(user.id, enabled, current)
            await self.preferences.set_show_all(user.id, enabled)
            await self.db.commit()
            if enabled and current.tenant_id is not None:
                await self.cache.invalidate_tenant(current.tenant_id)

        await self.cache.invalidate_scope(user.id)
        return await self.resolve(user, now=now)

    async def dismiss_banner(self, user: AuthenticatedUser) -> None:
        await self.preferences.set_banner_dismissed(user.id, True)

    async def logout(self, user: AuthenticatedUser) -> None:
        await self.preferences.clear(user.id)
        await self.cache.invalidate_scope(user.id)
        logger.info("Cleared tenancy preferences on logout user=%s", user.id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _resolve_fresh(
        self,
        user: AuthenticatedUser,
        requested_tenant_id: uuid.UUID | None,
        impersonation_session_id: uuid.UUID | None,
        now: datetime,
    ) -> EffectiveScope:
        profile = await self._get_profile(user.id)
        if profile is None:
            logger.warning("Authenticated user=%s has no profile", user.id)
            return EffectiveScope(mode=ScopeMode.NO_ACCESS, user_id=user.id)
        is_admin = profile.is_platform_admin

        session = None
        if is_admin:
            session = await self._active_impersonation(user.id, impersonation_session_id, now)

        prefs = await self.preferences.get(user.id)
        memberships = await self._get_memberships(user.id)
        preferred = requested_tenant_id or prefs.selected_tenant_id
        assigned = select_assigned_tenant(memberships, preferred)
        if is_admin and preferred is not None and (assigned is None or assigned.id != preferred):
            # Admins may work in tenants they are not a member of
            chosen = await self.db.get(Tenant, preferred)
            if chosen is not None:
                assigned = chosen
        if requested_tenant_id is not None and (assigned is None or assigned.id != requested_tenant_id):
            logger.info("Ignoring tenant hint %s for user=%s", requested_tenant_id, user.id)

        return resolve_scope(
            user_id=user.id,
            is_platform_admin=is_admin,
            impersonation=session,
            show_all_tenants=prefs.show_all_tenants,
            assigned_tenant=assigned,
            now=now,
        )

    async def _active_impersonation(
        self, user_id: uuid.UUID, hint: uuid.UUID | None, now: datetime
    ) -> ImpersonationSession | None:
        if hint is not None:
            validation = await self.impersonation.validate(user_id, hint, now)
            if validation.valid:
                return validation.session
            logger.info("Impersonation session %s not honoured: %s", hint, validation.reason)
        return await self.impersonation.get_active(user_id, now)

    async def _cached_scope(
        self, user_id: uuid.UUID, hint: uuid.UUID | None, now: datetime
    ) -> EffectiveScope | None:
        payload = await self.cache.get_scope(user_id)
        if payload is None:
            return None
        scope = EffectiveScope.model_validate(payload)
        if scope.valid_until is not None and scope.valid_until <= now:
            await self.cache.invalidate_scope(user_id)
            return None
        if hint is not None and scope.impersonation_session_id != hint:
            return None
        return scope

    async def _store_scope(self, scope: EffectiveScope, now: datetime) -> None:
        if scope.user_id is None:
            return
        ttl = settings.tenant_cache_ttl_seconds
        if scope.valid_until is not None:
            ttl = min(ttl, int((scope.valid_until - now).total_seconds()))
            if ttl <= 0:
                return
        await self.cache.set_scope(scope.user_id, scope.model_dump(mode="json"), ttl=ttl)

    async def _record_show_all(
        self, user_id: uuid.UUID, enabled: bool, current: EffectiveScope
    ) -> None:
        await record_audit(
            self.db,
            AuditAction.SHOW_ALL_ENABLED if enabled else AuditAction.SHOW_ALL_DISABLED,
            actor_user_id=user_id,
            tenant_id=current.tenant_id,
            old_value={"show_all_tenants": not enabled, "scope": current.mode.value},
            new_value={"show_all_tenants": enabled},
        )

    async def _get_profile(self, user_id: uuid.UUID) -> Profile | None:
        result = await self.db.execute(select(Profile).where(Profile.id == user_id))
        return result.scalar_one_or_none()

    async def _get_memberships(self, user_id: uuid.UUID) -> list[Tenant]:
        result = await self.db.execute(
            select(Tenant)
            .join(TenantUser, TenantUser.tenant_id == Tenant.id)
            .where(TenantUser.user_id == user_id, TenantUser.is_active.is_(True))
            .order_by(Tenant.created_at)
        )
        return list(result.scalars().all())
