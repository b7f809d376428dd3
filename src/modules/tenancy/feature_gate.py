"""Permission/Feature Gate.

``is_visible`` is the pure decision; flag resolution and permission loading
happen in collaborators that feed it.
"""

import logging
from collections.abc import Collection
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.exceptions import ScopeNotReadyException
from src.models.feature_flag import FeatureFlag, ReleaseChannelFeatureFlag, TenantFeatureFlag
from src.modules.tenancy.cache import TenantCache
from src.modules.tenancy.permissions import PermissionService
from src.modules.tenancy.schemas import EffectiveScope, TenantSummary

logger = logging.getLogger(__name__)

SOURCE_NOT_FOUND = "not_found"
SOURCE_KILLSWITCH = "killswitch"
SOURCE_TENANT_OVERRIDE = "tenant_override"
SOURCE_RELEASE_CHANNEL = "release_channel"
SOURCE_GLOBAL_DEFAULT = "global_default"
SOURCE_PLATFORM_SCOPE = "platform_scope"


def is_visible(
    feature_enabled: bool,
    permission_code: str | None,
    *,
    is_platform_admin: bool,
    has_custom_role: bool,
    permissions: Collection[str],
) -> bool:
    """Platform admins skip the permission half; everyone else needs a role,
    the flag and the permission. No custom role means nothing is visible."""
    if is_platform_admin:
        return feature_enabled
    if not has_custom_role or not feature_enabled:
        return False
    # A gate with no permission attached only needs the flag
    return permission_code is None or permission_code in permissions


@dataclass(frozen=True)
class FlagResolution:
    enabled: bool
    source: str


class FeatureFlagService:
    def __init__(self, db: AsyncSession, cache: TenantCache | None = None):
        self.db = db
        self.cache = cache

    async def is_enabled_for_tenant(self, flag_key: str, tenant: TenantSummary) -> FlagResolution:
        if self.cache is None:
            return await self._resolve(flag_key, tenant)

        async def _compute() -> dict:
            resolution = await self._resolve(flag_key, tenant)
            return {"enabled": resolution.enabled, "source": resolution.source}

        cached = await self.cache.get_or_set(
            tenant.id, f"flag:{flag_key}", _compute, ttl=settings.feature_flag_cache_ttl_seconds
        )
        return FlagResolution(enabled=bool(cached["enabled"]), source=cached["source"])

    async def is_enabled_globally(self, flag_key: str) -> FlagResolution:
        """Flag value for the all-tenants scope: killswitch, then global default."""
        flag = await self._get_flag(flag_key)
        if flag is None:
            return FlagResolution(False, SOURCE_NOT_FOUND)
        if flag.is_killswitch and not flag.default_enabled:
            return FlagResolution(False, SOURCE_KILLSWITCH)
        return FlagResolution(flag.default_enabled, SOURCE_PLATFORM_SCOPE)

    async def _resolve(self, flag_key: str, tenant: TenantSummary) -> FlagResolution:
        flag = await self._get_flag(flag_key)
        if flag is None:
            logger.debug("Feature flag %s not defined; treating as disabled", flag_key)
            return FlagResolution(False, SOURCE_NOT_FOUND)
        if flag.is_killswitch and not flag.default_enabled:
            return FlagResolution(False, SOURCE_KILLSWITCH)

        result = await self.db.execute(
            select(TenantFeatureFlag.enabled).where(
                TenantFeatureFlag.tenant_id == tenant.id,
                TenantFeatureFlag.feature_flag_id == flag.id,
            )
        )
        override = result.scalar_one_or_none()
        if override is not None:
            return FlagResolution(override, SOURCE_TENANT_OVERRIDE)

        result = await self.db.execute(
            select(ReleaseChannelFeatureFlag.enabled).where(
                ReleaseChannelFeatureFlag.release_channel == tenant.release_channel,
                ReleaseChannelFeatureFlag.feature_flag_id == flag.id,
            )
        )
        channel_default = result.scalar_one_or_none()
        if channel_default is not None:
            return FlagResolution(channel_default, SOURCE_RELEASE_CHANNEL)

        return FlagResolution(flag.default_enabled, SOURCE_GLOBAL_DEFAULT)

    async def _get_flag(self, flag_key: str) -> FeatureFlag | None:
        result = await self.db.execute(select(FeatureFlag).where(FeatureFlag.key == flag_key))
        return result.scalar_one_or_none()


@dataclass(frozen=True)
class GateDecision:
    feature_key: str
    permission: str | None
    feature_enabled: bool
    source: str
    visible: bool


class FeatureGateService:
    def __init__(self, flags: FeatureFlagService, permissions: PermissionService):
        self.flags = flags
        self.permissions = permissions

    async def evaluate(
        self, scope: EffectiveScope, feature_key: str, permission_code: str | None = None
    ) -> GateDecision:
        if not scope.is_ready:
            raise ScopeNotReadyException("Tenant scope is not resolved yet")

        if scope.tenant is not None:
            flag = await self.flags.is_enabled_for_tenant(feature_key, scope.tenant)
        else:
            flag = await self.flags.is_enabled_globally(feature_key)

        grants = await self.permissions.get_grants(scope.user_id, is_platform_admin=scope.is_platform_admin)
        visible = is_visible(
            flag.enabled,
            permission_code,
            is_platform_admin=scope.is_platform_admin,
            has_custom_role=grants.has_custom_role,
            permissions=grants.permissions,
        )
        return GateDecision(
            feature_key=feature_key,
            permission=permission_code,
            feature_enabled=flag.enabled,
            source=flag.source,
            visible=visible,
        )
