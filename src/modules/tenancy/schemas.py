"""Pydantic schemas for effective scope, impersonation and gate responses."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from src.models.enums import ImpersonationStatus, ReleaseChannel, ScopeMode, TenantStatus


class TenantSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: uuid.UUID
    name: str
    slug: str
    status: TenantStatus
    release_channel: ReleaseChannel


class EffectiveScope(BaseModel):
    """The tenant (or "all") applied to every data operation of a session.

    Passed explicitly to every service that touches tenant-owned data; there
    is no process-wide current tenant.
    """

    model_config = ConfigDict(frozen=True)

    mode: ScopeMode
    user_id: uuid.UUID | None = None
    tenant_id: uuid.UUID | None = None
    tenant: TenantSummary | None = None
    is_platform_admin: bool = False
    is_impersonating: bool = False
    impersonation_session_id: uuid.UUID | None = None
    # Impersonated scopes stop being valid at this instant
    valid_until: datetime | None = None

    @classmethod
    def not_ready(cls, user_id: uuid.UUID | None = None) -> "EffectiveScope":
        return cls(mode=ScopeMode.NOT_READY, user_id=user_id)

    @property
    def is_ready(self) -> bool:
        return self.mode in (ScopeMode.TENANT, ScopeMode.ALL)

    @property
    def requires_filter(self) -> bool:
        return self.mode == ScopeMode.TENANT

    @property
    def cache_key(self) -> str:
        return f"{self.mode.value}:{self.tenant_id or '*'}"


class ImpersonationCountdown(BaseModel):
    remaining_seconds: int
    display: str
    warning: bool
    expired: bool


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class SwitchTenantRequest(BaseModel):
    tenant_id: uuid.UUID


class ShowAllTenantsRequest(BaseModel):
    enabled: bool


class StartImpersonationRequest(BaseModel):
    # Optional so "no tenant selected" surfaces as an impersonation validation error
    tenant_id: uuid.UUID | None = None
    reason: str = ""
    duration_minutes: int | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class TenantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    slug: str
    status: TenantStatus
    release_channel: ReleaseChannel
    is_paused: bool = False


class ImpersonationSessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    admin_user_id: uuid.UUID
    tenant_id: uuid.UUID
    reason: str
    duration_minutes: int
    created_at: datetime
    expires_at: datetime
    revoked_at: datetime | None = None
    ended_at: datetime | None = None
    status: ImpersonationStatus
    countdown: ImpersonationCountdown


class ImpersonationValidationResponse(BaseModel):
    valid: bool
    reason: str | None = None
    session: ImpersonationSessionResponse | None = None


class ScopeResponse(BaseModel):
    scope: EffectiveScope
    impersonation: ImpersonationSessionResponse | None = None
    banner_dismissed: bool = False


class FeatureVisibilityResponse(BaseModel):
    feature_key: str
    permission: str | None = None
    feature_enabled: bool
    source: str
    visible: bool


class PermissionsResponse(BaseModel):
    permissions: list[str]
    has_custom_role: bool
    is_platform_admin: bool


class ScopedRowsResponse(BaseModel):
    table: str
    scope: ScopeMode
    items: list[dict[str, Any]]
    count: int
