# Import all models so SQLAlchemy metadata is populated for Alembic autogenerate
from src.models.carrier import Carrier
from src.models.custom_role import CustomRole, Permission, RolePermission, UserCustomRole
from src.models.customer import Customer
from src.models.enums import (
    AuditAction,
    ChangeEventType,
    ImpersonationStatus,
    InvoiceStatus,
    LoadStatus,
    ReleaseChannel,
    ScopeMode,
    TenantStatus,
    TenantUserRole,
    VehicleStatus,
)
from src.models.feature_flag import FeatureFlag, ReleaseChannelFeatureFlag, TenantFeatureFlag
from src.models.impersonation_session import ImpersonationSession
from src.models.invoice import Invoice
from src.models.load import Load
from src.models.profile import Profile
from src.models.tenant import Tenant
from src.models.tenant_audit_log import TenantAuditLog
from src.models.tenant_user import TenantUser
from src.models.vehicle import Vehicle

__all__ = [
    "AuditAction",
    "Carrier",
    "ChangeEventType",
    "CustomRole",
    "Customer",
    "FeatureFlag",
    "ImpersonationSession",
    "ImpersonationStatus",
    "Invoice",
    "InvoiceStatus",
    "Load",
    "LoadStatus",
    "Permission",
    "Profile",
    "ReleaseChannel",
    "ReleaseChannelFeatureFlag",
    "RolePermission",
    "ScopeMode",
    "Tenant",
    "TenantAuditLog",
    "TenantFeatureFlag",
    "TenantStatus",
    "TenantUser",
    "TenantUserRole",
    "UserCustomRole",
    "Vehicle",
]
