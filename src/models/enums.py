import enum


class TenantStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    TRIAL = "TRIAL"
    CHURNED = "CHURNED"


class ReleaseChannel(str, enum.Enum):
    INTERNAL = "INTERNAL"
    PILOT = "PILOT"
    GENERAL = "GENERAL"


class TenantUserRole(str, enum.Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class ImpersonationStatus(str, enum.Enum):
    """Derived from timestamps, never stored."""

    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    STOPPED = "STOPPED"


class ScopeMode(str, enum.Enum):
    TENANT = "TENANT"
    ALL = "ALL"
    NOT_READY = "NOT_READY"
    NO_ACCESS = "NO_ACCESS"


class AuditAction(str, enum.Enum):
    IMPERSONATION_START = "impersonation.start"
    IMPERSONATION_STOP = "impersonation.stop"
    IMPERSONATION_EXPIRE = "impersonation.expire"
    SHOW_ALL_ENABLED = "scope.show_all_enabled"
    SHOW_ALL_DISABLED = "scope.show_all_disabled"


class ChangeEventType(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class LoadStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    BOOKED = "BOOKED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class VehicleStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    IN_SHOP = "IN_SHOP"
    INACTIVE = "INACTIVE"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"
    VOID = "VOID"
