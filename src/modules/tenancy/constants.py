"""Tenancy module constants for RLS, caching and impersonation."""

# PostgreSQL session variable names (used with set_config)
SESSION_VAR_TENANT_ID = "app.current_tenant_id"
SESSION_VAR_USER_ID = "app.current_user_id"
SESSION_VAR_IMPERSONATION_ID = "app.impersonation_session_id"
SESSION_VAR_ADMIN_BYPASS = "app.admin_bypass"

# Request headers carrying client-side hints (never trusted as scope)
HEADER_TENANT_ID = "X-Tenant-Id"
HEADER_IMPERSONATION_SESSION = "X-Impersonation-Session"

# Logger for security-relevant anomalies, routed separately from app logs
SECURITY_LOGGER = "src.modules.tenancy.security"

# Redis key prefixes
CACHE_PREFIX = "tenant"
SCOPE_CACHE_PREFIX = "scope"
PREFERENCES_PREFIX = "prefs"

DEFAULT_TENANT_SLUG = "default"

# Validation failure reasons returned by ImpersonationService.validate
REASON_SESSION_NOT_FOUND = "session_not_found"
REASON_NOT_OWNER = "not_owner"
REASON_REVOKED = "revoked"
REASON_EXPIRED = "expired"
REASON_TENANT_NOT_FOUND = "tenant_not_found"

# Tables streamed over the realtime websocket when the client does not choose
REALTIME_DEFAULT_TABLES = ("loads", "vehicles")

# Routes excluded from tenant hint extraction
EXCLUDED_ROUTES = [
    "/health",
    "/api/docs",
    "/api/openapi.json",
    "/api/redoc",
]
