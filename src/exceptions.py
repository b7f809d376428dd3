"""Domain exception hierarchy for structured error responses."""

from __future__ import annotations


class AppException(Exception):
    """Base exception for all domain errors.

    Subclasses set ``code`` and ``status_code`` at the class level; callers
    provide ``message`` and an optional ``details`` list.
    """

    code: str = "APP_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: list[dict] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []


class NotFoundException(AppException):
    code = "NOT_FOUND"
    status_code = 404


class ConflictException(AppException):
    code = "CONFLICT"
    status_code = 409


class ForbiddenException(AppException):
    code = "FORBIDDEN"
    status_code = 403


class UnauthorizedException(AppException):
    code = "UNAUTHORIZED"
    status_code = 401


class ValidationException(AppException):
    code = "VALIDATION_ERROR"
    status_code = 422


class BusinessRuleException(AppException):
    code = "BUSINESS_RULE_VIOLATION"
    status_code = 422


class RateLimitException(AppException):
    code = "RATE_LIMITED"
    status_code = 429


class ExternalServiceException(AppException):
    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502


# ---------------------------------------------------------------------------
# Tenancy
# ---------------------------------------------------------------------------


class ScopeNotReadyException(AppException):
    """The effective tenant scope is not resolved; no data call may run."""

    code = "SCOPE_NOT_READY"
    status_code = 409


class NoTenantAccessException(ForbiddenException):
    code = "NO_TENANT_ACCESS"


class NoRoleException(ForbiddenException):
    """Authenticated user without a custom role who is not a platform admin."""

    code = "NO_ROLE"


class ImpersonationValidationException(ValidationException):
    code = "IMPERSONATION_INVALID"


class ImpersonationConflictException(ConflictException):
    code = "IMPERSONATION_CONFLICT"
