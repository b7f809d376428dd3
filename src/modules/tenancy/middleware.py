"""FastAPI middleware that collects client tenant hints from request headers."""

import logging
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.modules.tenancy.constants import (
    EXCLUDED_ROUTES,
    HEADER_IMPERSONATION_SESSION,
    HEADER_TENANT_ID,
)

logger = logging.getLogger(__name__)


def _parse_hint(request: Request, header: str) -> uuid.UUID | None:
    raw = request.headers.get(header)
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        logger.warning("Ignoring malformed %s header on %s", header, request.url.path)
        return None


class TenantContextMiddleware(BaseHTTPMiddleware):
    """Stores ``X-Tenant-Id`` and ``X-Impersonation-Session`` as request hints.

    The hints land in ``request.state.tenant_hint`` and
    ``request.state.impersonation_hint``. They never set the scope on their
    own: the resolver dependency verifies both against the database.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path

        if any(path.startswith(route) for route in EXCLUDED_ROUTES):
            return await call_next(request)

        request.state.tenant_hint = _parse_hint(request, HEADER_TENANT_ID)
        request.state.impersonation_hint = _parse_hint(request, HEADER_IMPERSONATION_SESSION)
        return await call_next(request)
