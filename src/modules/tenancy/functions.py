"""HTTP client for tenant-aware serverless functions.

Functions are opaque request/response actions. The client stamps the
resolved tenant into every request body; callers never choose it.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from src.config import settings
from src.exceptions import ExternalServiceException, ScopeNotReadyException, ValidationException
from src.modules.tenancy.schemas import EffectiveScope

logger = logging.getLogger(__name__)

TENANT_FUNCTIONS = frozenset(
    {
        "tenant-counts",
        "tenant-gmail-status",
        "test-tenant-integration",
        "sync-vehicles-samsara",
        "check-broker-credit",
        "geocode",
    }
)


class FunctionsClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url or settings.functions_base_url
        self.api_key = api_key if api_key is not None else settings.functions_api_key
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=settings.functions_timeout_seconds,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def invoke(
        self,
        name: str,
        scope: EffectiveScope,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if name not in TENANT_FUNCTIONS:
            raise ValidationException(f"Unknown function '{name}'")
        if not scope.is_ready:
            raise ScopeNotReadyException("Tenant scope is not resolved yet")

        body = dict(payload or {})
        body["tenant_id"] = str(scope.tenant_id) if scope.tenant_id else None
        if scope.impersonation_session_id is not None:
            body["impersonation_session_id"] = str(scope.impersonation_session_id)

        client = await self._get_client()
        try:
            response = await client.post(f"/{name}", json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Function %s returned %d for tenant=%s",
                name,
                exc.response.status_code,
                scope.tenant_id,
            )
            raise ExternalServiceException(
                f"Function '{name}' failed",
                details=[{"status_code": exc.response.status_code}],
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("Function %s unreachable: %s", name, exc)
            raise ExternalServiceException(f"Function '{name}' is unavailable") from exc

        if not response.content:
            return {}
        data = response.json()
        return data if isinstance(data, dict) else {"data": data}

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
