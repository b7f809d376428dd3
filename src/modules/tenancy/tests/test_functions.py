"""Unit tests for the tenant-aware serverless function client."""

import json
import uuid

import httpx
import pytest

from src.exceptions import ExternalServiceException, ScopeNotReadyException, ValidationException
from src.models.enums import ScopeMode
from src.modules.tenancy.functions import FunctionsClient
from src.modules.tenancy.schemas import EffectiveScope


def _client(handler) -> FunctionsClient:
    return FunctionsClient(
        base_url="http://functions.test",
        api_key="service-key",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_invoke_stamps_resolved_tenant():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        captured["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"loads": 12})

    scope = EffectiveScope(mode=ScopeMode.TENANT, user_id=uuid.uuid4(), tenant_id=uuid.uuid4())
    client = _client(handler)

    data = await client.invoke("tenant-counts", scope, {"tenant_id": str(uuid.uuid4()), "window": "7d"})
    await client.close()

    assert data == {"loads": 12}
    assert captured["path"] == "/tenant-counts"
    assert captured["body"] == {"tenant_id": str(scope.tenant_id), "window": "7d"}
    assert captured["auth"] == "Bearer service-key"


@pytest.mark.asyncio
async def test_invoke_forwards_impersonation_session():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={})

    scope = EffectiveScope(
        mode=ScopeMode.TENANT,
        user_id=uuid.uuid4(),
        tenant_id=uuid.uuid4(),
        is_platform_admin=True,
        is_impersonating=True,
        impersonation_session_id=uuid.uuid4(),
    )

    await _client(handler).invoke("geocode", scope, {"address": "Dallas, TX"})

    assert captured["body"]["impersonation_session_id"] == str(scope.impersonation_session_id)


@pytest.mark.asyncio
async def test_unknown_function_is_rejected():
    scope = EffectiveScope(mode=ScopeMode.TENANT, user_id=uuid.uuid4(), tenant_id=uuid.uuid4())
    with pytest.raises(ValidationException):
        await _client(lambda request: httpx.Response(200)).invoke("drop-tables", scope)


@pytest.mark.asyncio
async def test_unready_scope_is_rejected():
    with pytest.raises(ScopeNotReadyException):
        await _client(lambda request: httpx.Response(200)).invoke("geocode", EffectiveScope.not_ready())


@pytest.mark.asyncio
async def test_upstream_error_maps_to_external_service_error():
    scope = EffectiveScope(mode=ScopeMode.TENANT, user_id=uuid.uuid4(), tenant_id=uuid.uuid4())

    with pytest.raises(ExternalServiceException) as exc_info:
        await _client(lambda request: httpx.Response(500)).invoke("check-broker-credit", scope)

    assert exc_info.value.details == [{"status_code": 500}]
