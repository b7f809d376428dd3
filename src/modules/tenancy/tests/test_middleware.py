"""Unit tests for TenantContextMiddleware hint extraction."""

import uuid

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from src.modules.tenancy.middleware import TenantContextMiddleware

app = FastAPI()
app.add_middleware(TenantContextMiddleware)


@app.get("/echo")
async def echo(request: Request) -> dict:
    return {
        "tenant_hint": str(request.state.tenant_hint) if request.state.tenant_hint else None,
        "impersonation_hint": (
            str(request.state.impersonation_hint) if request.state.impersonation_hint else None
        ),
    }


@app.get("/health")
async def health(request: Request) -> dict:
    return {"has_hint": hasattr(request.state, "tenant_hint")}


client = TestClient(app)


def test_hint_headers_are_parsed():
    tenant_id, session_id = uuid.uuid4(), uuid.uuid4()

    resp = client.get(
        "/echo",
        headers={"X-Tenant-Id": str(tenant_id), "X-Impersonation-Session": str(session_id)},
    )

    assert resp.json() == {"tenant_hint": str(tenant_id), "impersonation_hint": str(session_id)}


def test_missing_headers_leave_hints_empty():
    resp = client.get("/echo")
    assert resp.json() == {"tenant_hint": None, "impersonation_hint": None}


def test_malformed_header_is_ignored():
    resp = client.get("/echo", headers={"X-Tenant-Id": "acme"})
    assert resp.json()["tenant_hint"] is None


def test_excluded_routes_skip_extraction():
    resp = client.get("/health", headers={"X-Tenant-Id": str(uuid.uuid4())})
    assert resp.json() == {"has_hint": False}
