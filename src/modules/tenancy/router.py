"""Tenancy API router: scope, impersonation, gates, scoped data and realtime."""

import asyncio
import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, Response, WebSocket, WebSocketDisconnect
from slowapi import Limiter
from slowapi.util import get_remote_address

from src.database.engine import async_session
from src.database.session import get_redis
from src.exceptions import NotFoundException, UnauthorizedException, ValidationException
from src.modules.tenancy.auth import AuthenticatedUser, authenticate_token, get_current_user
from src.modules.tenancy.cache import TenantCache
from src.modules.tenancy.constants import REALTIME_DEFAULT_TABLES
from src.modules.tenancy.dependencies import (
    get_effective_scope,
    get_feature_gate_service,
    get_functions_client,
    get_impersonation_service,
    get_permission_service,
    get_preference_store,
    get_scoped_query_builder,
    get_subscription_registry,
    get_tenant_resolver,
    require_role,
    require_scope,
)
from src.modules.tenancy.feature_gate import FeatureGateService
from src.modules.tenancy.functions import FunctionsClient
from src.modules.tenancy.impersonation import ImpersonationService, to_response
from src.modules.tenancy.permissions import PermissionService
from src.modules.tenancy.preferences import PreferenceStore
from src.modules.tenancy.realtime import ChangeEvent, RealtimeGate, RedisChangeStream
from src.modules.tenancy.resolver import TenantResolver
from src.modules.tenancy.schemas import (
    EffectiveScope,
    FeatureVisibilityResponse,
    ImpersonationSessionResponse,
    ImpersonationValidationResponse,
    PermissionsResponse,
    ScopedRowsResponse,
    ScopeResponse,
    ShowAllTenantsRequest,
    StartImpersonationRequest,
    SwitchTenantRequest,
    TenantResponse,
)
from src.modules.tenancy.scoped_query import TENANT_OWNED_TABLES, ScopedQueryBuilder

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenancy", tags=["tenancy"])
limiter = Limiter(key_func=get_remote_address)


# ---------------------------------------------------------------------------
# Scope endpoints
# ---------------------------------------------------------------------------


async def _scope_response(
    scope: EffectiveScope,
    impersonation: ImpersonationService,
    preferences: PreferenceStore,
) -> ScopeResponse:
    now = datetime.now(UTC)
    session = None
    if scope.is_impersonating and scope.user_id is not None:
        active = await impersonation.get_active(scope.user_id, now)
        if active is not None:
            session = to_response(active, now)
    banner_dismissed = False
    if scope.user_id is not None:
        banner_dismissed = (await preferences.get(scope.user_id)).impersonation_banner_dismissed
    return ScopeResponse(scope=scope, impersonation=session, banner_dismissed=banner_dismissed)


@router.get("/scope", response_model=ScopeResponse)
async def get_scope(
    scope: EffectiveScope = Depends(get_effective_scope),
    impersonation: ImpersonationService = Depends(get_impersonation_service),
    preferences: PreferenceStore = Depends(get_preference_store),
):
    """Return the caller's effective scope, with the countdown when impersonating."""
    return await _scope_response(scope, impersonation, preferences)


@router.post("/scope/switch", response_model=ScopeResponse)
async def switch_tenant(
    body: SwitchTenantRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    resolver: TenantResolver = Depends(get_tenant_resolver),
    impersonation: ImpersonationService = Depends(get_impersonation_service),
    preferences: PreferenceStore = Depends(get_preference_store),
):
    scope = await resolver.switch_tenant(user, body.tenant_id)
    return await _scope_response(scope, impersonation, preferences)


@router.post("/scope/show-all", response_model=ScopeResponse)
async def set_show_all_tenants(
    body: ShowAllTenantsRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    resolver: TenantResolver = Depends(get_tenant_resolver),
    impersonation: ImpersonationService = Depends(get_impersonation_service),
    preferences: PreferenceStore = Depends(get_preference_store),
):
    """Toggle the platform-admin "show all tenants" view. Audited."""
    scope = await resolver.set_show_all(user, body.enabled)
    return await _scope_response(scope, impersonation, preferences)


@router.post("/logout", status_code=204)
async def logout(
    user: AuthenticatedUser = Depends(get_current_user),
    resolver: TenantResolver = Depends(get_tenant_resolver),
):
    """Clear persisted tenancy preferences so nothing leaks into the next session."""
    await resolver.logout(user)
    return Response(status_code=204)


@router.get("/tenants", response_model=list[TenantResponse])
async def list_tenants(
    user: AuthenticatedUser = Depends(get_current_user),
    resolver: TenantResolver = Depends(get_tenant_resolver),
):
    """Tenants the caller can switch to (every tenant for platform admins)."""
    return await resolver.list_tenants(user)


# ---------------------------------------------------------------------------
# Impersonation endpoints
# ---------------------------------------------------------------------------


@router.post("/impersonation", response_model=ImpersonationSessionResponse, status_code=201)
@limiter.limit("10/minute")
async def start_impersonation(
    request: Request,
    body: StartImpersonationRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    impersonation: ImpersonationService = Depends(get_impersonation_service),
    preferences: PreferenceStore = Depends(get_preference_store),
):
    now = datetime.now(UTC)
    session = await impersonation.start(
        user.id,
        body.tenant_id,
        body.reason,
        duration_minutes=body.duration_minutes,
        now=now,
    )
    await preferences.set_banner_dismissed(user.id, False)
    return to_response(session, now)


@router.get("/impersonation/current", response_model=ImpersonationSessionResponse | None)
async def get_current_impersonation(
    user: AuthenticatedUser = Depends(get_current_user),
    impersonation: ImpersonationService = Depends(get_impersonation_service),
):
    now = datetime.now(UTC)
    session = await impersonation.get_active(user.id, now)
    if session is None:
        return None
    return to_response(session, now)


@router.post("/impersonation/banner/dismiss", status_code=204)
async def dismiss_impersonation_banner(
    user: AuthenticatedUser = Depends(get_current_user),
    resolver: TenantResolver = Depends(get_tenant_resolver),
):
    await resolver.dismiss_banner(user)
    return Response(status_code=204)


@router.get("/impersonation/{session_id}", response_model=ImpersonationValidationResponse)
async def validate_impersonation(
    session_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    impersonation: ImpersonationService = Depends(get_impersonation_service),
):
    """Server-side validity check for a client-held impersonation session."""
    now = datetime.now(UTC)
    validation = await impersonation.validate(user.id, session_id, now)
    session = None
    if validation.session is not None and validation.session.admin_user_id == user.id:
        session = to_response(validation.session, now)
    return ImpersonationValidationResponse(valid=validation.valid, reason=validation.reason, session=session)


@router.delete("/impersonation/{session_id}", response_model=ImpersonationSessionResponse)
async def stop_impersonation(
    session_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    impersonation: ImpersonationService = Depends(get_impersonation_service),
):
    now = datetime.now(UTC)
    session = await impersonation.stop(user.id, session_id, now)
    return to_response(session, now)


# ---------------------------------------------------------------------------
# Gate endpoints
# ---------------------------------------------------------------------------


@router.get("/features/{feature_key}", response_model=FeatureVisibilityResponse)
async def get_feature_visibility(
    feature_key: str,
    permission: str | None = Query(None),
    scope: EffectiveScope = Depends(require_scope),
    gate: FeatureGateService = Depends(get_feature_gate_service),
):
    decision = await gate.evaluate(scope, feature_key, permission)
    return FeatureVisibilityResponse(
        feature_key=decision.feature_key,
        permission=decision.permission,
        feature_enabled=decision.feature_enabled,
        source=decision.source,
        visible=decision.visible,
    )


@router.get("/permissions", response_model=PermissionsResponse)
async def get_permissions(
    scope: EffectiveScope = Depends(require_scope),
    permissions: PermissionService = Depends(get_permission_service),
):
    grants = await permissions.get_grants(scope.user_id, is_platform_admin=scope.is_platform_admin)
    return PermissionsResponse(
        permissions=sorted(grants.permissions),
        has_custom_role=grants.has_custom_role,
        is_platform_admin=scope.is_platform_admin,
    )


# ---------------------------------------------------------------------------
# Scoped data endpoints
# ---------------------------------------------------------------------------


@router.get("/data/{table}", response_model=ScopedRowsResponse)
async def list_rows(
    table: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    order_by: str | None = Query(None),
    descending: bool = Query(False),
    builder: ScopedQueryBuilder = Depends(get_scoped_query_builder),
):
    scoped = builder.table(table)
    rows = await scoped.select(order_by=order_by, descending=descending, limit=limit, offset=offset)
    total = await scoped.count()
    return ScopedRowsResponse(table=table, scope=builder.scope.mode, items=rows, count=total)


@router.get("/data/{table}/{row_id}")
async def get_row(
    table: str,
    row_id: uuid.UUID,
    builder: ScopedQueryBuilder = Depends(get_scoped_query_builder),
) -> dict[str, Any]:
    row = await builder.table(table).get(row_id)
    if row is None:
        raise NotFoundException(f"{table} row {row_id} not found")
    return row


@router.delete("/data/{table}/{row_id}", status_code=204)
async def delete_row(
    table: str,
    row_id: uuid.UUID,
    builder: ScopedQueryBuilder = Depends(get_scoped_query_builder),
):
    deleted = await builder.table(table).delete(row_id)
    if not deleted:
        raise NotFoundException(f"{table} row {row_id} not found")
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Serverless functions
# ---------------------------------------------------------------------------


@router.post("/functions/{function_name}")
async def invoke_function(
    function_name: str,
    payload: dict[str, Any] | None = Body(None),
    scope: EffectiveScope = Depends(require_role),
    client: FunctionsClient = Depends(get_functions_client),
) -> dict[str, Any]:
    return await client.invoke(function_name, scope, payload or {})


# ---------------------------------------------------------------------------
# Realtime
# ---------------------------------------------------------------------------


def _parse_tables(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return REALTIME_DEFAULT_TABLES
    tables = tuple(name.strip() for name in raw.split(",") if name.strip())
    unknown = [name for name in tables if name not in TENANT_OWNED_TABLES]
    if unknown:
        raise ValidationException(f"Unknown tenant-owned tables: {', '.join(unknown)}")
    return tables


async def _resolve_for_socket(user: AuthenticatedUser) -> EffectiveScope:
    """Resolve scope in a short transaction; the socket holds no DB session."""
    client = get_redis()
    cache = TenantCache(client)
    async with async_session() as session:
        impersonation = ImpersonationService(session, cache=cache, registry=get_subscription_registry())
        resolver = TenantResolver(session, cache, PreferenceStore(client), impersonation)
        scope = await resolver.resolve(user)
        await session.commit()
    return scope


@router.websocket("/realtime")
async def realtime_stream(
    websocket: WebSocket,
    token: str = Query(...),
    tables: str | None = Query(None),
):
    """Stream tenant-gated change events for the caller's resolved scope.

    The scope is re-resolved whenever a control message arrives for the user
    (impersonation stop or expiry), tearing down the old subscriptions first.
    """
    try:
        user = authenticate_token(token)
        table_list = _parse_tables(tables)
    except UnauthorizedException:
        await websocket.close(code=4401)
        return
    except ValidationException:
        await websocket.close(code=4422)
        return

    await websocket.accept()
    stream = RedisChangeStream(get_redis())
    gate = RealtimeGate(stream)
    registry = get_subscription_registry()
    registry.register(user.id, gate)
    queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()

    async def deliver(event: ChangeEvent) -> None:
        await queue.put(event)

    async def resync(_message: dict | None = None) -> None:
        scope = await _resolve_for_socket(user)
        await gate.sync(scope, table_list, deliver)
        await websocket.send_json({"type": "scope", "scope": scope.model_dump(mode="json")})

    async def forward() -> None:
        while True:
            event = await queue.get()
            await websocket.send_json({"type": "change", "event": event.model_dump(mode="json")})

    async def drain() -> None:
        while True:
            await websocket.receive_text()

    control = None
    tasks: list[asyncio.Task] = []
    try:
        await resync()
        control = await stream.listen_control(user.id, resync)
        tasks = [asyncio.create_task(forward()), asyncio.create_task(drain())]
        watched = tasks + ([control.task] if control.task is not None else [])
        done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
        if control.task is not None and control.task in done:
            # A socket never outlives its control listener
            logger.warning("Realtime control listener stopped user=%s; closing stream", user.id)
            await websocket.close(code=1011)
        for task in done:
            if task is control.task or task.cancelled():
                continue
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
    except WebSocketDisconnect:
        pass
    finally:
        for task in tasks:
            task.cancel()
        if control is not None:
            try:
                await stream.unsubscribe(control)
            except Exception:
                logger.exception("Failed to close realtime control listener user=%s", user.id)
        try:
            await gate.close()
        finally:
            registry.unregister(user.id, gate)
        logger.info("Realtime stream closed user=%s", user.id)
