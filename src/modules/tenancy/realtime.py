"""Realtime Subscription Gate.

Change events are fanned out on Redis pub/sub, one channel per table and
tenant (``realtime:loads:tenant_id=eq.<uuid>``), which plays the role of the
server-side filter. The gate opens one subscription per table for the
current scope's tenant and re-checks every event's own ``tenant_id`` before
it reaches a callback. Reconnects are left to the Redis client.
"""

import asyncio
import contextlib
import json
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

import redis.asyncio as redis
from pydantic import BaseModel, ValidationError

from src.config import settings
from src.exceptions import ValidationException
from src.models.enums import ChangeEventType
from src.modules.tenancy.constants import SECURITY_LOGGER
from src.modules.tenancy.schemas import EffectiveScope

logger = logging.getLogger(__name__)
security_logger = logging.getLogger(SECURITY_LOGGER)


class ChangeEvent(BaseModel):
    table: str
    event_type: ChangeEventType
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None
    commit_timestamp: datetime | None = None

    @property
    def tenant_id(self) -> str | None:
        for record in (self.new, self.old):
            if record and record.get("tenant_id") is not None:
                return str(record["tenant_id"])
        return None


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]
ControlHandler = Callable[[dict[str, Any]], Awaitable[None]]


def tenant_filter(tenant_id: uuid.UUID | str) -> str:
    return f"tenant_id=eq.{tenant_id}"


def channel_name(table: str, tenant_id: uuid.UUID | str) -> str:
    return f"{settings.realtime_channel_prefix}:{table}:{tenant_filter(tenant_id)}"


def control_channel(user_id: uuid.UUID) -> str:
    return f"{settings.realtime_channel_prefix}:control:{user_id}"


@dataclass(eq=False)
class Subscription:
    channel: str
    table: str | None = None
    tenant_id: uuid.UUID | None = None
    task: asyncio.Task | None = None
    pubsub: Any = None


class ChangeStream(Protocol):
    async def subscribe(
        self, table: str, tenant_id: uuid.UUID, handler: ChangeHandler
    ) -> Subscription: ...

    async def unsubscribe(self, subscription: Subscription) -> None: ...


class RedisChangeStream:
    """ChangeStream over Redis pub/sub; one pubsub connection per subscription."""

    def __init__(self, redis_client: redis.Redis) -> None:
        self._redis = redis_client

    async def subscribe(
        self, table: str, tenant_id: uuid.UUID, handler: ChangeHandler
    ) -> Subscription:
        subscription = Subscription(channel=channel_name(table, tenant_id), table=table, tenant_id=tenant_id)
        await self._open(subscription, self._decode_change, handler)
        return subscription

    async def listen_control(self, user_id: uuid.UUID, handler: ControlHandler) -> Subscription:
        subscription = Subscription(channel=control_channel(user_id))
        await self._open(subscription, json.loads, handler)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        task = subscription.task
        if task is not None:
            if task.done():
                if not task.cancelled() and task.exception() is not None:
                    logger.warning(
                        "Realtime listener on %s had already failed: %r",
                        subscription.channel,
                        task.exception(),
                    )
            else:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if subscription.pubsub is not None:
            try:
                await subscription.pubsub.unsubscribe(subscription.channel)
            finally:
                await subscription.pubsub.aclose()
        logger.debug("Unsubscribed from %s", subscription.channel)

    async def _open(self, subscription: Subscription, decode, handler) -> None:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(subscription.channel)
        subscription.pubsub = pubsub
        subscription.task = asyncio.create_task(self._pump(subscription, decode, handler))
        logger.debug("Subscribed to %s", subscription.channel)

    async def _pump(self, subscription: Subscription, decode, handler) -> None:
        """Feed decoded messages to ``handler`` until cancelled.

        A failing handler is logged and the next message is still delivered.
        If the connection itself fails the task ends; callers watch ``task``.
        """
        try:
            async for message in subscription.pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    payload = decode(message["data"])
                except (ValueError, ValidationError) as exc:
                    security_logger.warning(
                        "Malformed realtime payload on %s dropped: %s", subscription.channel, exc
                    )
                    continue
                try:
                    await handler(payload)
                except Exception:
                    logger.exception("Realtime handler failed on %s", subscription.channel)
        except Exception:
            logger.exception("Realtime listener on %s stopped", subscription.channel)

    @staticmethod
    def _decode_change(data: str) -> ChangeEvent:
        return ChangeEvent.model_validate_json(data)


async def publish_change(redis_client: redis.Redis, event: ChangeEvent) -> int:
    """Publish a row change to its tenant channel. Returns the receiver count."""
    tenant_id = event.tenant_id
    if tenant_id is None:
        raise ValidationException(f"Change event for '{event.table}' carries no tenant_id")
    return await redis_client.publish(channel_name(event.table, tenant_id), event.model_dump_json())


class RealtimeGate:
    """Keeps a set of tenant-filtered subscriptions in step with one scope.

    ``sync`` is idempotent for an unchanged scope and table set; any other
    scope tears the old subscriptions down before new ones open, so no
    subscription outlives the scope it was opened for.
    """

    def __init__(
        self,
        stream: ChangeStream,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.stream = stream
        self._clock = clock or (lambda: datetime.now(UTC))
        self._subscriptions: list[Subscription] = []
        self._sync_key: tuple | None = None
        self._tenant_id: uuid.UUID | None = None
        self._valid_until: datetime | None = None
        self.dropped_events = 0

    @property
    def tenant_id(self) -> uuid.UUID | None:
        return self._tenant_id

    @property
    def channels(self) -> list[str]:
        return [sub.channel for sub in self._subscriptions]

    async def sync(
        self, scope: EffectiveScope, tables: Iterable[str], callback: ChangeHandler
    ) -> int:
        """Align subscriptions with ``scope``. Returns the number opened."""
        tables = tuple(sorted(set(tables)))
        key = (scope.cache_key, scope.impersonation_session_id, tables)
        if key == self._sync_key:
            return 0

        await self.close()
        self._sync_key = key
        if not scope.requires_filter:
            # Unready scopes stream nothing; "all" has no single tenant to filter on
            return 0

        self._tenant_id = scope.tenant_id
        self._valid_until = scope.valid_until
        for table in tables:
            handler = self._gated(table, scope.tenant_id, callback)
            self._subscriptions.append(await self.stream.subscribe(table, scope.tenant_id, handler))
        logger.info(
            "Realtime subscriptions opened user=%s tenant=%s tables=%s",
            scope.user_id,
            scope.tenant_id,
            ",".join(tables),
        )
        return len(tables)

    async def close(self) -> int:
        """Drop every subscription. A failing unsubscribe does not stop the rest."""
        subscriptions, self._subscriptions = self._subscriptions, []
        self._sync_key = None
        self._tenant_id = None
        self._valid_until = None
        closed = len(subscriptions)
        for subscription in subscriptions:
            try:
                await self.stream.unsubscribe(subscription)
            except Exception:
                logger.exception("Failed to close realtime subscription %s", subscription.channel)
        if closed:
            logger.info("Realtime subscriptions closed count=%d", closed)
        return closed

    async def teardown_tenant(self, tenant_id: uuid.UUID) -> int:
        if self._tenant_id is None or str(self._tenant_id) != str(tenant_id):
            return 0
        return await self.close()

    def _gated(self, table: str, expected_tenant: uuid.UUID, callback: ChangeHandler) -> ChangeHandler:
        expected = str(expected_tenant)

        async def deliver(event: ChangeEvent) -> None:
            if event.table != table or event.tenant_id != expected:
                self.dropped_events += 1
                security_logger.warning(
                    "Cross-tenant realtime event dropped table=%s event_table=%s event_tenant=%s expected_tenant=%s",
                    table,
                    event.table,
                    event.tenant_id,
                    expected,
                )
                return
            if self._valid_until is not None and self._clock() >= self._valid_until:
                logger.info("Realtime event after scope expiry dropped tenant=%s", expected)
                return
            await callback(event)

        return deliver


class SubscriptionRegistry:
    """Index of open gates per user, used to tear down on scope changes.

    Gates in this process are torn down directly; when a Redis client is
    configured a control message reaches websocket handlers on other workers.
    """

    def __init__(self, redis_client: redis.Redis | None = None) -> None:
        self._redis = redis_client
        self._gates: dict[uuid.UUID, set[RealtimeGate]] = {}

    def register(self, user_id: uuid.UUID, gate: RealtimeGate) -> None:
        self._gates.setdefault(user_id, set()).add(gate)

    def unregister(self, user_id: uuid.UUID, gate: RealtimeGate) -> None:
        gates = self._gates.get(user_id)
        if gates is None:
            return
        gates.discard(gate)
        if not gates:
            del self._gates[user_id]

    def gates_for(self, user_id: uuid.UUID) -> list[RealtimeGate]:
        return list(self._gates.get(user_id, ()))

    async def teardown_tenant(self, user_id: uuid.UUID, tenant_id: uuid.UUID) -> int:
        closed = 0
        for gate in self.gates_for(user_id):
            closed += await gate.teardown_tenant(tenant_id)
        if self._redis is not None:
            await self._redis.publish(
                control_channel(user_id),
                json.dumps({"action": "teardown", "tenant_id": str(tenant_id)}),
            )
        if closed:
            logger.info("Tore down %d subscriptions user=%s tenant=%s", closed, user_id, tenant_id)
        return closed
