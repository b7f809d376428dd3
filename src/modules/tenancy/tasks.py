"""Celery tasks for impersonation lifecycle automation."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

import redis.asyncio as redis

from celery_app import celery
from src.config import settings
from src.database.engine import async_session
from src.modules.tenancy.cache import TenantCache
from src.modules.tenancy.impersonation import ImpersonationService
from src.modules.tenancy.realtime import SubscriptionRegistry

logger = logging.getLogger(__name__)


async def _expire_impersonation_sessions_async() -> dict:
    """Close sessions past expires_at and audit each expiry."""
    now = datetime.now(UTC)
    client = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        async with async_session() as session:
            svc = ImpersonationService(
                session,
                cache=TenantCache(client),
                registry=SubscriptionRegistry(client),
            )
            stats = await svc.expire(now)
    finally:
        await client.aclose()
    return stats


@celery.task(name="src.modules.tenancy.tasks.expire_impersonation_sessions")
def expire_impersonation_sessions():
    """Expire impersonation sessions whose time window has passed."""
    stats = asyncio.run(_expire_impersonation_sessions_async())
    logger.info("expire_impersonation_sessions complete: %s", stats)
    return stats
