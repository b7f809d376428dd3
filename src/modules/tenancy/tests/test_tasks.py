"""Unit tests for the impersonation expiry task."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.modules.tenancy.impersonation import ImpersonationService
from src.modules.tenancy.tasks import _expire_impersonation_sessions_async


@pytest.mark.asyncio
async def test_expire_task_sweeps_and_closes_redis():
    session = AsyncMock()
    session_factory = MagicMock()
    session_factory.return_value.__aenter__.return_value = session
    redis_client = AsyncMock()
    stats = {"checked": 3, "expired": 3, "errors": 0}

    with (
        patch("src.modules.tenancy.tasks.async_session", session_factory),
        patch("src.modules.tenancy.tasks.redis.from_url", return_value=redis_client),
        patch.object(ImpersonationService, "expire", AsyncMock(return_value=stats)) as expire,
    ):
        result = await _expire_impersonation_sessions_async()

    assert result == stats
    expire.assert_awaited_once()
    redis_client.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_expire_task_closes_redis_on_failure():
    session_factory = MagicMock()
    session_factory.return_value.__aenter__.return_value = AsyncMock()
    redis_client = AsyncMock()

    with (
        patch("src.modules.tenancy.tasks.async_session", session_factory),
        patch("src.modules.tenancy.tasks.redis.from_url", return_value=redis_client),
        patch.object(ImpersonationService, "expire", AsyncMock(side_effect=RuntimeError("db down"))),
    ):
        with pytest.raises(RuntimeError):
            await _expire_impersonation_sessions_async()

    redis_client.aclose.assert_awaited_once()
