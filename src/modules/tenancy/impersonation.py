"""Impersonation Session Manager.

State machine per session: ``active -> expired`` (time-driven) or
``active -> stopped`` (explicit). Every transition writes an audit row in the
same transaction. The admin's cached scope is dropped and realtime
subscriptions are torn down only after that transaction commits, so no
concurrent resolve can re-cache the old scope from uncommitted state. Expiry
is verified server-side on every request; any client countdown is UX only.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from src.config import settings
from src.exceptions import (
    ForbiddenException,
    ImpersonationConflictException,
    ImpersonationValidationException,
    NotFoundException,
)
from src.models.enums import AuditAction, ImpersonationStatus
from src.models.impersonation_session import ImpersonationSession
from src.models.profile import Profile
from src.models.tenant import Tenant
from src.modules.tenancy.audit import record_audit
from src.modules.tenancy.cache import TenantCache
from src.modules.tenancy.constants import (
    REASON_EXPIRED,
    REASON_NOT_OWNER,
    REASON_REVOKED,
    REASON_SESSION_NOT_FOUND,
    REASON_TENANT_NOT_FOUND,
    SECURITY_LOGGER,
)
from src.modules.tenancy.realtime import SubscriptionRegistry
from src.modules.tenancy.schemas import ImpersonationCountdown, ImpersonationSessionResponse

logger = logging.getLogger(__name__)
security_logger = logging.getLogger(SECURITY_LOGGER)


@dataclass
class ImpersonationValidation:
    valid: bool
    reason: str | None = None
    session: ImpersonationSession | None = None


def format_countdown(remaining_seconds: int) -> str:
    minutes, seconds = divmod(max(0, remaining_seconds), 60)
    return f"{minutes:02d}:{seconds:02d}"


def compute_countdown(session: ImpersonationSession, now: datetime) -> ImpersonationCountdown:
    """Remaining time for the banner. Never changes the session."""
    remaining = session.remaining_seconds(now)
    expired = not session.is_active(now)
    return ImpersonationCountdown(
        remaining_seconds=0 if expired else remaining,
        display=format_countdown(0 if expired else remaining),
        warning=not expired and remaining < settings.impersonation_warning_seconds,
        expired=expired,
    )


def to_response(session: ImpersonationSession, now: datetime) -> ImpersonationSessionResponse:
    return ImpersonationSessionResponse(
        id=session.id,
        admin_user_id=session.admin_user_id,
        tenant_id=session.tenant_id,
        reason=session.reason,
        duration_minutes=session.duration_minutes,
        created_at=session.created_at,
        expires_at=session.expires_at,
        revoked_at=session.revoked_at,
        ended_at=session.ended_at,
        status=session.status(now),
        countdown=compute_countdown(session, now),
    )


class ImpersonationService:
    def __init__(
        self,
        db: AsyncSession,
        cache: TenantCache | None = None,
        registry: SubscriptionRegistry | None = None,
    ):
        self.db = db
        self.cache = cache
        self.registry = registry
        # (admin_user_id, tenant_id to tear down) applied after the next commit
        self._pending_scope_changes: list[tuple[uuid.UUID, uuid.UUID | None]] = []

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def start(
        self,
        admin_user_id: uuid.UUID,
        tenant_id: uuid.UUID | None,
        reason: str | None,
        duration_minutes: int | None = None,
        now: datetime | None = None,
    ) -> ImpersonationSession:
        """Open a session for ``admin_user_id`` on ``tenant_id``.

        Input is validated before anything is read or written. The admin's
        profile row is locked for the rest of the transaction, so two
        concurrent starts by the same admin serialize and the second sees the
        first's session and is rejected.
        """
        now = now or datetime.now(UTC)
        reason = self._validate_request(tenant_id, reason, duration_minutes)
        duration = duration_minutes or settings.impersonation_default_duration_minutes

        profile = await self._lock_admin(admin_user_id)
        if profile is None or not profile.is_platform_admin:
            raise ForbiddenException("Only platform admins can impersonate tenants")

        tenant = await self.db.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundException(f"Tenant {tenant_id} not found")

        await self._close_expired_for_admin(admin_user_id, now)

        existing = await self.get_active(admin_user_id, now)
        if existing is not None:
            security_logger.warning(
                "Impersonation start rejected: admin=%s already impersonating tenant=%s session=%s",
                admin_user_id,
                existing.tenant_id,
                existing.id,
            )
            raise ImpersonationConflictException(
                "An impersonation session is already active. Stop it before starting another.",
                details=[{"session_id": str(existing.id), "tenant_id": str(existing.tenant_id)}],
            )

        session = ImpersonationSession(
            id=uuid.uuid4(),
            admin_user_id=admin_user_id,
            tenant_id=tenant.id,
            reason=reason,
            duration_minutes=duration,
            created_at=now,
            expires_at=now + timedelta(minutes=duration),
        )
        session.tenant = tenant
        self.db.add(session)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            await self.db.rollback()
            if "uq_impersonation_sessions_one_open_per_admin" in str(exc):
                raise ImpersonationConflictException(
                    "An impersonation session is already active. Stop it before starting another."
                ) from exc
            raise

        await record_audit(
            self.db,
            AuditAction.IMPERSONATION_START,
            actor_user_id=admin_user_id,
            tenant_id=tenant.id,
            new_value={
                "session_id": str(session.id),
                "tenant_name": tenant.name,
                "reason": reason,
                "duration_minutes": duration,
                "started_at": now.isoformat(),
                "expires_at": session.expires_at.isoformat(),
            },
        )
        self._pending_scope_changes.append((admin_user_id, None))
        await self._commit()
        logger.info(
            "Impersonation started admin=%s tenant=%s session=%s duration=%dm",
            admin_user_id,
            tenant.id,
            session.id,
            duration,
        )
        return session

    async def stop(
        self,
        admin_user_id: uuid.UUID,
        session_id: uuid.UUID,
        now: datetime | None = None,
    ) -> ImpersonationSession:
        now = now or datetime.now(UTC)
        result = await self.db.execute(
            select(ImpersonationSession)
            .where(ImpersonationSession.id == session_id)
            .with_for_update()
        )
        session = result.scalar_one_or_none()
        if session is None:
            raise NotFoundException(f"Impersonation session {session_id} not found")
        if session.admin_user_id != admin_user_id:
            security_logger.warning(
                "Impersonation stop denied: admin=%s does not own session=%s",
                admin_user_id,
                session_id,
            )
            raise ForbiddenException("Cannot stop another admin's impersonation session")
        if not session.is_active(now):
            raise NotFoundException(f"Impersonation session {session_id} is not active")

        remaining = session.remaining_seconds(now)
        elapsed = max(0, int((now - session.created_at).total_seconds()))
        session.revoked_at = now
        session.revoked_by = admin_user_id
        session.ended_at = now
        await self.db.flush()

        await record_audit(
            self.db,
            AuditAction.IMPERSONATION_STOP,
            actor_user_id=admin_user_id,
            tenant_id=session.tenant_id,
            old_value={"status": ImpersonationStatus.ACTIVE.value, "expires_at": session.expires_at.isoformat()},
            new_value={
                "session_id": str(session.id),
                "status": ImpersonationStatus.STOPPED.value,
                "stopped_at": now.isoformat(),
                "elapsed_seconds": elapsed,
                "remaining_seconds": remaining,
            },
        )
        self._pending_scope_changes.append((admin_user_id, session.tenant_id))
        await self._commit()
        logger.info(
            "Impersonation stopped admin=%s tenant=%s session=%s elapsed=%ds",
            admin_user_id,
            session.tenant_id,
            session.id,
            elapsed,
        )
        return session

    async def expire(self, now: datetime | None = None) -> dict[str, int]:
        """Close every session whose expiry has passed. Returns sweep stats."""
        now = now or datetime.now(UTC)
        result = await self.db.execute(
            select(ImpersonationSession)
            .where(
                ImpersonationSession.ended_at.is_(None),
                ImpersonationSession.revoked_at.is_(None),
                ImpersonationSession.expires_at <= now,
            )
            .with_for_update(skip_locked=True)
        )
        sessions = list(result.scalars().all())
        stats = {"checked": len(sessions), "expired": 0, "errors": 0}
        for session in sessions:
            try:
                async with self.db.begin_nested():
                    await self._mark_expired(session, now)
                stats["expired"] += 1
            except Exception:
                logger.exception("Error expiring impersonation session %s", session.id)
                stats["errors"] += 1
        await self._commit()
        return stats

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def validate(
        self,
        admin_user_id: uuid.UUID,
        session_id: uuid.UUID,
        now: datetime | None = None,
    ) -> ImpersonationValidation:
        """Server-side check that a client-held session id is still usable."""
        now = now or datetime.now(UTC)
        result = await self.db.execute(
            select(ImpersonationSession)
            .options(joinedload(ImpersonationSession.tenant))
            .where(ImpersonationSession.id == session_id)
        )
        session = result.unique().scalar_one_or_none()
        if session is None:
            return ImpersonationValidation(valid=False, reason=REASON_SESSION_NOT_FOUND)
        if session.admin_user_id != admin_user_id:
            security_logger.warning(
                "Impersonation session=%s presented by non-owner user=%s", session_id, admin_user_id
            )
            return ImpersonationValidation(valid=False, reason=REASON_NOT_OWNER)
        if session.revoked_at is not None:
            return ImpersonationValidation(valid=False, reason=REASON_REVOKED, session=session)
        if session.expires_at <= now:
            if session.ended_at is None:
                await self._mark_expired(session, now)
                await self._commit()
            return ImpersonationValidation(valid=False, reason=REASON_EXPIRED, session=session)
        if session.tenant is None:
            return ImpersonationValidation(valid=False, reason=REASON_TENANT_NOT_FOUND, session=session)
        return ImpersonationValidation(valid=True, session=session)

    async def get_active(
        self, admin_user_id: uuid.UUID, now: datetime | None = None
    ) -> ImpersonationSession | None:
        now = now or datetime.now(UTC)
        result = await self.db.execute(
            select(ImpersonationSession)
            .options(joinedload(ImpersonationSession.tenant))
            .where(
                ImpersonationSession.admin_user_id == admin_user_id,
                ImpersonationSession.ended_at.is_(None),
                ImpersonationSession.revoked_at.is_(None),
                ImpersonationSession.expires_at > now,
            )
        )
        return result.unique().scalar_one_or_none()

    def countdown(self, session: ImpersonationSession, now: datetime | None = None) -> ImpersonationCountdown:
        return compute_countdown(session, now or datetime.now(UTC))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_request(
        tenant_id: uuid.UUID | None, reason: str | None, duration_minutes: int | None
    ) -> str:
        if tenant_id is None:
            raise ImpersonationValidationException(
                "Select a tenant to impersonate", details=[{"field": "tenant_id"}]
            )
        stripped = (reason or "").strip()
        if len(stripped) < settings.impersonation_min_reason_length:
            raise ImpersonationValidationException(
                f"Reason must be at least {settings.impersonation_min_reason_length} characters",
                details=[{"field": "reason", "length": len(stripped)}],
            )
        if duration_minutes is not None and duration_minutes not in settings.impersonation_allowed_durations:
            raise ImpersonationValidationException(
                f"Duration must be one of {settings.impersonation_allowed_durations} minutes",
                details=[{"field": "duration_minutes", "value": duration_minutes}],
            )
        return stripped

    async def _lock_admin(self, admin_user_id: uuid.UUID) -> Profile | None:
        result = await self.db.execute(
            select(Profile).where(Profile.id == admin_user_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def _close_expired_for_admin(self, admin_user_id: uuid.UUID, now: datetime) -> None:
        result = await self.db.execute(
            select(ImpersonationSession).where(
                ImpersonationSession.admin_user_id == admin_user_id,
                ImpersonationSession.ended_at.is_(None),
                ImpersonationSession.expires_at <= now,
            )
        )
        for session in result.scalars().all():
            await self._mark_expired(session, now)

    async def _mark_expired(self, session: ImpersonationSession, now: datetime) -> None:
        session.ended_at = now
        await self.db.flush()
        if session.revoked_at is None:
            await record_audit(
                self.db,
                AuditAction.IMPERSONATION_EXPIRE,
                actor_user_id=session.admin_user_id,
                tenant_id=session.tenant_id,
                old_value={"status": ImpersonationStatus.ACTIVE.value},
                new_value={
                    "session_id": str(session.id),
                    "status": ImpersonationStatus.EXPIRED.value,
                    "expired_at": session.expires_at.isoformat(),
                    "duration_minutes": session.duration_minutes,
                },
            )
        self._pending_scope_changes.append((session.admin_user_id, session.tenant_id))
        logger.info(
            "Impersonation expired admin=%s tenant=%s session=%s",
            session.admin_user_id,
            session.tenant_id,
            session.id,
        )

    async def _commit(self) -> None:
        """Commit the transition, then drop cached scopes and tear down streams.

        A resolve running before the commit still sees the old session row; the
        cache is cleared and the teardown message sent only once the new state
        is visible to every connection.
        """
        await self.db.commit()
        pending, self._pending_scope_changes = self._pending_scope_changes, []
        for admin_user_id, tenant_id in pending:
            if self.cache is not None:
                await self.cache.invalidate_scope(admin_user_id)
            if tenant_id is not None and self.registry is not None:
                await self.registry.teardown_tenant(admin_user_id, tenant_id)
