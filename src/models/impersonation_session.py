from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Text, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database.base import Base, UUIDPrimaryKeyMixin
from src.models.enums import ImpersonationStatus

if TYPE_CHECKING:
    from src.models.tenant import Tenant


class ImpersonationSession(UUIDPrimaryKeyMixin, Base):
    """A platform admin's time-bounded assumption of a tenant's scope.

    Status is derived from the timestamps rather than stored, so a session
    whose ``expires_at`` has passed reads as expired even before the sweep
    job sets ``ended_at``.
    """

    __tablename__ = "admin_impersonation_sessions"

    admin_user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    revoked_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("profiles.id", ondelete="SET NULL")
    )
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    tenant: Mapped[Tenant] = relationship("Tenant")

    __table_args__ = (
        Index("ix_impersonation_sessions_admin", "admin_user_id"),
        Index("ix_impersonation_sessions_expires_at", "expires_at"),
        Index(
            "uq_impersonation_sessions_one_open_per_admin",
            "admin_user_id",
            unique=True,
            postgresql_where=text("ended_at IS NULL"),
        ),
    )

    def status(self, now: datetime) -> ImpersonationStatus:
        if self.revoked_at is not None:
            return ImpersonationStatus.STOPPED
        if self.expires_at <= now:
            return ImpersonationStatus.EXPIRED
        return ImpersonationStatus.ACTIVE

    def is_active(self, now: datetime) -> bool:
        return self.status(now) == ImpersonationStatus.ACTIVE

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, int((self.expires_at - now).total_seconds()))
