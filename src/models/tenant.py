from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from src.models.enums import ReleaseChannel, TenantStatus

if TYPE_CHECKING:
    from src.models.tenant_user import TenantUser


class Tenant(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """An isolated customer account. Suspended rather than deleted."""

    __tablename__ = "tenants"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[TenantStatus] = mapped_column(server_default="ACTIVE", nullable=False)
    release_channel: Mapped[ReleaseChannel] = mapped_column(server_default="GENERAL", nullable=False)
    is_paused: Mapped[bool] = mapped_column(Boolean, server_default="false", nullable=False)
    pause_reason: Mapped[str | None] = mapped_column(Text)
    rate_limit_per_minute: Mapped[int] = mapped_column(Integer, server_default="60", nullable=False)

    # Relationships
    members: Mapped[list[TenantUser]] = relationship("TenantUser", back_populates="tenant")

    __table_args__ = (
        Index("ix_tenants_slug", "slug", unique=True),
    )
