from __future__ import annotations

import uuid

from sqlalchemy import Boolean, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from src.models.enums import ReleaseChannel


class FeatureFlag(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "feature_flags"

    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    default_enabled: Mapped[bool] = mapped_column(Boolean, server_default="false", nullable=False)
    is_killswitch: Mapped[bool] = mapped_column(Boolean, server_default="false", nullable=False)


class TenantFeatureFlag(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Per-tenant override of a flag's value."""

    __tablename__ = "tenant_feature_flags"

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    feature_flag_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("feature_flags.id", ondelete="CASCADE"), nullable=False
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "feature_flag_id", name="uq_tenant_feature_flags_tenant_flag"),
    )


class ReleaseChannelFeatureFlag(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "release_channel_feature_flags"

    release_channel: Mapped[ReleaseChannel] = mapped_column(nullable=False)
    feature_flag_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("feature_flags.id", ondelete="CASCADE"), nullable=False
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)

    __table_args__ = (
        UniqueConstraint("release_channel", "feature_flag_id", name="uq_release_channel_flags_channel_flag"),
    )
