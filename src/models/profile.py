from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.database.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from src.models.tenant_user import TenantUser


class Profile(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Platform identity for an authenticated user (id matches the JWT subject)."""

    __tablename__ = "profiles"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(255))
    is_platform_admin: Mapped[bool] = mapped_column(Boolean, server_default="false", nullable=False)

    # Relationships
    tenant_memberships: Mapped[list[TenantUser]] = relationship(
        "TenantUser", back_populates="user", cascade="all, delete-orphan"
    )
