from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

from sqlalchemy import Date, ForeignKey, Index, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, TenantScopedMixin, TimestampMixin, UUIDPrimaryKeyMixin
from src.models.enums import InvoiceStatus


class Invoice(UUIDPrimaryKeyMixin, TenantScopedMixin, TimestampMixin, Base):
    __tablename__ = "invoices"

    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id", ondelete="SET NULL")
    )
    status: Mapped[InvoiceStatus] = mapped_column(server_default="DRAFT", nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), server_default="0", nullable=False)
    issued_on: Mapped[date | None] = mapped_column(Date)
    due_on: Mapped[date | None] = mapped_column(Date)

    __table_args__ = (
        Index("ix_invoices_tenant_invoice_number", "tenant_id", "invoice_number", unique=True),
        Index("ix_invoices_tenant_status", "tenant_id", "status"),
    )
