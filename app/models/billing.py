"""
WMS Billing Core - Billing Event Model

A billing event is a single priced charge against an account. The unit rate
is captured when the event is created and is never recomputed afterwards.

Status workflow:
- unbilled -> billed (only through invoice creation)
- flagged events are held back from invoicing
- billed -> void when the owning invoice is voided
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Numeric, String, Text, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel, AuditMixin, TenantMixin


class BillingEventStatus(str, Enum):
    """Billing event status workflow."""
    UNBILLED = "unbilled"
    FLAGGED = "flagged"
    BILLED = "billed"
    VOID = "void"


class BillingEventType(str, Enum):
    """Operational source of a billing event."""
    FLAG_CHANGE = "flag_change"
    SERVICE_COMPLETION = "service_completion"
    ADDON = "addon"
    STORAGE = "storage"
    MANUAL = "manual"
    CREDIT = "credit"


class BillingEvent(BaseModel, TenantMixin, AuditMixin):
    """
    Billing event model.

    total_amount is quantity * unit_rate at creation time. Events with
    has_rate_error carry unit_rate 0 until corrected by hand.
    """

    __tablename__ = "billing_events"

    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    sidemark_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
    )
    item_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    class_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    event_type: Mapped[BillingEventType] = mapped_column(
        SQLEnum(BillingEventType),
        default=BillingEventType.MANUAL,
        nullable=False,
    )
    # Service code, or free text for manual charges
    charge_type: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    quantity: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        default=Decimal("1.00"),
    )
    unit_rate: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=4),
        nullable=False,
        default=Decimal("0.00"),
    )
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )

    status: Mapped[BillingEventStatus] = mapped_column(
        SQLEnum(BillingEventStatus),
        default=BillingEventStatus.UNBILLED,
        nullable=False,
        index=True,
    )
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    has_rate_error: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rate_error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("invoices.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    invoiced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSONB, nullable=True)

    @property
    def service_code(self) -> str:
        return self.charge_type

    def __repr__(self) -> str:
        return f"<BillingEvent(id={self.id}, charge_type={self.charge_type}, status={self.status})>"
