"""
WMS Billing Core - Pricing Models

Tenant price list (service rates) and per-account rate adjustments.

Rate precedence:
- An active account adjustment on (service_code, class_code) wins
- Otherwise the tenant base rate applies
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, Numeric, String, Text, UniqueConstraint, Enum as SQLEnum, func
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel, AuditMixin, TenantMixin


class AdjustmentType(str, Enum):
    """How an account adjustment modifies the tenant base rate."""
    FIXED = "fixed"            # base + value
    PERCENTAGE = "percentage"  # base * (1 + value / 100)
    OVERRIDE = "override"      # value verbatim


class AuditAction(str, Enum):
    """Pricing audit actions."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ServiceRate(BaseModel, TenantMixin):
    """
    Tenant price list entry.

    Identified by (service_code, class_code). A NULL class_code is the
    flat rate for the service and the fallback for unknown classes.
    """

    __tablename__ = "service_rates"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "service_code", "class_code",
            name="uq_service_rates_tenant_service_class",
            postgresql_nulls_not_distinct=True,
        ),
    )

    service_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    class_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    service_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    rate: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=4),
        nullable=False,
        default=Decimal("0.00"),
    )
    billing_unit: Mapped[str] = mapped_column(String(20), nullable=False, default="Item")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class AccountServiceAdjustment(BaseModel, TenantMixin, AuditMixin):
    """
    Per-account rate adjustment keyed by (service_code, class_code).

    At most one adjustment exists per (account, service_code, class_code);
    a second create for the same key is a conflict, never an overwrite.
    """

    __tablename__ = "account_service_adjustments"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "account_id", "service_code", "class_code",
            name="uq_account_service_adjustments_key",
            postgresql_nulls_not_distinct=True,
        ),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    service_code: Mapped[str] = mapped_column(String(50), nullable=False)
    class_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    adjustment_type: Mapped[AdjustmentType] = mapped_column(
        SQLEnum(AdjustmentType),
        nullable=False,
    )
    # Sign-carrying for fixed/percentage
    adjustment_value: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=4),
        nullable=False,
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    @property
    def key(self) -> tuple:
        return (self.service_code, self.class_code)

    def snapshot(self) -> dict:
        """Serializable state used for pricing audit rows."""
        return {
            "service_code": self.service_code,
            "class_code": self.class_code,
            "adjustment_type": self.adjustment_type.value if self.adjustment_type else None,
            "adjustment_value": str(self.adjustment_value) if self.adjustment_value is not None else None,
            "notes": self.notes,
            "is_active": self.is_active,
        }


class AccountAdjustmentAudit(BaseModel, TenantMixin):
    """Append-only history of adjustment changes for an account."""

    __tablename__ = "account_adjustment_audit"

    adjustment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        comment="NULL once the adjustment row is deleted",
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    service_code: Mapped[str] = mapped_column(String(50), nullable=False)
    class_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    action: Mapped[AuditAction] = mapped_column(SQLEnum(AuditAction), nullable=False)
    old_values: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    new_values: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)

    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    @property
    def changed_fields(self) -> list:
        """Fields whose value differs between old and new snapshots."""
        if self.action != AuditAction.UPDATE or not self.old_values or not self.new_values:
            return []
        return [
            key for key in self.new_values
            if self.old_values.get(key) != self.new_values.get(key)
        ]
