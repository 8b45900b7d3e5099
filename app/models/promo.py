"""
WMS Billing Core - Promo Code Models

Tenant promo code catalog and account assignments.
"""

import uuid
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import Boolean, Date, Integer, Numeric, String, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel, AuditMixin, TenantMixin


class PromoDiscountType(str, Enum):
    """Promo discount types."""
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class ServiceScope(str, Enum):
    """Which services a promo applies to."""
    ALL = "all"
    SELECTED = "selected"


class ExpirationType(str, Enum):
    NONE = "none"
    DATE = "date"


class UsageLimitType(str, Enum):
    UNLIMITED = "unlimited"
    LIMITED = "limited"


class PromoCode(BaseModel, TenantMixin, AuditMixin):
    """
    Tenant-level promo code.

    Eligible for an event iff active, not expired, under its usage limit
    and in scope for the event's service code.
    """

    __tablename__ = "promo_codes"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_promo_codes_tenant_code"),
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False)

    discount_type: Mapped[PromoDiscountType] = mapped_column(
        SQLEnum(PromoDiscountType),
        nullable=False,
    )
    discount_value: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
    )

    service_scope: Mapped[ServiceScope] = mapped_column(
        SQLEnum(ServiceScope),
        default=ServiceScope.ALL,
        nullable=False,
    )
    selected_services: Mapped[Optional[List[str]]] = mapped_column(JSONB, nullable=True)

    expiration_type: Mapped[ExpirationType] = mapped_column(
        SQLEnum(ExpirationType),
        default=ExpirationType.NONE,
        nullable=False,
    )
    expiration_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    usage_limit_type: Mapped[UsageLimitType] = mapped_column(
        SQLEnum(UsageLimitType),
        default=UsageLimitType.UNLIMITED,
        nullable=False,
    )
    usage_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class AccountPromoCode(BaseModel, TenantMixin, AuditMixin):
    """Assignment of a promo code to an account."""

    __tablename__ = "account_promo_codes"
    __table_args__ = (
        UniqueConstraint("account_id", "promo_code_id", name="uq_account_promo_codes_pair"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    promo_code_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
