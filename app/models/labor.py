"""
WMS Billing Core - Labor Models

Employee pay profiles and completed-task durations used for labor costing.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, Numeric, String, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel, TenantMixin


class PayType(str, Enum):
    HOURLY = "hourly"
    SALARY = "salary"


class EmployeePay(BaseModel, TenantMixin):
    """
    Employee pay profile.

    pay_rate is an hourly wage for hourly employees and an annual salary
    for salaried ones.
    """

    __tablename__ = "employee_pay"
    __table_args__ = (
        UniqueConstraint("tenant_id", "employee_id", name="uq_employee_pay_tenant_employee"),
    )

    employee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    employee_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    pay_type: Mapped[PayType] = mapped_column(
        SQLEnum(PayType),
        default=PayType.HOURLY,
        nullable=False,
    )
    pay_rate: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )
    salary_hourly_equivalent: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=True,
    )
    overtime_eligible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    role: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    primary_warehouse_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)


class TaskTimeEntry(BaseModel, TenantMixin):
    """One completed task with its worked duration."""

    __tablename__ = "task_time_entries"

    employee_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
    )
    warehouse_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
    )
    task_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    duration_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )
