"""
WMS Billing Core - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from app.models.base import BaseModel, TimestampMixin, TenantMixin, AuditMixin
from app.models.pricing import (
    AdjustmentType,
    AuditAction,
    ServiceRate,
    AccountServiceAdjustment,
    AccountAdjustmentAudit,
)
from app.models.promo import (
    PromoDiscountType,
    ServiceScope,
    ExpirationType,
    UsageLimitType,
    PromoCode,
    AccountPromoCode,
)
from app.models.billing import BillingEvent, BillingEventStatus, BillingEventType
from app.models.invoice import Invoice, InvoiceLine, InvoiceStatus, InvoiceType
from app.models.labor import EmployeePay, PayType, TaskTimeEntry

__all__ = [
    # Base
    "BaseModel",
    "TimestampMixin",
    "TenantMixin",
    "AuditMixin",
    # Pricing
    "AdjustmentType",
    "AuditAction",
    "ServiceRate",
    "AccountServiceAdjustment",
    "AccountAdjustmentAudit",
    # Promo
    "PromoDiscountType",
    "ServiceScope",
    "ExpirationType",
    "UsageLimitType",
    "PromoCode",
    "AccountPromoCode",
    # Billing
    "BillingEvent",
    "BillingEventStatus",
    "BillingEventType",
    # Invoicing
    "Invoice",
    "InvoiceLine",
    "InvoiceStatus",
    "InvoiceType",
    # Labor
    "EmployeePay",
    "PayType",
    "TaskTimeEntry",
]
