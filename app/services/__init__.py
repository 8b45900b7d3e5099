"""
WMS Billing Core - Services Package

Pure billing/costing engines and the DB-bound services around them.
"""

from app.services.rate_resolver import RateResolver, ResolvedRate, RateSource, apply_adjustment
from app.services.adjustment_service import AdjustmentSet, AdjustmentEntry, AccountPricingService
from app.services.promo_engine import PromoEngine, PromoDiscount
from app.services.promo_code_service import PromoCodeService
from app.services.overtime_allocator import OvertimeAllocator, OvertimeAllocation, LaborSettings
from app.services.cost_allocator import (
    CostAllocator,
    GroupKeyExtractor,
    WarehouseRoleKey,
    EmployeeKey,
    TaskTypeKey,
)
from app.services.labor_cost_service import LaborCostService
from app.services.invoice_assembler import InvoiceAssembler, InvoiceDraft, InvoiceGrouping
from app.services.invoice_service import InvoiceService
from app.services.billing_event_service import BillingEventService, ChargeRequest, price_charge

__all__ = [
    "RateResolver",
    "ResolvedRate",
    "RateSource",
    "apply_adjustment",
    "AdjustmentSet",
    "AdjustmentEntry",
    "AccountPricingService",
    "PromoEngine",
    "PromoDiscount",
    "PromoCodeService",
    "OvertimeAllocator",
    "OvertimeAllocation",
    "LaborSettings",
    "CostAllocator",
    "GroupKeyExtractor",
    "WarehouseRoleKey",
    "EmployeeKey",
    "TaskTypeKey",
    "LaborCostService",
    "InvoiceAssembler",
    "InvoiceDraft",
    "InvoiceGrouping",
    "InvoiceService",
    "BillingEventService",
    "ChargeRequest",
    "price_charge",
]
