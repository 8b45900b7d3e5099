"""
WMS Billing Core - Routers Package

FastAPI route handlers.

Routers:
- pricing: Account rate adjustments and rate resolution
- promo_codes: Promo assignments and discount lookups
- billing_events: Charge recording
- invoices: Invoice drafts and workflow
- labor: Labor cost reporting
"""

from app.routers import (
    pricing,
    promo_codes,
    billing_events,
    invoices,
    labor,
)

__all__ = [
    "pricing",
    "promo_codes",
    "billing_events",
    "invoices",
    "labor",
]
