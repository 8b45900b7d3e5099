"""
WMS Billing Core - Promo Codes Router

API endpoints for account promo assignments and discount lookups.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.dependencies import get_current_user_id, get_tenant_id
from app.models.promo import PromoDiscountType, ServiceScope
from app.services.promo_code_service import PromoCodeService


router = APIRouter()


# ===========================================
# REQUEST/RESPONSE SCHEMAS
# ===========================================

class PromoCodeResponse(BaseModel):
    id: UUID
    code: str
    discount_type: PromoDiscountType
    discount_value: Decimal
    service_scope: ServiceScope
    selected_services: Optional[List[str]] = None
    expiration_date: Optional[date] = None
    usage_limit: Optional[int] = None
    usage_count: int
    is_active: bool

    class Config:
        from_attributes = True


class AssignmentResponse(BaseModel):
    id: UUID
    account_id: UUID
    promo_code_id: UUID

    class Config:
        from_attributes = True


class BestDiscountResponse(BaseModel):
    """Empty promo fields mean no eligible code."""
    billing_event_id: UUID
    promo_code_id: Optional[UUID] = None
    code: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    discount_amount: Decimal = Decimal("0.00")


# ===========================================
# ENDPOINTS
# ===========================================

@router.get(
    "/accounts/{account_id}/assignments",
    response_model=List[PromoCodeResponse],
    summary="List account promo codes",
)
async def list_account_promo_codes(
    account_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_async_session),
):
    service = PromoCodeService(db)
    return await service.list_account_promo_codes(tenant_id, account_id)


@router.post(
    "/accounts/{account_id}/assignments/{promo_code_id}",
    response_model=AssignmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Assign promo code to account",
)
async def assign_promo_code(
    account_id: UUID,
    promo_code_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    user_id: Optional[UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    service = PromoCodeService(db)
    return await service.assign_to_account(tenant_id, account_id, promo_code_id, user_id)


@router.delete(
    "/accounts/{account_id}/assignments/{promo_code_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove promo code from account",
)
async def remove_promo_code(
    account_id: UUID,
    promo_code_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_async_session),
):
    """Removal only affects invoice lines created afterwards."""
    service = PromoCodeService(db)
    await service.remove_from_account(tenant_id, account_id, promo_code_id)


@router.get(
    "/billing-events/{event_id}/best-discount",
    response_model=BestDiscountResponse,
    summary="Best promo discount for an event",
)
async def get_best_discount(
    event_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_async_session),
):
    service = PromoCodeService(db)
    discount = await service.best_discount_for_event(tenant_id, event_id)
    if discount is None:
        return BestDiscountResponse(billing_event_id=event_id)

    return BestDiscountResponse(
        billing_event_id=event_id,
        promo_code_id=discount.promo_code_id,
        code=discount.code,
        discount_type=discount.discount_type.value,
        discount_value=discount.discount_value,
        discount_amount=discount.discount_amount,
    )
