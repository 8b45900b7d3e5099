"""
WMS Billing Core - Billing Events Router

API endpoints for pricing and recording charges.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.dependencies import get_current_user_id, get_tenant_id
from app.models.billing import BillingEventStatus, BillingEventType
from app.services.billing_event_service import BillingEventService, ChargeRequest


router = APIRouter()


# ===========================================
# REQUEST/RESPONSE SCHEMAS
# ===========================================

class ChargeCreateRequest(BaseModel):
    """Schema for one charge."""
    account_id: UUID
    charge_type: str = Field(..., min_length=1, max_length=100)
    quantity: Decimal = Field(Decimal("1"), gt=0)
    class_code: Optional[str] = Field(None, max_length=20)
    sidemark_id: Optional[UUID] = None
    item_id: Optional[UUID] = None
    description: Optional[str] = Field(None, max_length=500)
    event_type: BillingEventType = BillingEventType.MANUAL
    occurred_at: Optional[datetime] = None
    rate_override: Optional[Decimal] = Field(None, ge=0)

    def to_charge_request(self) -> ChargeRequest:
        return ChargeRequest(**self.model_dump())


class ChargeBatchRequest(BaseModel):
    charges: List[ChargeCreateRequest] = Field(..., min_length=1)


class BillingEventResponse(BaseModel):
    id: UUID
    account_id: UUID
    sidemark_id: Optional[UUID] = None
    item_id: Optional[UUID] = None
    class_code: Optional[str] = None
    event_type: BillingEventType
    charge_type: str
    description: Optional[str] = None
    quantity: Decimal
    unit_rate: Decimal
    total_amount: Decimal
    status: BillingEventStatus
    occurred_at: datetime
    has_rate_error: bool
    rate_error_message: Optional[str] = None
    invoice_id: Optional[UUID] = None

    class Config:
        from_attributes = True


class ChargeResultResponse(BaseModel):
    index: int
    success: bool
    event: Optional[BillingEventResponse] = None
    error: Optional[str] = None


class ChargePreviewResponse(BaseModel):
    unit_rate: Decimal
    total_amount: Decimal
    rate_source: Optional[str] = None
    has_rate_error: bool
    rate_error_message: Optional[str] = None


# ===========================================
# ENDPOINTS
# ===========================================

@router.post(
    "/charges",
    response_model=BillingEventResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create charge",
)
async def create_charge(
    request: ChargeCreateRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    user_id: Optional[UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Record a priced charge.

    A missing rate does not fail the request; the event is recorded with
    has_rate_error set and a zero rate.
    """
    service = BillingEventService(db)
    return await service.create_charge(tenant_id, request.to_charge_request(), user_id)


@router.post(
    "/charges/batch",
    response_model=List[ChargeResultResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Create charges",
)
async def create_charges(
    request: ChargeBatchRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    user_id: Optional[UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    """Results are returned in request order."""
    service = BillingEventService(db)
    results = await service.create_charges(
        tenant_id, [charge.to_charge_request() for charge in request.charges], user_id
    )
    return [
        ChargeResultResponse(
            index=result.index,
            success=result.success,
            event=BillingEventResponse.model_validate(result.event) if result.event else None,
            error=result.error,
        )
        for result in results
    ]


@router.post(
    "/charges/preview",
    response_model=ChargePreviewResponse,
    summary="Preview charge",
)
async def preview_charge(
    request: ChargeCreateRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_async_session),
):
    service = BillingEventService(db)
    quote = await service.preview_charge(tenant_id, request.to_charge_request())
    return ChargePreviewResponse(
        unit_rate=quote.unit_rate,
        total_amount=quote.total_amount,
        rate_source=quote.rate_source.value if quote.rate_source else None,
        has_rate_error=quote.has_rate_error,
        rate_error_message=quote.rate_error_message,
    )
