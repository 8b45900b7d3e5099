"""
WMS Billing Core - Pricing Router

API endpoints for account rate adjustments and rate resolution.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.dependencies import get_current_user_id, get_tenant_id
from app.models.pricing import AdjustmentType
from app.services.adjustment_service import AccountPricingService, AdjustmentEntry


router = APIRouter()


# ===========================================
# REQUEST/RESPONSE SCHEMAS
# ===========================================

class AdjustmentCreateItem(BaseModel):
    """One adjustment in a batch create."""
    service_code: str = Field(..., min_length=1, max_length=50)
    class_code: Optional[str] = Field(None, max_length=20)
    adjustment_type: AdjustmentType
    adjustment_value: Decimal
    notes: Optional[str] = None


class AdjustmentBatchCreateRequest(BaseModel):
    adjustments: List[AdjustmentCreateItem] = Field(..., min_length=1)


class AdjustmentUpdateRequest(BaseModel):
    """Type and value are replaced as given; the value is not rescaled."""
    adjustment_type: AdjustmentType
    adjustment_value: Decimal
    notes: Optional[str] = None


class BulkDeleteRequest(BaseModel):
    adjustment_ids: List[UUID] = Field(..., min_length=1)


class AdjustmentResponse(BaseModel):
    id: UUID
    account_id: UUID
    service_code: str
    class_code: Optional[str] = None
    adjustment_type: AdjustmentType
    adjustment_value: Decimal
    notes: Optional[str] = None
    is_active: bool
    base_rate: Optional[Decimal] = None
    effective_rate: Optional[Decimal] = None

    class Config:
        from_attributes = True


class SkippedAdjustmentResponse(BaseModel):
    service_code: str
    class_code: Optional[str] = None
    reason: str


class AdjustmentBatchResponse(BaseModel):
    created: List[AdjustmentResponse]
    skipped: List[SkippedAdjustmentResponse]
    created_count: int
    skipped_count: int


class BulkDeleteResponse(BaseModel):
    deleted_count: int


class PricingHistoryEntry(BaseModel):
    id: UUID
    adjustment_id: Optional[UUID] = None
    service_code: str
    class_code: Optional[str] = None
    action: str
    old_values: Optional[dict] = None
    new_values: Optional[dict] = None
    changed_fields: List[str] = []
    changed_by_id: Optional[UUID] = None
    changed_at: datetime

    class Config:
        from_attributes = True


class ResolvedRateResponse(BaseModel):
    service_code: str
    class_code: Optional[str] = None
    rate: Decimal
    source: str
    base_rate: Decimal
    adjustment_type: Optional[AdjustmentType] = None
    adjustment_id: Optional[UUID] = None


# ===========================================
# ENDPOINTS
# ===========================================

@router.get(
    "/accounts/{account_id}/adjustments",
    response_model=List[AdjustmentResponse],
    summary="List account adjustments",
)
async def list_adjustments(
    account_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_async_session),
):
    """List an account's adjustments with base and effective rates."""
    service = AccountPricingService(db)
    views = await service.list_adjustments(tenant_id, account_id)
    return [
        AdjustmentResponse.model_validate(view.adjustment).model_copy(
            update={"base_rate": view.base_rate, "effective_rate": view.effective_rate}
        )
        for view in views
    ]


@router.post(
    "/accounts/{account_id}/adjustments",
    response_model=AdjustmentBatchResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create account adjustments",
)
async def create_adjustments(
    account_id: UUID,
    request: AdjustmentBatchCreateRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    user_id: Optional[UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Batch-create adjustments.

    Keys that already have an adjustment are skipped and reported;
    the rest are created.
    """
    service = AccountPricingService(db)
    entries = [
        AdjustmentEntry(
            service_code=item.service_code,
            class_code=item.class_code,
            adjustment_type=item.adjustment_type,
            adjustment_value=item.adjustment_value,
            notes=item.notes,
        )
        for item in request.adjustments
    ]
    result = await service.create_adjustments(tenant_id, account_id, entries, user_id)

    return AdjustmentBatchResponse(
        created=[AdjustmentResponse.model_validate(adj) for adj in result.created],
        skipped=[
            SkippedAdjustmentResponse(
                service_code=skip.entry.service_code,
                class_code=skip.entry.class_code,
                reason=skip.reason,
            )
            for skip in result.skipped
        ],
        created_count=result.created_count,
        skipped_count=result.skipped_count,
    )


@router.patch(
    "/adjustments/{adjustment_id}",
    response_model=AdjustmentResponse,
    summary="Update adjustment",
)
async def update_adjustment(
    adjustment_id: UUID,
    request: AdjustmentUpdateRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    user_id: Optional[UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    service = AccountPricingService(db)
    adjustment = await service.update_adjustment(
        tenant_id,
        adjustment_id,
        request.adjustment_type,
        request.adjustment_value,
        request.notes,
        user_id,
    )
    return AdjustmentResponse.model_validate(adjustment)


@router.delete(
    "/adjustments/{adjustment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete adjustment",
)
async def delete_adjustment(
    adjustment_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    user_id: Optional[UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    """Delete an adjustment; the account reverts to the tenant rate."""
    service = AccountPricingService(db)
    await service.delete_adjustment(tenant_id, adjustment_id, user_id)


@router.post(
    "/accounts/{account_id}/adjustments/bulk-delete",
    response_model=BulkDeleteResponse,
    summary="Bulk delete adjustments",
)
async def bulk_delete_adjustments(
    account_id: UUID,
    request: BulkDeleteRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    user_id: Optional[UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    service = AccountPricingService(db)
    deleted = await service.delete_adjustments(tenant_id, account_id, request.adjustment_ids, user_id)
    return BulkDeleteResponse(deleted_count=deleted)


@router.get(
    "/accounts/{account_id}/adjustments/history",
    response_model=List[PricingHistoryEntry],
    summary="Pricing change history",
)
async def get_pricing_history(
    account_id: UUID,
    limit: int = Query(100, ge=1, le=100),
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_async_session),
):
    service = AccountPricingService(db)
    history = await service.get_pricing_history(tenant_id, account_id, limit)
    return [
        PricingHistoryEntry(
            id=entry.id,
            adjustment_id=entry.adjustment_id,
            service_code=entry.service_code,
            class_code=entry.class_code,
            action=entry.action.value,
            old_values=entry.old_values,
            new_values=entry.new_values,
            changed_fields=entry.changed_fields,
            changed_by_id=entry.changed_by_id,
            changed_at=entry.changed_at,
        )
        for entry in history
    ]


@router.get(
    "/accounts/{account_id}/resolve",
    response_model=ResolvedRateResponse,
    summary="Resolve effective rate",
)
async def resolve_rate(
    account_id: UUID,
    service_code: str = Query(..., min_length=1),
    class_code: Optional[str] = Query(None),
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_async_session),
):
    """Effective rate for an account; 404 when no rate is configured."""
    service = AccountPricingService(db)
    resolved = await service.resolve_rate(tenant_id, account_id, service_code, class_code)
    return ResolvedRateResponse(
        service_code=resolved.service_code,
        class_code=resolved.class_code,
        rate=resolved.rate,
        source=resolved.source.value,
        base_rate=resolved.base_rate,
        adjustment_type=resolved.adjustment_type,
        adjustment_id=resolved.adjustment_id,
    )
