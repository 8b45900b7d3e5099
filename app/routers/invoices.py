"""
WMS Billing Core - Invoices Router

API endpoints for invoice draft creation and the invoice workflow.

Workflow:
- draft -> sent -> paid
- draft | sent -> void (events are written off with reversal entries)
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.dependencies import get_current_user_id, get_tenant_id
from app.models.invoice import InvoiceStatus, InvoiceType
from app.services.invoice_assembler import InvoiceGrouping, LineSortOrder, sort_lines
from app.services.invoice_service import InvoiceService


router = APIRouter()


# ===========================================
# REQUEST/RESPONSE SCHEMAS
# ===========================================

class DraftCreateRequest(BaseModel):
    """Schema for creating drafts over a billing period."""
    account_id: Optional[UUID] = Field(None, description="Omit to bill every account")
    period_start: date
    period_end: date
    grouping: InvoiceGrouping = InvoiceGrouping.BY_ACCOUNT
    sidemark_id: Optional[UUID] = None
    include_earlier_unbilled: bool = False
    invoice_type: InvoiceType = InvoiceType.MANUAL
    notes: Optional[str] = None
    line_sort: LineSortOrder = LineSortOrder.DATE


class DraftFromEventsRequest(BaseModel):
    """Schema for creating drafts from selected events."""
    event_ids: List[UUID] = Field(..., min_length=1)
    grouping: InvoiceGrouping = InvoiceGrouping.BY_ACCOUNT_SIDEMARK
    invoice_type: InvoiceType = InvoiceType.MANUAL
    notes: Optional[str] = None
    line_sort: LineSortOrder = LineSortOrder.DATE


class VoidRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class NotesUpdateRequest(BaseModel):
    notes: Optional[str] = None


class InvoiceLineResponse(BaseModel):
    id: UUID
    billing_event_id: UUID
    service_code: str
    description: Optional[str] = None
    sidemark_id: Optional[UUID] = None
    item_id: Optional[UUID] = None
    occurred_at: datetime
    quantity: Decimal
    unit_rate: Decimal
    total_amount: Decimal
    discount_amount: Decimal
    promo_code_id: Optional[UUID] = None
    has_rate_error: bool
    sort_order: int

    class Config:
        from_attributes = True


class InvoiceResponse(BaseModel):
    id: UUID
    invoice_number: str
    account_id: Optional[UUID] = None
    sidemark_id: Optional[UUID] = None
    invoice_type: InvoiceType
    status: InvoiceStatus
    invoice_date: date
    due_date: date
    period_start: date
    period_end: date
    subtotal: Decimal
    discount_total: Decimal
    total: Decimal
    rate_error_count: int
    batch_id: Optional[UUID] = None
    notes: Optional[str] = None
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    void_reason: Optional[str] = None
    lines: List[InvoiceLineResponse] = []

    class Config:
        from_attributes = True


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceResponse]
    total: int
    page: int
    page_size: int


# ===========================================
# ENDPOINTS
# ===========================================

@router.post(
    "/drafts",
    response_model=List[InvoiceResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Create invoice drafts for a period",
)
async def create_drafts(
    request: DraftCreateRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    user_id: Optional[UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Group unbilled events into drafts.

    Returns an empty list when nothing is left to bill.
    """
    service = InvoiceService(db)
    return await service.create_draft(
        tenant_id,
        request.account_id,
        request.period_start,
        request.period_end,
        grouping=request.grouping,
        sidemark_filter=request.sidemark_id,
        include_earlier_unbilled=request.include_earlier_unbilled,
        invoice_type=request.invoice_type,
        notes=request.notes,
        user_id=user_id,
        line_sort=request.line_sort,
    )


@router.post(
    "/drafts/from-events",
    response_model=List[InvoiceResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Create invoice drafts from selected events",
)
async def create_drafts_from_events(
    request: DraftFromEventsRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    user_id: Optional[UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    service = InvoiceService(db)
    return await service.create_from_events(
        tenant_id,
        request.event_ids,
        grouping=request.grouping,
        invoice_type=request.invoice_type,
        notes=request.notes,
        user_id=user_id,
        line_sort=request.line_sort,
    )


@router.get(
    "",
    response_model=InvoiceListResponse,
    summary="List invoices",
)
async def list_invoices(
    account_id: Optional[UUID] = Query(None, description="Filter by account"),
    invoice_status: Optional[InvoiceStatus] = Query(None, alias="status", description="Filter by status"),
    batch_id: Optional[UUID] = Query(None, description="Filter by creation batch"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_async_session),
):
    service = InvoiceService(db)
    invoices, total = await service.list_invoices(
        tenant_id,
        account_id=account_id,
        status=invoice_status,
        batch_id=batch_id,
        page=page,
        page_size=page_size,
    )
    return InvoiceListResponse(
        invoices=[InvoiceResponse.model_validate(inv) for inv in invoices],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Get invoice",
)
async def get_invoice(
    invoice_id: UUID,
    line_sort: Optional[LineSortOrder] = Query(None, description="Reorder lines; stored order when omitted"),
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_async_session),
):
    service = InvoiceService(db)
    invoice = await service.get_invoice(tenant_id, invoice_id)
    response = InvoiceResponse.model_validate(invoice)
    if line_sort is not None:
        response.lines = sort_lines(response.lines, line_sort)
    return response


@router.post(
    "/{invoice_id}/send",
    response_model=InvoiceResponse,
    summary="Mark invoice as sent",
)
async def send_invoice(
    invoice_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    user_id: Optional[UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    service = InvoiceService(db)
    return await service.mark_sent(tenant_id, invoice_id, user_id)


@router.post(
    "/{invoice_id}/pay",
    response_model=InvoiceResponse,
    summary="Mark invoice as paid",
)
async def pay_invoice(
    invoice_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    user_id: Optional[UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    service = InvoiceService(db)
    return await service.mark_paid(tenant_id, invoice_id, user_id)


@router.post(
    "/{invoice_id}/void",
    response_model=InvoiceResponse,
    summary="Void invoice",
)
async def void_invoice(
    invoice_id: UUID,
    request: VoidRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    user_id: Optional[UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    """Void a draft or sent invoice. Its events are not returned to unbilled."""
    service = InvoiceService(db)
    return await service.void_invoice(tenant_id, invoice_id, request.reason, user_id)


@router.patch(
    "/{invoice_id}/notes",
    response_model=InvoiceResponse,
    summary="Update invoice notes",
)
async def update_notes(
    invoice_id: UUID,
    request: NotesUpdateRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    user_id: Optional[UUID] = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_session),
):
    service = InvoiceService(db)
    return await service.update_notes(tenant_id, invoice_id, request.notes, user_id)
