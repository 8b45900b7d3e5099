"""
WMS Billing Core - Invoice Service

Creates invoice drafts from unbilled billing events and drives the
invoice workflow (draft -> sent -> paid, draft | sent -> void).

Claiming: the selected events are moved to billed with a single conditional
UPDATE (status still unbilled) before drafts are assembled. Events lost to
a concurrent run are left out, so a draft whose events were all taken is
never built. All drafts of one call commit together.
"""

import logging
import uuid
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import settings
from app.models.billing import BillingEvent, BillingEventStatus
from app.models.invoice import Invoice, InvoiceLine, InvoiceStatus, InvoiceType
from app.models.promo import PromoCode
from app.services.invoice_assembler import (
    InvoiceAssembler,
    InvoiceDraft,
    InvoiceGrouping,
    LineSortOrder,
    validate_grouping,
)
from app.services.promo_code_service import PromoCodeService
from app.services.promo_engine import PromoEngine
from app.services.rate_resolver import quantize_money
from app.utils.error_handling import (
    InvalidDateRangeException,
    InvalidInvoiceTransitionException,
    InvoiceNotFoundException,
)

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[InvoiceStatus, Set[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: {InvoiceStatus.SENT, InvoiceStatus.VOID},
    InvoiceStatus.SENT: {InvoiceStatus.PAID, InvoiceStatus.VOID},
    InvoiceStatus.PAID: set(),
    InvoiceStatus.VOID: set(),
}

# Retries when a concurrent run takes the same invoice number
INVOICE_NUMBER_ATTEMPTS = 3


def check_transition(current: InvoiceStatus, target: InvoiceStatus) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidInvoiceTransitionException(current.value, target.value)


class InvoiceService:
    """Service for invoice operations."""

    def __init__(self, db: AsyncSession, net_terms_days: Optional[int] = None):
        self.db = db
        self.net_terms_days = net_terms_days if net_terms_days is not None else settings.default_net_terms_days

    # ===========================================
    # INVOICE NUMBER GENERATION
    # ===========================================

    async def generate_invoice_number(self, tenant_id: uuid.UUID, invoice_date: date) -> str:
        """
        Generate the next invoice number for the tenant.

        Format: INV-YYYYMM-NNNN (e.g., INV-202601-0001)
        """
        prefix = f"{settings.invoice_number_prefix}-{invoice_date.year}{invoice_date.month:02d}"

        result = await self.db.execute(
            select(func.count(Invoice.id))
            .where(Invoice.tenant_id == tenant_id)
            .where(Invoice.invoice_number.like(f"{prefix}%"))
        )
        count = result.scalar() or 0
        return f"{prefix}-{count + 1:04d}"

    # ===========================================
    # LOADERS
    # ===========================================

    async def _load_unbilled_events(
        self,
        tenant_id: uuid.UUID,
        account_id: Optional[uuid.UUID],
        period_start: date,
        period_end: date,
        sidemark_filter: Optional[uuid.UUID] = None,
        include_earlier_unbilled: bool = False,
    ) -> List[BillingEvent]:
        period_end_exclusive = datetime.combine(period_end + timedelta(days=1), time.min, tzinfo=timezone.utc)

        query = (
            select(BillingEvent)
            .where(BillingEvent.tenant_id == tenant_id)
            .where(BillingEvent.status == BillingEventStatus.UNBILLED)
            .where(BillingEvent.occurred_at < period_end_exclusive)
        )
        if not include_earlier_unbilled:
            query = query.where(
                BillingEvent.occurred_at >= datetime.combine(period_start, time.min, tzinfo=timezone.utc)
            )
        if account_id is not None:
            query = query.where(BillingEvent.account_id == account_id)
        if sidemark_filter is not None:
            query = query.where(BillingEvent.sidemark_id == sidemark_filter)

        result = await self.db.execute(query.order_by(BillingEvent.occurred_at))
        return list(result.scalars().all())

    async def _load_events_by_id(self, tenant_id: uuid.UUID, event_ids: List[uuid.UUID]) -> List[BillingEvent]:
        result = await self.db.execute(
            select(BillingEvent)
            .where(BillingEvent.tenant_id == tenant_id)
            .where(BillingEvent.id.in_(event_ids))
            .where(BillingEvent.status == BillingEventStatus.UNBILLED)
            .order_by(BillingEvent.occurred_at)
        )
        return list(result.scalars().all())

    async def _load_promo_engine(self, tenant_id: uuid.UUID, events: List[BillingEvent]) -> PromoEngine:
        return await PromoCodeService(self.db).get_engine(tenant_id, {event.account_id for event in events})

    # ===========================================
    # DRAFT CREATION
    # ===========================================

    async def create_draft(
        self,
        tenant_id: uuid.UUID,
        account_id: Optional[uuid.UUID],
        period_start: date,
        period_end: date,
        grouping: InvoiceGrouping = InvoiceGrouping.BY_ACCOUNT,
        sidemark_filter: Optional[uuid.UUID] = None,
        include_earlier_unbilled: bool = False,
        invoice_type: InvoiceType = InvoiceType.MANUAL,
        notes: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
        line_sort: LineSortOrder = LineSortOrder.DATE,
    ) -> List[Invoice]:
        """
        Create invoice drafts for unbilled events in a period.

        Re-running over the same period creates nothing for events that
        are already billed. An empty selection returns [].
        """
        if period_start > period_end:
            raise InvalidDateRangeException(period_start, period_end)

        events = await self._load_unbilled_events(
            tenant_id, account_id, period_start, period_end, sidemark_filter, include_earlier_unbilled
        )
        # Structural errors abort before the promo lookups and any claim
        validate_grouping(events, InvoiceGrouping(grouping))
        if not events:
            logger.info(f"No unbilled events for account {account_id} in {period_start}..{period_end}")
            return []

        def build(assembler: InvoiceAssembler, claimed: List[BillingEvent]) -> List[InvoiceDraft]:
            return assembler.create_draft(
                claimed,
                account_id,
                period_start,
                period_end,
                grouping=grouping,
                sidemark_filter=sidemark_filter,
                include_earlier_unbilled=include_earlier_unbilled,
                invoice_type=invoice_type,
            )

        return await self._claim_and_persist(tenant_id, events, build, notes, user_id, line_sort)

    async def create_from_events(
        self,
        tenant_id: uuid.UUID,
        event_ids: List[uuid.UUID],
        grouping: InvoiceGrouping = InvoiceGrouping.BY_ACCOUNT_SIDEMARK,
        invoice_type: InvoiceType = InvoiceType.MANUAL,
        notes: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
        line_sort: LineSortOrder = LineSortOrder.DATE,
    ) -> List[Invoice]:
        """
        Create drafts from hand-picked events, possibly across accounts.

        Each draft's period spans its earliest and latest event dates.
        """
        events = await self._load_events_by_id(tenant_id, event_ids)
        validate_grouping(events, InvoiceGrouping(grouping))
        if not events:
            return []

        def build(assembler: InvoiceAssembler, claimed: List[BillingEvent]) -> List[InvoiceDraft]:
            return assembler.assemble(claimed, grouping, invoice_type=invoice_type)

        return await self._claim_and_persist(tenant_id, events, build, notes, user_id, line_sort)

    async def _claim_events(
        self,
        tenant_id: uuid.UUID,
        event_ids: List[uuid.UUID],
        claimed_at: datetime,
    ) -> List[uuid.UUID]:
        """Move still-unbilled events to billed; returns the ids actually claimed."""
        if not event_ids:
            return []
        result = await self.db.execute(
            update(BillingEvent)
            .where(BillingEvent.tenant_id == tenant_id)
            .where(BillingEvent.id.in_(event_ids))
            .where(BillingEvent.status == BillingEventStatus.UNBILLED)
            .values(status=BillingEventStatus.BILLED, invoiced_at=claimed_at)
            .returning(BillingEvent.id)
            .execution_options(synchronize_session=False)
        )
        return list(result.scalars().all())

    def _build_invoice(
        self,
        tenant_id: uuid.UUID,
        draft: InvoiceDraft,
        invoice_number: str,
        invoice_date: date,
        batch_id: uuid.UUID,
        notes: Optional[str],
        user_id: Optional[uuid.UUID],
        line_sort: LineSortOrder = LineSortOrder.DATE,
    ) -> Invoice:
        lines = [
            InvoiceLine(
                id=uuid.uuid4(),
                billing_event_id=line.billing_event_id,
                service_code=line.service_code,
                description=line.description,
                sidemark_id=line.sidemark_id,
                item_id=line.item_id,
                occurred_at=line.occurred_at,
                quantity=line.quantity,
                unit_rate=line.unit_rate,
                total_amount=line.total_amount,
                discount_amount=line.discount_amount,
                promo_code_id=line.promo_code_id,
                has_rate_error=line.has_rate_error,
                sort_order=index,
            )
            for index, line in enumerate(draft.sorted_lines(line_sort))
        ]

        return Invoice(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            invoice_number=invoice_number,
            account_id=draft.account_id,
            sidemark_id=draft.sidemark_id,
            invoice_type=draft.invoice_type,
            invoice_date=invoice_date,
            due_date=invoice_date + timedelta(days=self.net_terms_days),
            period_start=draft.period_start,
            period_end=draft.period_end,
            subtotal=quantize_money(draft.subtotal),
            discount_total=quantize_money(draft.discount_total),
            total=quantize_money(draft.total),
            rate_error_count=draft.rate_error_count,
            status=InvoiceStatus.DRAFT,
            batch_id=batch_id,
            notes=notes,
            created_by_id=user_id,
            updated_by_id=user_id,
            lines=lines,
        )

    async def _insert_invoice(
        self,
        tenant_id: uuid.UUID,
        draft: InvoiceDraft,
        invoice_date: date,
        batch_id: uuid.UUID,
        notes: Optional[str],
        user_id: Optional[uuid.UUID],
        line_sort: LineSortOrder,
    ) -> Invoice:
        """
        Number and insert one invoice.

        A number taken by a concurrent run hits the (tenant, number) unique
        constraint; the savepoint is rolled back and the next number tried.
        """
        for attempt in range(1, INVOICE_NUMBER_ATTEMPTS + 1):
            invoice_number = await self.generate_invoice_number(tenant_id, invoice_date)
            invoice = self._build_invoice(
                tenant_id, draft, invoice_number, invoice_date, batch_id, notes, user_id, line_sort
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(invoice)
                    await self.db.flush()
                return invoice
            except IntegrityError:
                if attempt == INVOICE_NUMBER_ATTEMPTS:
                    raise
                logger.warning(f"Invoice number {invoice.invoice_number} already taken, retrying")

    async def _claim_and_persist(
        self,
        tenant_id: uuid.UUID,
        events: List[BillingEvent],
        build_drafts: Callable[[InvoiceAssembler, List[BillingEvent]], List[InvoiceDraft]],
        notes: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
        line_sort: LineSortOrder = LineSortOrder.DATE,
    ) -> List[Invoice]:
        """
        Claim the selected events, then assemble and persist drafts from
        the ones actually claimed.

        Events lost to a concurrent run never reach the assembler, so they
        neither appear on a draft nor consume a limited promo code.
        """
        now = datetime.now(timezone.utc)
        invoice_date = now.date()
        batch_id = uuid.uuid4()
        invoices: List[Invoice] = []
        promo_usage: Counter = Counter()

        try:
            claimed_ids = set(await self._claim_events(tenant_id, [event.id for event in events], now))
            claimed = [event for event in events if event.id in claimed_ids]
            lost_count = len(events) - len(claimed)
            if lost_count:
                logger.info(f"{lost_count} events already claimed by another run; dropped from this batch")
            if not claimed:
                await self.db.rollback()
                return []

            assembler = InvoiceAssembler(await self._load_promo_engine(tenant_id, claimed))
            drafts = build_drafts(assembler, claimed)

            for draft in drafts:
                invoice = await self._insert_invoice(
                    tenant_id, draft, invoice_date, batch_id, notes, user_id, line_sort
                )

                await self.db.execute(
                    update(BillingEvent)
                    .where(BillingEvent.id.in_(draft.event_ids))
                    .values(invoice_id=invoice.id)
                    .execution_options(synchronize_session=False)
                )
                promo_usage.update(draft.promo_usage())
                invoices.append(invoice)

            if promo_usage and settings.promo_usage_tracking:
                for promo_code_id, count in promo_usage.items():
                    await self.db.execute(
                        update(PromoCode)
                        .where(PromoCode.id == promo_code_id)
                        .values(usage_count=PromoCode.usage_count + count)
                    )

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Batch {batch_id}: created {len(invoices)} drafts, "
            f"{len(claimed)} events claimed, {lost_count} lost"
        )
        return invoices

    # ===========================================
    # READ OPERATIONS
    # ===========================================

    async def get_invoice(self, tenant_id: uuid.UUID, invoice_id: uuid.UUID) -> Invoice:
        result = await self.db.execute(
            select(Invoice)
            .options(selectinload(Invoice.lines))
            .where(Invoice.id == invoice_id)
            .where(Invoice.tenant_id == tenant_id)
        )
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise InvoiceNotFoundException(invoice_id)
        return invoice

    async def list_invoices(
        self,
        tenant_id: uuid.UUID,
        account_id: Optional[uuid.UUID] = None,
        status: Optional[InvoiceStatus] = None,
        batch_id: Optional[uuid.UUID] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Invoice], int]:
        """List invoices with filters, newest first."""
        filters = [Invoice.tenant_id == tenant_id]
        if account_id:
            filters.append(Invoice.account_id == account_id)
        if status:
            filters.append(Invoice.status == status)
        if batch_id:
            filters.append(Invoice.batch_id == batch_id)

        count_result = await self.db.execute(select(func.count(Invoice.id)).where(*filters))
        total = count_result.scalar() or 0

        result = await self.db.execute(
            select(Invoice)
            .options(selectinload(Invoice.lines))
            .where(*filters)
            .order_by(Invoice.invoice_date.desc(), Invoice.invoice_number.desc())
            .limit(page_size)
            .offset((page - 1) * page_size)
        )
        return list(result.scalars().all()), total

    # ===========================================
    # WORKFLOW
    # ===========================================

    async def mark_sent(self, tenant_id: uuid.UUID, invoice_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> Invoice:
        invoice = await self.get_invoice(tenant_id, invoice_id)
        check_transition(invoice.status, InvoiceStatus.SENT)

        invoice.status = InvoiceStatus.SENT
        invoice.sent_at = datetime.now(timezone.utc)
        invoice.updated_by_id = user_id
        await self.db.commit()
        return invoice

    async def mark_paid(self, tenant_id: uuid.UUID, invoice_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> Invoice:
        invoice = await self.get_invoice(tenant_id, invoice_id)
        check_transition(invoice.status, InvoiceStatus.PAID)

        invoice.status = InvoiceStatus.PAID
        invoice.paid_at = datetime.now(timezone.utc)
        invoice.updated_by_id = user_id
        await self.db.commit()
        return invoice

    async def update_notes(
        self,
        tenant_id: uuid.UUID,
        invoice_id: uuid.UUID,
        notes: Optional[str],
        user_id: Optional[uuid.UUID] = None,
    ) -> Invoice:
        invoice = await self.get_invoice(tenant_id, invoice_id)
        if invoice.status == InvoiceStatus.VOID:
            raise InvalidInvoiceTransitionException(invoice.status.value, "edit")

        invoice.notes = notes
        invoice.updated_by_id = user_id
        await self.db.commit()
        return invoice

    async def void_invoice(
        self,
        tenant_id: uuid.UUID,
        invoice_id: uuid.UUID,
        reason: str,
        user_id: Optional[uuid.UUID] = None,
    ) -> Invoice:
        """
        Void an invoice.

        Its events become void and are not returned to unbilled. A reversal
        event (negated quantity and amount) is written for each of them.
        """
        invoice = await self.get_invoice(tenant_id, invoice_id)
        check_transition(invoice.status, InvoiceStatus.VOID)
        now = datetime.now(timezone.utc)

        result = await self.db.execute(
            select(BillingEvent)
            .where(BillingEvent.tenant_id == tenant_id)
            .where(BillingEvent.invoice_id == invoice.id)
        )
        events = list(result.scalars().all())

        for event in events:
            self.db.add(BillingEvent(
                id=uuid.uuid4(),
                tenant_id=tenant_id,
                account_id=event.account_id,
                sidemark_id=event.sidemark_id,
                item_id=event.item_id,
                class_code=event.class_code,
                event_type=event.event_type,
                charge_type=event.charge_type,
                description=f"Reversal: {event.description or event.charge_type}",
                quantity=-event.quantity,
                unit_rate=event.unit_rate,
                total_amount=-event.total_amount,
                status=BillingEventStatus.VOID,
                occurred_at=now,
                has_rate_error=False,
                event_metadata={
                    "reversal_of": str(event.id),
                    "voided_invoice_id": str(invoice.id),
                    "original_occurred_at": event.occurred_at.isoformat() if event.occurred_at else None,
                },
                created_by_id=user_id,
                updated_by_id=user_id,
            ))

        if events:
            await self.db.execute(
                update(BillingEvent)
                .where(BillingEvent.id.in_([event.id for event in events]))
                .values(status=BillingEventStatus.VOID)
                .execution_options(synchronize_session=False)
            )

        invoice.status = InvoiceStatus.VOID
        invoice.voided_at = now
        invoice.void_reason = reason
        invoice.updated_by_id = user_id
        await self.db.commit()

        logger.info(f"Voided invoice {invoice.invoice_number}: {len(events)} events reversed")
        return invoice
