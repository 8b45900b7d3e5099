"""
WMS Billing Core - Invoice Service Tests

Unit tests for draft persistence, event claiming and the invoice workflow.
"""

import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import UniqueConstraint
from sqlalchemy.exc import IntegrityError, OperationalError

from app.models.billing import BillingEvent, BillingEventStatus
from app.models.invoice import Invoice, InvoiceStatus
from app.models.promo import PromoDiscountType
from app.services.invoice_assembler import InvoiceGrouping, LineSortOrder
from app.services.invoice_service import InvoiceService, check_transition
from app.services.promo_engine import PromoEngine
from app.utils.error_handling import (
    InvalidDateRangeException,
    InvalidGroupingException,
    InvalidInvoiceTransitionException,
    InvoiceNotFoundException,
)
from conftest import ACCOUNT_ID, OTHER_ACCOUNT_ID, TENANT_ID


PERIOD_START = date(2026, 10, 1)
PERIOD_END = date(2026, 10, 15)


def _claim_all():
    return AsyncMock(side_effect=lambda tenant_id, event_ids, claimed_at: list(event_ids))


def _patched(service, events, engine=None, claim=None):
    """Patch the loaders and number generator of an InvoiceService."""
    numbers = iter(f"INV-202610-{n:04d}" for n in range(1, 100))
    return (
        patch.object(service, "_load_unbilled_events", AsyncMock(return_value=events)),
        patch.object(service, "_load_promo_engine", AsyncMock(return_value=engine or PromoEngine([], []))),
        patch.object(service, "_claim_events", claim or _claim_all()),
        patch.object(service, "generate_invoice_number", AsyncMock(side_effect=lambda *a: next(numbers))),
    )


class TestTransitions:
    """Test cases for the invoice status workflow."""

    @pytest.mark.parametrize("current,target", [
        (InvoiceStatus.DRAFT, InvoiceStatus.SENT),
        (InvoiceStatus.DRAFT, InvoiceStatus.VOID),
        (InvoiceStatus.SENT, InvoiceStatus.PAID),
        (InvoiceStatus.SENT, InvoiceStatus.VOID),
    ])
    def test_allowed(self, current, target):
        check_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (InvoiceStatus.DRAFT, InvoiceStatus.PAID),
        (InvoiceStatus.PAID, InvoiceStatus.VOID),
        (InvoiceStatus.VOID, InvoiceStatus.DRAFT),
        (InvoiceStatus.VOID, InvoiceStatus.SENT),
    ])
    def test_rejected(self, current, target):
        with pytest.raises(InvalidInvoiceTransitionException):
            check_transition(current, target)


class TestCreateDraft:
    """Test cases for InvoiceService.create_draft."""

    @pytest.mark.asyncio
    async def test_creates_invoice_with_lines(self, mock_db, make_event):
        service = InvoiceService(mock_db, net_terms_days=15)
        events = [make_event("10.00"), make_event("25.50", has_rate_error=True)]
        p1, p2, p3, p4 = _patched(service, events)

        with p1, p2, p3, p4:
            invoices = await service.create_draft(TENANT_ID, ACCOUNT_ID, PERIOD_START, PERIOD_END)

        assert len(invoices) == 1
        invoice = invoices[0]
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.invoice_number == "INV-202610-0001"
        assert invoice.subtotal == Decimal("35.50")
        assert invoice.total == Decimal("35.50")
        assert invoice.rate_error_count == 1
        assert invoice.due_date == invoice.invoice_date + timedelta(days=15)
        assert {line.billing_event_id for line in invoice.lines} == {e.id for e in events}
        assert [line.sort_order for line in invoice.lines] == [0, 1]
        mock_db.add.assert_called_once_with(invoice)
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rerun_creates_nothing(self, mock_db, make_event):
        service = InvoiceService(mock_db)
        events = [make_event("10.00")]
        p1, p2, p3, p4 = _patched(service, events)

        with p1, p2, p3, p4:
            first = await service.create_draft(TENANT_ID, ACCOUNT_ID, PERIOD_START, PERIOD_END)

        mock_db.reset_mock()
        with patch.object(service, "_load_unbilled_events", AsyncMock(return_value=[])):
            second = await service.create_draft(TENANT_ID, ACCOUNT_ID, PERIOD_START, PERIOD_END)

        assert len(first) == 1
        assert second == []
        mock_db.commit.assert_not_awaited()
        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_events_lost_to_concurrent_run_are_dropped(self, mock_db, make_event):
        service = InvoiceService(mock_db)
        kept, lost = make_event("10.00"), make_event("99.00")
        claim = AsyncMock(return_value=[kept.id])
        p1, p2, p3, p4 = _patched(service, [kept, lost], claim=claim)

        with p1, p2, p3, p4:
            invoices = await service.create_draft(TENANT_ID, ACCOUNT_ID, PERIOD_START, PERIOD_END)

        assert [line.billing_event_id for line in invoices[0].lines] == [kept.id]
        assert invoices[0].subtotal == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_account_with_all_events_taken_gets_no_draft(self, mock_db, make_event):
        service = InvoiceService(mock_db)
        mine = make_event("10.00", account_id=ACCOUNT_ID)
        taken = make_event("20.00", account_id=OTHER_ACCOUNT_ID)
        claim = AsyncMock(side_effect=lambda t, ids, now: [i for i in ids if i == mine.id])
        p1, p2, p3, p4 = _patched(service, [mine, taken], claim=claim)

        with p1, p2, p3, p4:
            invoices = await service.create_draft(
                TENANT_ID, None, PERIOD_START, PERIOD_END, grouping=InvoiceGrouping.BY_ACCOUNT
            )

        assert len(invoices) == 1
        assert invoices[0].account_id == ACCOUNT_ID
        # One claim for the whole selection
        assert claim.await_count == 1

    @pytest.mark.asyncio
    async def test_invalid_grouping_writes_nothing(self, mock_db, make_event):
        service = InvoiceService(mock_db)
        events = [make_event(account_id=ACCOUNT_ID), make_event(account_id=OTHER_ACCOUNT_ID)]
        p1, p2, p3, p4 = _patched(service, events)

        with p1, p2 as promo_loader, p3 as claim, p4:
            with pytest.raises(InvalidGroupingException):
                await service.create_draft(
                    TENANT_ID, None, PERIOD_START, PERIOD_END, grouping=InvoiceGrouping.SINGLE
                )

        promo_loader.assert_not_awaited()
        claim.assert_not_awaited()
        mock_db.execute.assert_not_awaited()
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_period(self, mock_db):
        service = InvoiceService(mock_db)

        with pytest.raises(InvalidDateRangeException):
            await service.create_draft(TENANT_ID, ACCOUNT_ID, PERIOD_END, PERIOD_START)

    @pytest.mark.asyncio
    async def test_failure_rolls_back_whole_call(self, mock_db, make_event):
        service = InvoiceService(mock_db)
        events = [make_event(account_id=ACCOUNT_ID), make_event(account_id=OTHER_ACCOUNT_ID)]
        p1, p2, p3, _ = _patched(service, events)
        failing_number = patch.object(
            service, "generate_invoice_number",
            AsyncMock(side_effect=["INV-202610-0001", OperationalError("SELECT", {}, Exception("down"))]),
        )

        with p1, p2, p3, failing_number:
            with pytest.raises(OperationalError):
                await service.create_draft(TENANT_ID, None, PERIOD_START, PERIOD_END)

        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_promo_usage_counted_for_claimed_lines(self, mock_db, make_event, make_promo, assign_promo):
        service = InvoiceService(mock_db)
        promo = make_promo("FLAT5", PromoDiscountType.FIXED, "5")
        engine = PromoEngine([promo], [assign_promo(promo)], today=date(2026, 10, 19))
        events = [make_event("50.00"), make_event("40.00")]
        p1, p2, p3, p4 = _patched(service, events, engine=engine)

        with p1, p2, p3, p4:
            invoices = await service.create_draft(TENANT_ID, ACCOUNT_ID, PERIOD_START, PERIOD_END)

        assert invoices[0].discount_total == Decimal("10.00")
        assert invoices[0].total == Decimal("80.00")
        assert all(line.promo_code_id == promo.id for line in invoices[0].lines)
        # invoice_id back-fill plus one usage_count update
        assert mock_db.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_nothing_claimed_creates_nothing(self, mock_db, make_event):
        service = InvoiceService(mock_db)
        events = [make_event("10.00"), make_event("20.00")]
        p1, p2, p3, p4 = _patched(service, events, claim=AsyncMock(return_value=[]))

        with p1, p2 as promo_loader, p3, p4:
            invoices = await service.create_draft(TENANT_ID, ACCOUNT_ID, PERIOD_START, PERIOD_END)

        assert invoices == []
        promo_loader.assert_not_awaited()
        mock_db.add.assert_not_called()
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_limited_promo_not_spent_on_lost_event(self, mock_db, make_event, make_promo, assign_promo):
        service = InvoiceService(mock_db)
        promo = make_promo("ONCE", PromoDiscountType.FIXED, "5", usage_limit=1)
        engine = PromoEngine([promo], [assign_promo(promo)], today=date(2026, 10, 19))
        lost = make_event("90.00", occurred_at=datetime(2026, 10, 2, 9, 0, tzinfo=timezone.utc))
        kept = make_event("40.00", occurred_at=datetime(2026, 10, 9, 9, 0, tzinfo=timezone.utc))
        p1, p2, p3, p4 = _patched(service, [lost, kept], engine=engine, claim=AsyncMock(return_value=[kept.id]))

        with p1, p2, p3, p4:
            invoices = await service.create_draft(TENANT_ID, ACCOUNT_ID, PERIOD_START, PERIOD_END)

        line = invoices[0].lines[0]
        assert line.billing_event_id == kept.id
        assert line.promo_code_id == promo.id
        assert invoices[0].total == Decimal("35.00")

    @pytest.mark.asyncio
    async def test_line_sort_orders_lines_not_totals(self, mock_db, make_event):
        events = [
            make_event("5.00", charge_type="PICK", occurred_at=datetime(2026, 10, 2, 9, 0, tzinfo=timezone.utc)),
            make_event("50.00", charge_type="RCV", occurred_at=datetime(2026, 10, 4, 9, 0, tzinfo=timezone.utc)),
            make_event("20.00", charge_type="ADDON", occurred_at=datetime(2026, 10, 3, 9, 0, tzinfo=timezone.utc)),
        ]

        results = {}
        for order in (LineSortOrder.DATE, LineSortOrder.AMOUNT_DESC):
            service = InvoiceService(mock_db)
            p1, p2, p3, p4 = _patched(service, events)
            with p1, p2, p3, p4:
                results[order] = (await service.create_draft(
                    TENANT_ID, ACCOUNT_ID, PERIOD_START, PERIOD_END, line_sort=order
                ))[0]

        by_date = sorted(results[LineSortOrder.DATE].lines, key=lambda line: line.sort_order)
        by_amount = sorted(results[LineSortOrder.AMOUNT_DESC].lines, key=lambda line: line.sort_order)
        assert [line.service_code for line in by_date] == ["PICK", "ADDON", "RCV"]
        assert [line.service_code for line in by_amount] == ["RCV", "ADDON", "PICK"]
        assert results[LineSortOrder.DATE].total == results[LineSortOrder.AMOUNT_DESC].total == Decimal("75.00")

    @pytest.mark.asyncio
    async def test_taken_invoice_number_retried(self, mock_db, make_event):
        service = InvoiceService(mock_db)
        mock_db.flush.side_effect = [IntegrityError("INSERT", {}, Exception("duplicate key")), None]
        p1, p2, p3, p4 = _patched(service, [make_event("10.00")])

        with p1, p2, p3, p4 as numbers:
            invoices = await service.create_draft(TENANT_ID, ACCOUNT_ID, PERIOD_START, PERIOD_END)

        assert invoices[0].invoice_number == "INV-202610-0002"
        assert numbers.await_count == 2
        assert mock_db.begin_nested.call_count == 2
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invoice_number_collisions_exhausted(self, mock_db, make_event):
        service = InvoiceService(mock_db)
        mock_db.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))
        p1, p2, p3, p4 = _patched(service, [make_event("10.00")])

        with p1, p2, p3, p4:
            with pytest.raises(IntegrityError):
                await service.create_draft(TENANT_ID, ACCOUNT_ID, PERIOD_START, PERIOD_END)

        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_from_events_spans_accounts(self, mock_db, make_event):
        service = InvoiceService(mock_db)
        events = [make_event(account_id=ACCOUNT_ID), make_event(account_id=OTHER_ACCOUNT_ID)]
        _, p2, p3, p4 = _patched(service, events)

        with patch.object(service, "_load_events_by_id", AsyncMock(return_value=events)), p2, p3, p4:
            invoices = await service.create_from_events(TENANT_ID, [e.id for e in events])

        assert len(invoices) == 2
        assert len({inv.batch_id for inv in invoices}) == 1


class TestInvoiceNumber:
    """Test cases for invoice number generation."""

    @pytest.mark.asyncio
    async def test_sequence_within_month(self, mock_db, result_factory):
        service = InvoiceService(mock_db)
        mock_db.execute.return_value = result_factory(scalar=3)

        number = await service.generate_invoice_number(TENANT_ID, date(2026, 10, 19))

        assert number == "INV-202610-0004"

    def test_number_unique_per_tenant(self):
        constraints = [
            tuple(c.name for c in constraint.columns)
            for constraint in Invoice.__table__.constraints
            if isinstance(constraint, UniqueConstraint)
        ]

        assert ("tenant_id", "invoice_number") in constraints


class TestWorkflow:
    """Test cases for send, pay, void and notes."""

    @pytest.mark.asyncio
    async def test_send_then_pay(self, mock_db, make_invoice):
        service = InvoiceService(mock_db)
        invoice = make_invoice(InvoiceStatus.DRAFT)

        with patch.object(service, "get_invoice", AsyncMock(return_value=invoice)):
            await service.mark_sent(TENANT_ID, invoice.id)
            await service.mark_paid(TENANT_ID, invoice.id)

        assert invoice.status == InvoiceStatus.PAID
        assert invoice.sent_at is not None
        assert invoice.paid_at is not None

    @pytest.mark.asyncio
    async def test_pay_draft_rejected(self, mock_db, make_invoice):
        service = InvoiceService(mock_db)
        invoice = make_invoice(InvoiceStatus.DRAFT)

        with patch.object(service, "get_invoice", AsyncMock(return_value=invoice)):
            with pytest.raises(InvalidInvoiceTransitionException):
                await service.mark_paid(TENANT_ID, invoice.id)

        assert invoice.status == InvoiceStatus.DRAFT
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_void_writes_reversals(self, mock_db, result_factory, make_invoice, make_event):
        service = InvoiceService(mock_db)
        invoice = make_invoice(InvoiceStatus.SENT)
        events = [make_event("10.00", quantity="2"), make_event("4.00")]
        for event in events:
            event.status = BillingEventStatus.BILLED
            event.invoice_id = invoice.id
        mock_db.execute.side_effect = [result_factory(events), result_factory()]

        with patch.object(service, "get_invoice", AsyncMock(return_value=invoice)):
            voided = await service.void_invoice(TENANT_ID, invoice.id, "Billed in error")

        assert voided.status == InvoiceStatus.VOID
        assert voided.void_reason == "Billed in error"
        assert voided.voided_at is not None

        reversals = [c.args[0] for c in mock_db.add.call_args_list if isinstance(c.args[0], BillingEvent)]
        assert len(reversals) == 2
        assert {r.event_metadata["reversal_of"] for r in reversals} == {str(e.id) for e in events}
        assert sum(r.total_amount for r in reversals) == Decimal("-14.00")
        assert all(r.status == BillingEventStatus.VOID for r in reversals)
        assert mock_db.execute.await_count == 2
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_void_is_terminal(self, mock_db, make_invoice):
        service = InvoiceService(mock_db)
        invoice = make_invoice(InvoiceStatus.VOID)

        with patch.object(service, "get_invoice", AsyncMock(return_value=invoice)):
            with pytest.raises(InvalidInvoiceTransitionException):
                await service.void_invoice(TENANT_ID, invoice.id, "again")
            with pytest.raises(InvalidInvoiceTransitionException):
                await service.update_notes(TENANT_ID, invoice.id, "edit")

    @pytest.mark.asyncio
    async def test_paid_cannot_be_voided(self, mock_db, make_invoice):
        service = InvoiceService(mock_db)
        invoice = make_invoice(InvoiceStatus.PAID)

        with patch.object(service, "get_invoice", AsyncMock(return_value=invoice)):
            with pytest.raises(InvalidInvoiceTransitionException):
                await service.void_invoice(TENANT_ID, invoice.id, "late")

        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_missing_invoice(self, mock_db, result_factory):
        service = InvoiceService(mock_db)
        mock_db.execute.return_value = result_factory(scalar=None)

        with pytest.raises(InvoiceNotFoundException):
            await service.get_invoice(TENANT_ID, uuid.uuid4())
