"""
WMS Billing Core - Invoice Assembler Tests

Unit tests for event selection and draft grouping.
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from app.models.billing import BillingEventStatus
from app.models.promo import PromoDiscountType
from app.services.invoice_assembler import (
    InvoiceAssembler,
    InvoiceGrouping,
    LineSortOrder,
    select_events,
)
from app.services.promo_engine import PromoEngine
from app.utils.error_handling import InvalidDateRangeException, InvalidGroupingException
from conftest import ACCOUNT_ID, OTHER_ACCOUNT_ID


PERIOD_START = date(2026, 10, 1)
PERIOD_END = date(2026, 10, 15)

SIDEMARK_A = uuid.UUID("5a000000-0000-0000-0000-00000000000a")
SIDEMARK_B = uuid.UUID("5a000000-0000-0000-0000-00000000000b")
SIDEMARK_C = uuid.UUID("5a000000-0000-0000-0000-00000000000c")


def _at(month: int, day: int) -> datetime:
    return datetime(2026, month, day, 9, 0, tzinfo=timezone.utc)


class TestSelectEvents:
    """Test cases for unbilled event selection."""

    def test_period_and_status(self, make_event):
        inside = make_event(occurred_at=_at(10, 5))
        before = make_event(occurred_at=_at(9, 20))
        after = make_event(occurred_at=_at(10, 16))
        billed = make_event(occurred_at=_at(10, 5), status=BillingEventStatus.BILLED)
        void = make_event(occurred_at=_at(10, 5), status=BillingEventStatus.VOID)

        selected = select_events([inside, before, after, billed, void], ACCOUNT_ID, PERIOD_START, PERIOD_END)

        assert selected == [inside]

    def test_period_end_inclusive(self, make_event):
        last_day = make_event(occurred_at=datetime(2026, 10, 15, 23, 59, tzinfo=timezone.utc))

        assert select_events([last_day], ACCOUNT_ID, PERIOD_START, PERIOD_END) == [last_day]

    def test_include_earlier_unbilled(self, make_event):
        before = make_event(occurred_at=_at(9, 20))
        after = make_event(occurred_at=_at(10, 20))

        selected = select_events(
            [before, after], ACCOUNT_ID, PERIOD_START, PERIOD_END, include_earlier_unbilled=True
        )

        assert selected == [before]

    def test_account_and_sidemark_filters(self, make_event):
        mine = make_event(sidemark_id=SIDEMARK_A)
        other_sidemark = make_event(sidemark_id=SIDEMARK_B)
        other_account = make_event(account_id=OTHER_ACCOUNT_ID, sidemark_id=SIDEMARK_A)

        selected = select_events(
            [mine, other_sidemark, other_account], ACCOUNT_ID, PERIOD_START, PERIOD_END,
            sidemark_filter=SIDEMARK_A,
        )

        assert selected == [mine]

    def test_no_account_selects_all_accounts(self, make_event):
        events = [make_event(), make_event(account_id=OTHER_ACCOUNT_ID)]

        assert select_events(events, None, PERIOD_START, PERIOD_END) == events


class TestInvoiceAssembler:
    """Test cases for draft grouping."""

    def test_by_sidemark_one_draft_per_sidemark_plus_unassigned(self, make_event):
        events = [
            make_event("10.00", sidemark_id=SIDEMARK_A),
            make_event("20.00", sidemark_id=SIDEMARK_A),
            make_event("30.00", sidemark_id=SIDEMARK_B),
            make_event("40.00", sidemark_id=SIDEMARK_C),
            make_event("50.00", sidemark_id=None),
            make_event("5.00", sidemark_id=None),
        ]

        drafts = InvoiceAssembler().create_draft(
            events, ACCOUNT_ID, PERIOD_START, PERIOD_END, grouping=InvoiceGrouping.BY_SIDEMARK
        )

        assert len(drafts) == 4
        assert {d.sidemark_id for d in drafts} == {SIDEMARK_A, SIDEMARK_B, SIDEMARK_C, None}
        by_sidemark = {d.sidemark_id: d for d in drafts}
        assert by_sidemark[SIDEMARK_A].subtotal == Decimal("30.00")
        assert len(by_sidemark[None].lines) == 2
        assert by_sidemark[None].subtotal == Decimal("55.00")
        assert sum(len(d.lines) for d in drafts) == len(events)

    def test_every_event_in_exactly_one_draft(self, make_event):
        events = [
            make_event(sidemark_id=SIDEMARK_A),
            make_event(sidemark_id=SIDEMARK_B),
            make_event(account_id=OTHER_ACCOUNT_ID, sidemark_id=SIDEMARK_A),
            make_event(account_id=OTHER_ACCOUNT_ID),
        ]

        drafts = InvoiceAssembler().create_draft(
            events, None, PERIOD_START, PERIOD_END, grouping=InvoiceGrouping.BY_ACCOUNT_SIDEMARK
        )

        event_ids = [event_id for d in drafts for event_id in d.event_ids]
        assert len(drafts) == 4
        assert sorted(event_ids, key=str) == sorted((e.id for e in events), key=str)

    def test_draft_totals_match_events(self, make_event):
        events = [make_event("12.34"), make_event("0.66"), make_event("7.00", has_rate_error=True)]

        drafts = InvoiceAssembler().create_draft(events, ACCOUNT_ID, PERIOD_START, PERIOD_END)

        assert len(drafts) == 1
        assert drafts[0].subtotal == Decimal("20.00")
        assert drafts[0].total == Decimal("20.00")
        assert drafts[0].rate_error_count == 1
        assert drafts[0].account_id == ACCOUNT_ID

    def test_by_account_splits_accounts(self, make_event):
        events = [make_event(), make_event(account_id=OTHER_ACCOUNT_ID), make_event()]

        drafts = InvoiceAssembler().create_draft(
            events, None, PERIOD_START, PERIOD_END, grouping=InvoiceGrouping.BY_ACCOUNT
        )

        assert sorted(len(d.lines) for d in drafts) == [1, 2]
        assert {d.account_id for d in drafts} == {ACCOUNT_ID, OTHER_ACCOUNT_ID}

    @pytest.mark.parametrize("grouping", [InvoiceGrouping.SINGLE, InvoiceGrouping.BY_SIDEMARK])
    def test_single_account_groupings_reject_multiple_accounts(self, make_event, grouping):
        events = [make_event(), make_event(account_id=OTHER_ACCOUNT_ID)]

        with pytest.raises(InvalidGroupingException) as exc_info:
            InvoiceAssembler().create_draft(events, None, PERIOD_START, PERIOD_END, grouping=grouping)

        assert exc_info.value.details["account_count"] == 2

    def test_empty_selection(self, make_event):
        billed = make_event(status=BillingEventStatus.BILLED)

        assert InvoiceAssembler().create_draft([billed], ACCOUNT_ID, PERIOD_START, PERIOD_END) == []

    def test_invalid_period(self):
        with pytest.raises(InvalidDateRangeException):
            InvoiceAssembler().create_draft([], ACCOUNT_ID, PERIOD_END, PERIOD_START)

    def test_promo_applied_as_line_deduction(self, make_event, make_promo, assign_promo):
        promo = make_promo("PCT10", PromoDiscountType.PERCENTAGE, "10")
        engine = PromoEngine([promo], [assign_promo(promo)], today=date(2026, 10, 19))
        event = make_event("100.00")

        drafts = InvoiceAssembler(engine).create_draft([event], ACCOUNT_ID, PERIOD_START, PERIOD_END)

        line = drafts[0].lines[0]
        assert line.total_amount == Decimal("100.00")
        assert line.discount_amount == Decimal("10.00")
        assert line.promo_code_id == promo.id
        assert drafts[0].total == Decimal("90.00")
        assert drafts[0].promo_usage() == {promo.id: 1}
        assert event.total_amount == Decimal("100.00")

    def test_assemble_derives_period_from_events(self, make_event):
        events = [make_event(occurred_at=_at(10, 3)), make_event(occurred_at=_at(10, 9))]

        drafts = InvoiceAssembler().assemble(events, InvoiceGrouping.SINGLE)

        assert drafts[0].period_start == date(2026, 10, 3)
        assert drafts[0].period_end == date(2026, 10, 9)


class TestInvoiceDraft:
    """Test cases for draft bookkeeping."""

    def test_sorted_lines_does_not_change_totals(self, make_event):
        events = [
            make_event("5.00", charge_type="PICK", occurred_at=_at(10, 2)),
            make_event("50.00", charge_type="RCV", occurred_at=_at(10, 4)),
            make_event("20.00", charge_type="ADDON", occurred_at=_at(10, 3)),
        ]
        draft = InvoiceAssembler().create_draft(events, ACCOUNT_ID, PERIOD_START, PERIOD_END)[0]

        by_amount = draft.sorted_lines(LineSortOrder.AMOUNT_DESC)
        by_service = draft.sorted_lines(LineSortOrder.SERVICE)
        by_date = draft.sorted_lines(LineSortOrder.DATE)

        assert [line.total_amount for line in by_amount] == [Decimal("50.00"), Decimal("20.00"), Decimal("5.00")]
        assert [line.service_code for line in by_service] == ["ADDON", "PICK", "RCV"]
        assert [line.occurred_at.day for line in by_date] == [2, 3, 4]
        assert draft.subtotal == Decimal("75.00")
