"""
WMS Billing Core - Invoice Assembler

Groups unbilled billing events into invoice drafts.

Groupings:
- single: one draft for the whole selection (one account only)
- by_account: one draft per account
- by_sidemark: one draft per sidemark plus one for sidemark-less events (one account only)
- by_account_sidemark: one draft per (account, sidemark) pair

Grouping errors are raised before anything is claimed. Lines copy the
event's captured amounts; promo deductions are kept separate.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from app.models.billing import BillingEvent, BillingEventStatus
from app.models.invoice import InvoiceStatus, InvoiceType
from app.services.promo_engine import PromoEngine
from app.services.rate_resolver import ZERO
from app.utils.error_handling import InvalidDateRangeException, InvalidGroupingException

logger = logging.getLogger(__name__)


class InvoiceGrouping(str, Enum):
    SINGLE = "single"
    BY_ACCOUNT = "by_account"
    BY_SIDEMARK = "by_sidemark"
    BY_ACCOUNT_SIDEMARK = "by_account_sidemark"


class LineSortOrder(str, Enum):
    """Presentation order for draft lines; never affects totals."""
    DATE = "date"
    SERVICE = "service"
    ITEM = "item"
    AMOUNT_DESC = "amount_desc"


# Groupings that must not mix accounts
SINGLE_ACCOUNT_GROUPINGS = {InvoiceGrouping.SINGLE, InvoiceGrouping.BY_SIDEMARK}


def sort_lines(lines: Iterable, order: LineSortOrder = LineSortOrder.DATE) -> List:
    """
    Order draft or stored invoice lines for presentation.

    Works on anything with service_code, item_id, total_amount and
    occurred_at; the input is not reordered in place.
    """
    order = LineSortOrder(order)
    if order == LineSortOrder.SERVICE:
        key = lambda line: (line.service_code, line.occurred_at)  # noqa: E731
    elif order == LineSortOrder.ITEM:
        key = lambda line: (line.item_id is None, str(line.item_id or ""), line.occurred_at)  # noqa: E731
    elif order == LineSortOrder.AMOUNT_DESC:
        key = lambda line: (-line.total_amount, line.occurred_at)  # noqa: E731
    else:
        key = lambda line: line.occurred_at  # noqa: E731
    return sorted(lines, key=key)


@dataclass
class DraftLine:
    """One invoice line built from one billing event."""

    billing_event_id: uuid.UUID
    account_id: uuid.UUID
    sidemark_id: Optional[uuid.UUID]
    item_id: Optional[uuid.UUID]
    service_code: str
    description: Optional[str]
    occurred_at: datetime
    quantity: Decimal
    unit_rate: Decimal
    total_amount: Decimal
    discount_amount: Decimal = ZERO
    promo_code_id: Optional[uuid.UUID] = None
    has_rate_error: bool = False

    @property
    def net_amount(self) -> Decimal:
        return self.total_amount - self.discount_amount


@dataclass
class InvoiceDraft:
    """An invoice document before it is persisted."""

    account_id: Optional[uuid.UUID]
    sidemark_id: Optional[uuid.UUID]
    period_start: date
    period_end: date
    invoice_type: InvoiceType = InvoiceType.MANUAL
    status: InvoiceStatus = InvoiceStatus.DRAFT
    lines: List[DraftLine] = field(default_factory=list)

    @property
    def subtotal(self) -> Decimal:
        return sum((line.total_amount for line in self.lines), ZERO)

    @property
    def discount_total(self) -> Decimal:
        return sum((line.discount_amount for line in self.lines), ZERO)

    @property
    def total(self) -> Decimal:
        return self.subtotal - self.discount_total

    @property
    def rate_error_count(self) -> int:
        return sum(1 for line in self.lines if line.has_rate_error)

    @property
    def event_ids(self) -> List[uuid.UUID]:
        return [line.billing_event_id for line in self.lines]

    def promo_usage(self) -> Dict[uuid.UUID, int]:
        usage: Dict[uuid.UUID, int] = {}
        for line in self.lines:
            if line.promo_code_id is not None:
                usage[line.promo_code_id] = usage.get(line.promo_code_id, 0) + 1
        return usage

    def sorted_lines(self, order: LineSortOrder = LineSortOrder.DATE) -> List[DraftLine]:
        return sort_lines(self.lines, order)


def _event_date(event: BillingEvent) -> date:
    occurred = event.occurred_at
    return occurred.date() if isinstance(occurred, datetime) else occurred


def select_events(
    events: Iterable[BillingEvent],
    account_id: Optional[uuid.UUID],
    period_start: date,
    period_end: date,
    sidemark_filter: Optional[uuid.UUID] = None,
    include_earlier_unbilled: bool = False,
) -> List[BillingEvent]:
    """
    Unbilled events for the account within the period.

    With include_earlier_unbilled, unbilled events before period_start are
    included too. Events after period_end never are.
    """
    selected = []
    for event in events:
        if event.status != BillingEventStatus.UNBILLED:
            continue
        if account_id is not None and event.account_id != account_id:
            continue
        if sidemark_filter is not None and event.sidemark_id != sidemark_filter:
            continue
        day = _event_date(event)
        if day > period_end:
            continue
        if day < period_start and not include_earlier_unbilled:
            continue
        selected.append(event)
    return selected


def validate_grouping(events: List[BillingEvent], grouping: InvoiceGrouping) -> None:
    """Raise InvalidGroupingException if the grouping would mix accounts."""
    if grouping in SINGLE_ACCOUNT_GROUPINGS:
        accounts = {event.account_id for event in events}
        if len(accounts) > 1:
            raise InvalidGroupingException(grouping.value, len(accounts))


class InvoiceAssembler:
    """Pure draft assembly over caller-supplied events."""

    def __init__(self, promo_engine: Optional[PromoEngine] = None):
        self.promo_engine = promo_engine

    def build_line(self, event: BillingEvent) -> DraftLine:
        line = DraftLine(
            billing_event_id=event.id,
            account_id=event.account_id,
            sidemark_id=event.sidemark_id,
            item_id=event.item_id,
            service_code=event.charge_type,
            description=event.description,
            occurred_at=event.occurred_at,
            quantity=Decimal(str(event.quantity)),
            unit_rate=Decimal(str(event.unit_rate)),
            total_amount=Decimal(str(event.total_amount)),
            has_rate_error=bool(event.has_rate_error),
        )
        if self.promo_engine is not None:
            discount = self.promo_engine.best_discount(event, event.account_id)
            if discount is not None:
                line.discount_amount = discount.discount_amount
                line.promo_code_id = discount.promo_code_id
                self.promo_engine.record_usage(discount.promo_code_id)
        return line

    @staticmethod
    def _group_key(event: BillingEvent, grouping: InvoiceGrouping) -> Tuple:
        if grouping == InvoiceGrouping.SINGLE:
            return ()
        if grouping == InvoiceGrouping.BY_ACCOUNT:
            return (event.account_id,)
        if grouping == InvoiceGrouping.BY_SIDEMARK:
            return (event.sidemark_id,)
        return (event.account_id, event.sidemark_id)

    def assemble(
        self,
        events: List[BillingEvent],
        grouping: InvoiceGrouping,
        period_start: Optional[date] = None,
        period_end: Optional[date] = None,
        invoice_type: InvoiceType = InvoiceType.MANUAL,
    ) -> List[InvoiceDraft]:
        """
        Group already-selected events into drafts.

        Without an explicit period, each draft's period spans its earliest
        and latest event dates.
        """
        grouping = InvoiceGrouping(grouping)
        validate_grouping(events, grouping)
        if not events:
            return []

        groups: Dict[Tuple, List[BillingEvent]] = {}
        for event in events:
            groups.setdefault(self._group_key(event, grouping), []).append(event)

        drafts = []
        for group_events in groups.values():
            accounts: Set[uuid.UUID] = {event.account_id for event in group_events}
            sidemarks = {event.sidemark_id for event in group_events}
            dates = [_event_date(event) for event in group_events]

            drafts.append(InvoiceDraft(
                account_id=next(iter(accounts)) if len(accounts) == 1 else None,
                sidemark_id=next(iter(sidemarks)) if len(sidemarks) == 1 else None,
                period_start=period_start or min(dates),
                period_end=period_end or max(dates),
                invoice_type=invoice_type,
                lines=[self.build_line(event) for event in group_events],
            ))

        logger.debug(f"Assembled {len(drafts)} drafts from {len(events)} events ({grouping.value})")
        return drafts

    def create_draft(
        self,
        events: Iterable[BillingEvent],
        account_id: Optional[uuid.UUID],
        period_start: date,
        period_end: date,
        grouping: InvoiceGrouping = InvoiceGrouping.BY_ACCOUNT,
        sidemark_filter: Optional[uuid.UUID] = None,
        include_earlier_unbilled: bool = False,
        invoice_type: InvoiceType = InvoiceType.MANUAL,
    ) -> List[InvoiceDraft]:
        """
        Select unbilled events for the period and group them into drafts.

        account_id None selects across all accounts. An empty selection
        yields no drafts.
        """
        if period_start > period_end:
            raise InvalidDateRangeException(period_start, period_end)

        selected = select_events(
            events, account_id, period_start, period_end, sidemark_filter, include_earlier_unbilled
        )
        return self.assemble(selected, grouping, period_start, period_end, invoice_type)
