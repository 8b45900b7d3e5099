"""
WMS Billing Core - Promo Engine

Selects the single best promo discount for a billing event.

A code is a candidate when it is assigned to the account, active, not
expired, under its usage limit and in scope for the event's service.
The winner is the code with the greatest absolute discount on the
event's pre-discount total; ties go to the earliest-created code.

The discount never mutates the event. It is applied as a separate
deduction on the invoice line.
"""

import logging
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from app.models.promo import (
    AccountPromoCode,
    ExpirationType,
    PromoCode,
    PromoDiscountType,
    ServiceScope,
    UsageLimitType,
)
from app.services.rate_resolver import ZERO, quantize_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromoDiscount:
    """Discount chosen for one event."""

    promo_code_id: uuid.UUID
    code: str
    discount_type: PromoDiscountType
    discount_value: Decimal
    discount_amount: Decimal


def is_expired(promo: PromoCode, today: date) -> bool:
    """A dated code is valid through its expiration date."""
    if promo.expiration_type != ExpirationType.DATE or promo.expiration_date is None:
        return False
    return promo.expiration_date < today


def in_scope(promo: PromoCode, service_code: str) -> bool:
    if promo.service_scope == ServiceScope.ALL:
        return True
    return service_code in (promo.selected_services or [])


def discount_amount(promo: PromoCode, pre_discount_total: Decimal) -> Decimal:
    """Absolute discount on a total, never more than the total itself."""
    total = Decimal(str(pre_discount_total))
    if total <= ZERO:
        return ZERO

    value = Decimal(str(promo.discount_value))
    if promo.discount_type == PromoDiscountType.PERCENTAGE:
        amount = total * value / Decimal("100")
    else:
        amount = value

    amount = max(min(amount, total), ZERO)
    return quantize_money(amount)


class PromoEngine:
    """
    Best-discount selection over already-fetched promo codes.

    Usage applied through record_usage() counts against usage limits for
    the rest of the run, so a limited code cannot exceed its limit inside
    one invoicing batch.
    """

    def __init__(
        self,
        promo_codes: Iterable[PromoCode],
        assignments: Iterable[AccountPromoCode],
        today: Optional[date] = None,
    ):
        self.today = today or date.today()
        self._codes: Dict[uuid.UUID, PromoCode] = {promo.id: promo for promo in promo_codes}
        self._assigned: Dict[uuid.UUID, List[uuid.UUID]] = {}
        for assignment in assignments:
            self._assigned.setdefault(assignment.account_id, []).append(assignment.promo_code_id)
        self._applied: Counter = Counter()

    def remaining_uses(self, promo: PromoCode) -> Optional[int]:
        """None for unlimited codes."""
        if promo.usage_limit_type != UsageLimitType.LIMITED:
            return None
        limit = promo.usage_limit or 0
        used = (promo.usage_count or 0) + self._applied[promo.id]
        return max(limit - used, 0)

    def is_eligible(self, promo: PromoCode) -> bool:
        if not promo.is_active:
            return False
        if is_expired(promo, self.today):
            return False
        remaining = self.remaining_uses(promo)
        return remaining is None or remaining > 0

    def candidates(self, event, account_id: uuid.UUID) -> List[PromoCode]:
        service_code = event.charge_type
        result = []
        for promo_code_id in self._assigned.get(account_id, []):
            promo = self._codes.get(promo_code_id)
            if promo is None:
                continue
            if self.is_eligible(promo) and in_scope(promo, service_code):
                result.append(promo)
        return result

    def best_discount(self, event, account_id: uuid.UUID) -> Optional[PromoDiscount]:
        """
        Best discount for an event, or None.

        None is also returned when every candidate discounts nothing
        (zero or negative event totals).
        """
        total = Decimal(str(event.total_amount))
        best: Optional[PromoDiscount] = None
        best_promo: Optional[PromoCode] = None

        for promo in self.candidates(event, account_id):
            amount = discount_amount(promo, total)
            if amount <= ZERO:
                continue
            if best is None or amount > best.discount_amount or (
                amount == best.discount_amount and self._created_before(promo, best_promo)
            ):
                best_promo = promo
                best = PromoDiscount(
                    promo_code_id=promo.id,
                    code=promo.code,
                    discount_type=promo.discount_type,
                    discount_value=Decimal(str(promo.discount_value)),
                    discount_amount=amount,
                )

        if best is not None:
            logger.debug(f"Promo {best.code} selected for event {event.id}: -{best.discount_amount}")
        return best

    @staticmethod
    def _created_before(promo: PromoCode, other: PromoCode) -> bool:
        def sort_key(p: PromoCode):
            return (p.created_at is None, p.created_at, str(p.id))
        return sort_key(promo) < sort_key(other)

    def record_usage(self, promo_code_id: uuid.UUID) -> None:
        self._applied[promo_code_id] += 1

    @property
    def usage_increments(self) -> Dict[uuid.UUID, int]:
        return dict(self._applied)
