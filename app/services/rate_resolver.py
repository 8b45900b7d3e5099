"""
WMS Billing Core - Rate Resolver

Resolves the effective unit rate for a billable service.

Precedence:
1. Active account adjustment on the exact (account, service_code, class_code) key
2. Tenant base rate (class-specific, falling back to the class-less rate)

Promo discounts are never folded into the rate; see promo_engine.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple, Union

from app.models.pricing import AccountServiceAdjustment, AdjustmentType, ServiceRate
from app.utils.error_handling import RateNotFoundException

logger = logging.getLogger(__name__)


CENTS = Decimal("0.01")
RATE_PLACES = Decimal("0.0001")
ZERO = Decimal("0.00")

RateKey = Tuple[str, Optional[str]]


def quantize_money(value) -> Decimal:
    """Round a monetary amount to cents (ROUND_HALF_UP)."""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def quantize_rate(value) -> Decimal:
    """Round a unit rate to the stored rate precision (four places)."""
    return Decimal(str(value)).quantize(RATE_PLACES, rounding=ROUND_HALF_UP)


class RateSource(str, Enum):
    """Tier that produced an effective rate."""
    ACCOUNT = "account"
    TENANT = "tenant"


@dataclass(frozen=True)
class ResolvedRate:
    """Effective rate for one (service_code, class_code) key."""

    rate: Decimal
    source: RateSource
    base_rate: Decimal
    service_code: str
    class_code: Optional[str] = None
    adjustment_type: Optional[AdjustmentType] = None
    adjustment_id: Optional[uuid.UUID] = None

    def to_dict(self) -> dict:
        return {
            "rate": str(self.rate),
            "source": self.source.value,
            "base_rate": str(self.base_rate),
            "service_code": self.service_code,
            "class_code": self.class_code,
            "adjustment_type": self.adjustment_type.value if self.adjustment_type else None,
            "adjustment_id": str(self.adjustment_id) if self.adjustment_id else None,
        }


def apply_adjustment(
    base_rate: Decimal,
    adjustment_type: AdjustmentType,
    adjustment_value: Decimal,
) -> Decimal:
    """
    Apply an adjustment to a base rate.

    fixed adds the value, percentage scales by (1 + value / 100) and
    override replaces the rate. The result is clamped at zero and kept
    at rate precision; only money totals are rounded to cents.
    """
    base_rate = Decimal(str(base_rate))
    value = Decimal(str(adjustment_value))

    if adjustment_type == AdjustmentType.FIXED:
        effective = base_rate + value
    elif adjustment_type == AdjustmentType.PERCENTAGE:
        effective = base_rate * (Decimal("1") + value / Decimal("100"))
    elif adjustment_type == AdjustmentType.OVERRIDE:
        effective = value
    else:
        raise ValueError(f"Unknown adjustment type: {adjustment_type}")

    if effective < ZERO:
        effective = ZERO
    return quantize_rate(effective)


class RateResolver:
    """
    In-memory rate resolver over one tenant's price list.

    Built from already-fetched ServiceRate and AccountServiceAdjustment rows;
    inactive rows are ignored. Safe to share across accounts since it never
    mutates its inputs.
    """

    def __init__(
        self,
        rates: Iterable[ServiceRate],
        adjustments: Iterable[AccountServiceAdjustment] = (),
    ):
        self._rates: Dict[RateKey, ServiceRate] = {}
        for rate in rates:
            if rate.is_active:
                self._rates[(rate.service_code, rate.class_code)] = rate

        self._adjustments: Dict[Tuple[uuid.UUID, str, Optional[str]], AccountServiceAdjustment] = {}
        for adjustment in adjustments:
            if adjustment.is_active:
                key = (adjustment.account_id, adjustment.service_code, adjustment.class_code)
                self._adjustments[key] = adjustment

    def find_base_rate(self, service_code: str, class_code: Optional[str] = None) -> Optional[ServiceRate]:
        """Class-specific rate first, then the class-less rate for the service."""
        rate = self._rates.get((service_code, class_code))
        if rate is None and class_code is not None:
            rate = self._rates.get((service_code, None))
        return rate

    def find_adjustment(
        self,
        account_id: Optional[uuid.UUID],
        service_code: str,
        class_code: Optional[str] = None,
    ) -> Optional[AccountServiceAdjustment]:
        if account_id is None:
            return None
        return self._adjustments.get((account_id, service_code, class_code))

    def resolve(
        self,
        account_id: Optional[uuid.UUID],
        service_code: str,
        class_code: Optional[str] = None,
    ) -> ResolvedRate:
        """
        Resolve the effective rate for an account.

        Raises:
            RateNotFoundException: no active ServiceRate for the key
        """
        service_rate = self.find_base_rate(service_code, class_code)
        if service_rate is None:
            raise RateNotFoundException(service_code, class_code)

        base_rate = quantize_rate(service_rate.rate)
        adjustment = self.find_adjustment(account_id, service_code, class_code)

        if adjustment is not None:
            return ResolvedRate(
                rate=apply_adjustment(service_rate.rate, adjustment.adjustment_type, adjustment.adjustment_value),
                source=RateSource.ACCOUNT,
                base_rate=base_rate,
                service_code=service_code,
                class_code=class_code,
                adjustment_type=adjustment.adjustment_type,
                adjustment_id=adjustment.id,
            )

        return ResolvedRate(
            rate=max(base_rate, ZERO),
            source=RateSource.TENANT,
            base_rate=base_rate,
            service_code=service_code,
            class_code=class_code,
        )

    def resolve_many(
        self,
        account_id: Optional[uuid.UUID],
        keys: Iterable[RateKey],
    ) -> Dict[RateKey, Union[ResolvedRate, RateNotFoundException]]:
        """Resolve several keys; a missing rate is returned in place, not raised."""
        results: Dict[RateKey, Union[ResolvedRate, RateNotFoundException]] = {}
        missing: List[RateKey] = []
        for service_code, class_code in keys:
            try:
                results[(service_code, class_code)] = self.resolve(account_id, service_code, class_code)
            except RateNotFoundException as exc:
                results[(service_code, class_code)] = exc
                missing.append((service_code, class_code))

        if missing:
            logger.warning(f"No rate configured for {len(missing)} of {len(results)} keys: {missing}")
        return results
