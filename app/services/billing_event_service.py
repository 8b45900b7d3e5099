"""
WMS Billing Core - Billing Event Service

Prices and records charges. The unit rate is resolved once, when the event
is created, and stored on the event.

A missing rate never blocks the charge: the event is recorded with a
zero rate and has_rate_error set so it can be corrected by hand.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import BillingEvent, BillingEventStatus, BillingEventType
from app.services.adjustment_service import AccountPricingService
from app.services.rate_resolver import RateResolver, RateSource, ZERO, quantize_money
from app.utils.error_handling import AppException, ErrorCode, NotFoundException, RateNotFoundException

logger = logging.getLogger(__name__)


@dataclass
class ChargeRequest:
    """A charge to price and record."""

    account_id: uuid.UUID
    charge_type: str
    quantity: Decimal = Decimal("1")
    class_code: Optional[str] = None
    sidemark_id: Optional[uuid.UUID] = None
    item_id: Optional[uuid.UUID] = None
    description: Optional[str] = None
    event_type: BillingEventType = BillingEventType.MANUAL
    occurred_at: Optional[datetime] = None
    rate_override: Optional[Decimal] = None


@dataclass(frozen=True)
class ChargeQuote:
    unit_rate: Decimal
    total_amount: Decimal
    rate_source: Optional[RateSource] = None
    has_rate_error: bool = False
    rate_error_message: Optional[str] = None


@dataclass
class ChargeResult:
    """Per-request outcome of a batch create, in request order."""

    index: int
    event: Optional[BillingEvent] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.event is not None


def price_charge(
    resolver: RateResolver,
    account_id: uuid.UUID,
    service_code: str,
    class_code: Optional[str],
    quantity: Decimal,
    rate_override: Optional[Decimal] = None,
) -> ChargeQuote:
    """
    Price one charge.

    rate_override bypasses resolution. A missing rate yields unit_rate 0
    with has_rate_error set.
    """
    quantity = Decimal(str(quantity))

    if rate_override is not None:
        unit_rate = Decimal(str(rate_override))
        return ChargeQuote(unit_rate=unit_rate, total_amount=quantize_money(quantity * unit_rate))

    try:
        resolved = resolver.resolve(account_id, service_code, class_code)
    except RateNotFoundException as exc:
        logger.warning(f"Rate error for account {account_id}: {exc.message}")
        return ChargeQuote(
            unit_rate=ZERO,
            total_amount=ZERO,
            has_rate_error=True,
            rate_error_message=exc.message,
        )

    return ChargeQuote(
        unit_rate=resolved.rate,
        total_amount=quantize_money(quantity * resolved.rate),
        rate_source=resolved.source,
    )


class BillingEventService:
    """Service for creating priced billing events."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.pricing = AccountPricingService(db)

    async def get_event(self, tenant_id: uuid.UUID, event_id: uuid.UUID) -> BillingEvent:
        result = await self.db.execute(
            select(BillingEvent)
            .where(BillingEvent.id == event_id)
            .where(BillingEvent.tenant_id == tenant_id)
        )
        event = result.scalar_one_or_none()
        if event is None:
            raise NotFoundException("BillingEvent", event_id, code=ErrorCode.BILLING_EVENT_NOT_FOUND)
        return event

    def _build_event(
        self,
        tenant_id: uuid.UUID,
        request: ChargeRequest,
        quote: ChargeQuote,
        user_id: Optional[uuid.UUID],
    ) -> BillingEvent:
        return BillingEvent(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            account_id=request.account_id,
            sidemark_id=request.sidemark_id,
            item_id=request.item_id,
            class_code=request.class_code,
            event_type=request.event_type,
            charge_type=request.charge_type,
            description=request.description,
            quantity=Decimal(str(request.quantity)),
            unit_rate=quote.unit_rate,
            total_amount=quote.total_amount,
            status=BillingEventStatus.UNBILLED,
            occurred_at=request.occurred_at or datetime.now(timezone.utc),
            has_rate_error=quote.has_rate_error,
            rate_error_message=quote.rate_error_message,
            created_by_id=user_id,
            updated_by_id=user_id,
        )

    async def preview_charge(self, tenant_id: uuid.UUID, request: ChargeRequest) -> ChargeQuote:
        """Price a charge without recording it."""
        resolver = await self.pricing.get_resolver(tenant_id, request.account_id)
        return price_charge(
            resolver, request.account_id, request.charge_type, request.class_code,
            request.quantity, request.rate_override,
        )

    async def create_charge(
        self,
        tenant_id: uuid.UUID,
        request: ChargeRequest,
        user_id: Optional[uuid.UUID] = None,
    ) -> BillingEvent:
        quote = await self.preview_charge(tenant_id, request)
        event = self._build_event(tenant_id, request, quote, user_id)

        self.db.add(event)
        await self.db.commit()
        await self.db.refresh(event)
        return event

    async def create_charges(
        self,
        tenant_id: uuid.UUID,
        requests: List[ChargeRequest],
        user_id: Optional[uuid.UUID] = None,
    ) -> List[ChargeResult]:
        """
        Record several charges in request order.

        Each charge is written in its own savepoint; a failing charge is
        reported in its result and does not block the others.
        """
        resolvers: Dict[uuid.UUID, RateResolver] = {}
        results: List[ChargeResult] = []

        for index, request in enumerate(requests):
            try:
                resolver = resolvers.get(request.account_id)
                if resolver is None:
                    resolver = resolvers[request.account_id] = await self.pricing.get_resolver(
                        tenant_id, request.account_id
                    )
                quote = price_charge(
                    resolver, request.account_id, request.charge_type, request.class_code,
                    request.quantity, request.rate_override,
                )
                event = self._build_event(tenant_id, request, quote, user_id)
                async with self.db.begin_nested():
                    self.db.add(event)
                    await self.db.flush()
            except (SQLAlchemyError, AppException) as exc:
                logger.warning(f"Charge {index} ({request.charge_type}) failed: {exc}")
                results.append(ChargeResult(index=index, error=str(exc)))
                continue

            results.append(ChargeResult(index=index, event=event))

        await self.db.commit()

        created = sum(1 for result in results if result.success)
        rate_errors = sum(1 for result in results if result.success and result.event.has_rate_error)
        logger.info(
            f"Created {created} of {len(requests)} charges ({rate_errors} with rate errors)"
        )
        return results
