"""
WMS Billing Core - Promo Code Service

Account promo assignments and best-discount lookups.
"""

import logging
import uuid
from datetime import date
from typing import Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import BillingEvent
from app.models.promo import AccountPromoCode, PromoCode
from app.services.promo_engine import PromoDiscount, PromoEngine
from app.utils.error_handling import ConflictException, ErrorCode, NotFoundException

logger = logging.getLogger(__name__)


class PromoCodeService:
    """Service for promo code assignment and selection."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_promo_code(self, tenant_id: uuid.UUID, promo_code_id: uuid.UUID) -> PromoCode:
        result = await self.db.execute(
            select(PromoCode)
            .where(PromoCode.id == promo_code_id)
            .where(PromoCode.tenant_id == tenant_id)
        )
        promo = result.scalar_one_or_none()
        if promo is None:
            raise NotFoundException("PromoCode", promo_code_id, code=ErrorCode.PROMO_CODE_NOT_FOUND)
        return promo

    async def list_account_promo_codes(self, tenant_id: uuid.UUID, account_id: uuid.UUID) -> List[PromoCode]:
        result = await self.db.execute(
            select(PromoCode)
            .join(AccountPromoCode, AccountPromoCode.promo_code_id == PromoCode.id)
            .where(AccountPromoCode.tenant_id == tenant_id)
            .where(AccountPromoCode.account_id == account_id)
            .order_by(PromoCode.code)
        )
        return list(result.scalars().all())

    async def _get_assignment(
        self,
        tenant_id: uuid.UUID,
        account_id: uuid.UUID,
        promo_code_id: uuid.UUID,
    ) -> Optional[AccountPromoCode]:
        result = await self.db.execute(
            select(AccountPromoCode)
            .where(AccountPromoCode.tenant_id == tenant_id)
            .where(AccountPromoCode.account_id == account_id)
            .where(AccountPromoCode.promo_code_id == promo_code_id)
        )
        return result.scalar_one_or_none()

    async def assign_to_account(
        self,
        tenant_id: uuid.UUID,
        account_id: uuid.UUID,
        promo_code_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
    ) -> AccountPromoCode:
        promo = await self.get_promo_code(tenant_id, promo_code_id)

        if await self._get_assignment(tenant_id, account_id, promo_code_id) is not None:
            raise ConflictException(
                f"Promo code '{promo.code}' is already assigned to this account",
                resource_type="AccountPromoCode",
                code=ErrorCode.DUPLICATE_ENTRY,
            )

        assignment = AccountPromoCode(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            account_id=account_id,
            promo_code_id=promo_code_id,
            created_by_id=user_id,
            updated_by_id=user_id,
        )
        self.db.add(assignment)
        await self.db.commit()

        logger.info(f"Assigned promo {promo.code} to account {account_id}")
        return assignment

    async def remove_from_account(
        self,
        tenant_id: uuid.UUID,
        account_id: uuid.UUID,
        promo_code_id: uuid.UUID,
    ) -> None:
        """Unassign a code. Lines already discounted keep their deduction."""
        if await self._get_assignment(tenant_id, account_id, promo_code_id) is None:
            raise NotFoundException("AccountPromoCode", promo_code_id)

        await self.db.execute(
            delete(AccountPromoCode)
            .where(AccountPromoCode.tenant_id == tenant_id)
            .where(AccountPromoCode.account_id == account_id)
            .where(AccountPromoCode.promo_code_id == promo_code_id)
        )
        await self.db.commit()

    async def get_engine(
        self,
        tenant_id: uuid.UUID,
        account_ids: Iterable[uuid.UUID],
        today: Optional[date] = None,
    ) -> PromoEngine:
        """Promo engine loaded with the assignments of the given accounts."""
        account_ids = list(set(account_ids))
        if not account_ids:
            return PromoEngine([], [], today)

        result = await self.db.execute(
            select(AccountPromoCode)
            .where(AccountPromoCode.tenant_id == tenant_id)
            .where(AccountPromoCode.account_id.in_(account_ids))
        )
        assignments = list(result.scalars().all())

        promo_codes: List[PromoCode] = []
        if assignments:
            result = await self.db.execute(
                select(PromoCode)
                .where(PromoCode.tenant_id == tenant_id)
                .where(PromoCode.id.in_({a.promo_code_id for a in assignments}))
            )
            promo_codes = list(result.scalars().all())

        return PromoEngine(promo_codes, assignments, today)

    async def best_discount_for_event(
        self,
        tenant_id: uuid.UUID,
        event_id: uuid.UUID,
    ) -> Optional[PromoDiscount]:
        result = await self.db.execute(
            select(BillingEvent)
            .where(BillingEvent.id == event_id)
            .where(BillingEvent.tenant_id == tenant_id)
        )
        event = result.scalar_one_or_none()
        if event is None:
            raise NotFoundException("BillingEvent", event_id, code=ErrorCode.BILLING_EVENT_NOT_FOUND)

        engine = await self.get_engine(tenant_id, [event.account_id])
        return engine.best_discount(event, event.account_id)
