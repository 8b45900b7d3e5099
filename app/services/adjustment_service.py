"""
WMS Billing Core - Account Pricing Adjustments

AdjustmentSet holds the per-account adjustments and plans batch creates
and updates in memory. AccountPricingService loads and persists them,
writing an audit row for every change.

Conflict policy: a key that already has an adjustment is skipped and
reported, never overwritten.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.pricing import (
    AccountAdjustmentAudit,
    AccountServiceAdjustment,
    AdjustmentType,
    AuditAction,
    ServiceRate,
)
from app.services.rate_resolver import RateResolver, apply_adjustment, quantize_rate
from app.utils.error_handling import (
    AdjustmentConflictException,
    AdjustmentNotFoundException,
)

logger = logging.getLogger(__name__)


PRICING_HISTORY_LIMIT = 100


@dataclass
class AdjustmentEntry:
    """Requested adjustment for one (service_code, class_code) key."""

    service_code: str
    adjustment_type: AdjustmentType
    adjustment_value: Decimal
    class_code: Optional[str] = None
    notes: Optional[str] = None

    @property
    def key(self) -> Tuple[str, Optional[str]]:
        return (self.service_code, self.class_code)


@dataclass
class SkippedAdjustment:
    entry: AdjustmentEntry
    error: AdjustmentConflictException

    @property
    def reason(self) -> str:
        return self.error.message


@dataclass
class AdjustmentBatchResult:
    """Outcome of a batch create."""

    created: List[AccountServiceAdjustment] = field(default_factory=list)
    skipped: List[SkippedAdjustment] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)


@dataclass
class AdjustmentView:
    """Adjustment with the rates it produces."""

    adjustment: AccountServiceAdjustment
    base_rate: Optional[Decimal]
    effective_rate: Optional[Decimal]


class AdjustmentSet:
    """
    Validated in-memory collection of account adjustments.

    At most one adjustment exists per (account_id, service_code, class_code).
    """

    def __init__(self, adjustments: Iterable[AccountServiceAdjustment] = ()):
        self._by_key: Dict[Tuple[uuid.UUID, str, Optional[str]], AccountServiceAdjustment] = {}
        self._by_id: Dict[uuid.UUID, AccountServiceAdjustment] = {}
        for adjustment in adjustments:
            self._add(adjustment)

    def _add(self, adjustment: AccountServiceAdjustment) -> None:
        key = (adjustment.account_id, adjustment.service_code, adjustment.class_code)
        self._by_key[key] = adjustment
        self._by_id[adjustment.id] = adjustment

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self):
        return iter(self._by_id.values())

    def get(self, adjustment_id: uuid.UUID) -> Optional[AccountServiceAdjustment]:
        return self._by_id.get(adjustment_id)

    def find(
        self,
        account_id: uuid.UUID,
        service_code: str,
        class_code: Optional[str] = None,
    ) -> Optional[AccountServiceAdjustment]:
        return self._by_key.get((account_id, service_code, class_code))

    def for_account(self, account_id: uuid.UUID) -> List[AccountServiceAdjustment]:
        return [adj for adj in self._by_id.values() if adj.account_id == account_id]

    def create_adjustments(
        self,
        account_id: uuid.UUID,
        entries: Iterable[AdjustmentEntry],
        tenant_id: Optional[uuid.UUID] = None,
        created_by_id: Optional[uuid.UUID] = None,
    ) -> AdjustmentBatchResult:
        """
        Create adjustments for every key not already present.

        Keys already on the account, and repeats inside the same batch,
        are reported as skipped. The remaining entries are applied.
        """
        result = AdjustmentBatchResult()

        for entry in entries:
            if self.find(account_id, entry.service_code, entry.class_code) is not None:
                result.skipped.append(
                    SkippedAdjustment(entry, AdjustmentConflictException(entry.service_code, entry.class_code))
                )
                continue

            adjustment = AccountServiceAdjustment(
                id=uuid.uuid4(),
                tenant_id=tenant_id,
                account_id=account_id,
                service_code=entry.service_code,
                class_code=entry.class_code,
                adjustment_type=entry.adjustment_type,
                adjustment_value=Decimal(str(entry.adjustment_value)),
                notes=entry.notes,
                is_active=True,
                created_by_id=created_by_id,
                updated_by_id=created_by_id,
            )
            self._add(adjustment)
            result.created.append(adjustment)

        return result

    def update_adjustment(
        self,
        adjustment_id: uuid.UUID,
        adjustment_type: AdjustmentType,
        adjustment_value: Decimal,
        notes: Optional[str] = None,
        updated_by_id: Optional[uuid.UUID] = None,
    ) -> AccountServiceAdjustment:
        """
        Update type, value and notes.

        The value is stored verbatim; switching type does not rescale it.
        """
        adjustment = self.get(adjustment_id)
        if adjustment is None:
            raise AdjustmentNotFoundException(adjustment_id)

        adjustment.adjustment_type = adjustment_type
        adjustment.adjustment_value = Decimal(str(adjustment_value))
        adjustment.notes = notes
        adjustment.updated_by_id = updated_by_id
        return adjustment

    def remove(self, adjustment_id: uuid.UUID) -> AccountServiceAdjustment:
        adjustment = self._by_id.pop(adjustment_id, None)
        if adjustment is None:
            raise AdjustmentNotFoundException(adjustment_id)
        self._by_key.pop((adjustment.account_id, adjustment.service_code, adjustment.class_code), None)
        return adjustment


class AccountPricingService:
    """Service for account pricing adjustments."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ===========================================
    # LOADERS
    # ===========================================

    async def _load_rates(self, tenant_id: uuid.UUID) -> List[ServiceRate]:
        result = await self.db.execute(
            select(ServiceRate)
            .where(ServiceRate.tenant_id == tenant_id)
            .where(ServiceRate.is_active == True)  # noqa: E712
        )
        return list(result.scalars().all())

    async def _load_adjustments(
        self,
        tenant_id: uuid.UUID,
        account_id: Optional[uuid.UUID] = None,
    ) -> List[AccountServiceAdjustment]:
        query = select(AccountServiceAdjustment).where(AccountServiceAdjustment.tenant_id == tenant_id)
        if account_id is not None:
            query = query.where(AccountServiceAdjustment.account_id == account_id)
        result = await self.db.execute(
            query.order_by(AccountServiceAdjustment.service_code, AccountServiceAdjustment.class_code)
        )
        return list(result.scalars().all())

    async def _get_adjustment(self, tenant_id: uuid.UUID, adjustment_id: uuid.UUID) -> AccountServiceAdjustment:
        result = await self.db.execute(
            select(AccountServiceAdjustment)
            .where(AccountServiceAdjustment.id == adjustment_id)
            .where(AccountServiceAdjustment.tenant_id == tenant_id)
        )
        adjustment = result.scalar_one_or_none()
        if adjustment is None:
            raise AdjustmentNotFoundException(adjustment_id)
        return adjustment

    async def get_resolver(
        self,
        tenant_id: uuid.UUID,
        account_id: Optional[uuid.UUID] = None,
    ) -> RateResolver:
        """Rate resolver over the tenant price list and the account's adjustments."""
        rates = await self._load_rates(tenant_id)
        adjustments = await self._load_adjustments(tenant_id, account_id)
        return RateResolver(rates, adjustments)

    # ===========================================
    # AUDIT
    # ===========================================

    def _audit(
        self,
        adjustment: AccountServiceAdjustment,
        action: AuditAction,
        old_values: Optional[dict],
        new_values: Optional[dict],
        user_id: Optional[uuid.UUID],
    ) -> AccountAdjustmentAudit:
        entry = AccountAdjustmentAudit(
            id=uuid.uuid4(),
            tenant_id=adjustment.tenant_id,
            adjustment_id=None if action == AuditAction.DELETE else adjustment.id,
            account_id=adjustment.account_id,
            service_code=adjustment.service_code,
            class_code=adjustment.class_code,
            action=action,
            old_values=old_values,
            new_values=new_values,
            changed_by_id=user_id,
            changed_at=datetime.utcnow(),
        )
        self.db.add(entry)
        return entry

    async def get_pricing_history(
        self,
        tenant_id: uuid.UUID,
        account_id: uuid.UUID,
        limit: int = PRICING_HISTORY_LIMIT,
    ) -> List[AccountAdjustmentAudit]:
        """Adjustment audit rows for an account, newest first."""
        result = await self.db.execute(
            select(AccountAdjustmentAudit)
            .where(AccountAdjustmentAudit.tenant_id == tenant_id)
            .where(AccountAdjustmentAudit.account_id == account_id)
            .order_by(AccountAdjustmentAudit.changed_at.desc())
            .limit(min(limit, PRICING_HISTORY_LIMIT))
        )
        return list(result.scalars().all())

    # ===========================================
    # CRUD OPERATIONS
    # ===========================================

    async def list_adjustments(self, tenant_id: uuid.UUID, account_id: uuid.UUID) -> List[AdjustmentView]:
        """Adjustments for an account with their base and effective rates."""
        adjustments = await self._load_adjustments(tenant_id, account_id)
        resolver = RateResolver(await self._load_rates(tenant_id))

        views = []
        for adjustment in adjustments:
            service_rate = resolver.find_base_rate(adjustment.service_code, adjustment.class_code)
            if service_rate is None:
                views.append(AdjustmentView(adjustment, None, None))
                continue
            views.append(AdjustmentView(
                adjustment=adjustment,
                base_rate=quantize_rate(service_rate.rate),
                effective_rate=apply_adjustment(
                    service_rate.rate, adjustment.adjustment_type, adjustment.adjustment_value
                ),
            ))
        return views

    async def create_adjustments(
        self,
        tenant_id: uuid.UUID,
        account_id: uuid.UUID,
        entries: List[AdjustmentEntry],
        user_id: Optional[uuid.UUID] = None,
    ) -> AdjustmentBatchResult:
        """
        Batch-create adjustments for an account.

        Existing keys are skipped. A concurrent insert of the same key is
        caught by the unique constraint and also reported as skipped.
        """
        adjustment_set = AdjustmentSet(await self._load_adjustments(tenant_id, account_id))
        planned = adjustment_set.create_adjustments(account_id, entries, tenant_id, user_id)

        result = AdjustmentBatchResult(skipped=list(planned.skipped))
        entries_by_key: Dict[Tuple[str, Optional[str]], AdjustmentEntry] = {}
        for entry in entries:
            entries_by_key.setdefault(entry.key, entry)

        for adjustment in planned.created:
            try:
                async with self.db.begin_nested():
                    self.db.add(adjustment)
                    await self.db.flush()
            except IntegrityError:
                entry = entries_by_key[adjustment.key]
                result.skipped.append(
                    SkippedAdjustment(entry, AdjustmentConflictException(entry.service_code, entry.class_code))
                )
                continue

            self._audit(adjustment, AuditAction.INSERT, None, adjustment.snapshot(), user_id)
            result.created.append(adjustment)

        await self.db.commit()

        logger.info(
            f"Account {account_id}: created {result.created_count} adjustments, "
            f"skipped {result.skipped_count}"
        )
        return result

    async def update_adjustment(
        self,
        tenant_id: uuid.UUID,
        adjustment_id: uuid.UUID,
        adjustment_type: AdjustmentType,
        adjustment_value: Decimal,
        notes: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> AccountServiceAdjustment:
        adjustment = await self._get_adjustment(tenant_id, adjustment_id)
        old_values = adjustment.snapshot()

        AdjustmentSet([adjustment]).update_adjustment(
            adjustment_id, adjustment_type, adjustment_value, notes, user_id
        )
        self._audit(adjustment, AuditAction.UPDATE, old_values, adjustment.snapshot(), user_id)

        await self.db.commit()
        await self.db.refresh(adjustment)
        return adjustment

    async def delete_adjustment(
        self,
        tenant_id: uuid.UUID,
        adjustment_id: uuid.UUID,
        user_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Delete an adjustment; the account reverts to the tenant base rate."""
        adjustment = await self._get_adjustment(tenant_id, adjustment_id)
        self._audit(adjustment, AuditAction.DELETE, adjustment.snapshot(), None, user_id)
        await self.db.delete(adjustment)
        await self.db.commit()

    async def delete_adjustments(
        self,
        tenant_id: uuid.UUID,
        account_id: uuid.UUID,
        adjustment_ids: List[uuid.UUID],
        user_id: Optional[uuid.UUID] = None,
    ) -> int:
        """Bulk delete; ids not belonging to the account are ignored."""
        if not adjustment_ids:
            return 0

        result = await self.db.execute(
            select(AccountServiceAdjustment)
            .where(AccountServiceAdjustment.tenant_id == tenant_id)
            .where(AccountServiceAdjustment.account_id == account_id)
            .where(AccountServiceAdjustment.id.in_(adjustment_ids))
        )
        adjustments = list(result.scalars().all())
        if not adjustments:
            return 0

        for adjustment in adjustments:
            self._audit(adjustment, AuditAction.DELETE, adjustment.snapshot(), None, user_id)

        await self.db.execute(
            delete(AccountServiceAdjustment)
            .where(AccountServiceAdjustment.id.in_([adj.id for adj in adjustments]))
        )
        await self.db.commit()

        logger.info(f"Account {account_id}: deleted {len(adjustments)} adjustments")
        return len(adjustments)

    async def resolve_rate(
        self,
        tenant_id: uuid.UUID,
        account_id: uuid.UUID,
        service_code: str,
        class_code: Optional[str] = None,
    ):
        """Effective rate for one key; raises RateNotFoundException."""
        resolver = await self.get_resolver(tenant_id, account_id)
        return resolver.resolve(account_id, service_code, class_code)


__all__ = [
    "AdjustmentEntry",
    "SkippedAdjustment",
    "AdjustmentBatchResult",
    "AdjustmentView",
    "AdjustmentSet",
    "AccountPricingService",
]
