"""
WMS Billing Core - Labor Cost Service

Loads completed tasks and pay profiles for a period and builds the
labor cost report.
"""

import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.labor import EmployeePay, TaskTimeEntry
from app.services.cost_allocator import LaborCostReport, build_labor_report
from app.services.overtime_allocator import LaborSettings
from app.utils.error_handling import InvalidDateRangeException

logger = logging.getLogger(__name__)


def period_bounds(start_date: date, end_date: date):
    """UTC datetimes covering [start_date, end_date] inclusive."""
    start = datetime.combine(start_date, time.min, tzinfo=timezone.utc)
    end = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return start, end


class LaborCostService:
    """Service for labor cost reporting."""

    def __init__(self, db: AsyncSession, labor_settings: Optional[LaborSettings] = None):
        self.db = db
        self.labor_settings = labor_settings or LaborSettings.from_settings(settings)

    async def _load_entries(self, tenant_id: uuid.UUID, start_date: date, end_date: date) -> List[TaskTimeEntry]:
        start, end = period_bounds(start_date, end_date)
        result = await self.db.execute(
            select(TaskTimeEntry)
            .where(TaskTimeEntry.tenant_id == tenant_id)
            .where(TaskTimeEntry.completed_at >= start)
            .where(TaskTimeEntry.completed_at < end)
            .where(TaskTimeEntry.duration_minutes > 0)
        )
        return list(result.scalars().all())

    async def _load_profiles(self, tenant_id: uuid.UUID) -> Dict[uuid.UUID, EmployeePay]:
        result = await self.db.execute(
            select(EmployeePay).where(EmployeePay.tenant_id == tenant_id)
        )
        return {profile.employee_id: profile for profile in result.scalars().all()}

    async def build_report(
        self,
        tenant_id: uuid.UUID,
        start_date: date,
        end_date: date,
        warehouse_ids: Optional[List[uuid.UUID]] = None,
        employee_ids: Optional[List[uuid.UUID]] = None,
        task_types: Optional[List[str]] = None,
        roles: Optional[List[str]] = None,
    ) -> LaborCostReport:
        if start_date > end_date:
            raise InvalidDateRangeException(start_date, end_date)

        entries = await self._load_entries(tenant_id, start_date, end_date)
        profiles = await self._load_profiles(tenant_id)

        report = build_labor_report(
            entries,
            profiles,
            start_date,
            end_date,
            labor_settings=self.labor_settings,
            warehouse_ids=warehouse_ids,
            employee_ids=employee_ids,
            task_types=task_types,
            roles=roles,
        )

        logger.info(
            f"Labor cost report {start_date}..{end_date}: {report.task_count} tasks, "
            f"{report.employee_count} employees, cost {report.total_cost}"
        )
        return report
