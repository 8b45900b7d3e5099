"""
WMS Billing Core - Labor Cost Router

Labor cost report with weekly overtime allocation.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_async_session
from app.dependencies import get_tenant_id
from app.services.cost_allocator import CostGroup
from app.services.labor_cost_service import LaborCostService


router = APIRouter()


# ===========================================
# RESPONSE SCHEMAS
# ===========================================

class CostGroupResponse(BaseModel):
    key: List[str]
    total_hours: Decimal
    regular_hours: Decimal
    overtime_hours: Decimal
    cost: Decimal
    task_count: int
    employee_count: int

    @classmethod
    def from_group(cls, group: CostGroup) -> "CostGroupResponse":
        key = group.key if isinstance(group.key, tuple) else (group.key,)
        return cls(
            key=[str(part) for part in key],
            total_hours=group.total_hours,
            regular_hours=group.regular_hours,
            overtime_hours=group.overtime_hours,
            cost=group.cost,
            task_count=group.count,
            employee_count=len(group.employee_ids),
        )


class AllocationParameters(BaseModel):
    standard_weekly_minutes: int
    overtime_multiplier: Decimal
    week_starts_on: int


class LaborCostResponse(BaseModel):
    start_date: date
    end_date: date
    by_warehouse_role: List[CostGroupResponse]
    by_employee: List[CostGroupResponse]
    by_task_type: List[CostGroupResponse]
    total_hours: Decimal
    regular_hours: Decimal
    overtime_hours: Decimal
    total_cost: Decimal
    task_count: int
    employee_count: int
    allocation: AllocationParameters


# ===========================================
# ENDPOINTS
# ===========================================

@router.get(
    "/costs",
    response_model=LaborCostResponse,
    summary="Labor cost report",
)
async def get_labor_costs(
    start_date: date = Query(..., description="First day of the period"),
    end_date: date = Query(..., description="Last day of the period (inclusive)"),
    warehouse_ids: Optional[List[UUID]] = Query(None),
    employee_ids: Optional[List[UUID]] = Query(None),
    task_types: Optional[List[str]] = Query(None),
    roles: Optional[List[str]] = Query(None),
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Labor cost grouped by warehouse and role, by employee and by task type.

    Overtime is split across the whole period before filters apply, so an
    employee's overtime share does not change when the view is narrowed.
    """
    service = LaborCostService(db)
    report = await service.build_report(
        tenant_id,
        start_date,
        end_date,
        warehouse_ids=warehouse_ids,
        employee_ids=employee_ids,
        task_types=task_types,
        roles=roles,
    )

    return LaborCostResponse(
        start_date=report.start_date,
        end_date=report.end_date,
        by_warehouse_role=[CostGroupResponse.from_group(g) for g in report.by_warehouse_role],
        by_employee=[CostGroupResponse.from_group(g) for g in report.by_employee],
        by_task_type=[CostGroupResponse.from_group(g) for g in report.by_task_type],
        total_hours=report.total_hours,
        regular_hours=report.regular_hours,
        overtime_hours=report.overtime_hours,
        total_cost=report.total_cost,
        task_count=report.task_count,
        employee_count=report.employee_count,
        allocation=AllocationParameters(
            standard_weekly_minutes=report.allocation.standard_weekly_minutes,
            overtime_multiplier=report.allocation.overtime_multiplier,
            week_starts_on=report.allocation.week_starts_on,
        ),
    )
