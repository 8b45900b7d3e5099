"""
WMS Billing Core - Labor Cost Allocator

Turns completed-task durations into labor cost per grouping.

Each record is split into regular and overtime hours using its
employee's aggregate overtime ratio from the OvertimeAllocation; tasks
are not individually classified. Cost is

    regular_hours * hourly_rate + overtime_hours * hourly_rate * multiplier

The grouping is a GroupKeyExtractor (warehouse+role, employee, task type)
or any callable taking (record, profile). Missing dimensions are bucketed
under "unassigned", never dropped.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Set, Union

from app.models.labor import EmployeePay, PayType, TaskTimeEntry
from app.services.overtime_allocator import LaborSettings, OvertimeAllocation, OvertimeAllocator
from app.services.rate_resolver import ZERO, quantize_money

logger = logging.getLogger(__name__)


UNASSIGNED = "unassigned"
SIXTY = Decimal("60")


def hourly_rate(profile: Optional[EmployeePay], annual_hours: Decimal = Decimal("2080")) -> Decimal:
    """
    Hourly rate for cost allocation.

    pay_rate for hourly employees; for salaried ones the explicit hourly
    equivalent, else pay_rate / annual_hours. Zero without a profile.
    """
    if profile is None:
        return ZERO
    pay_rate = Decimal(str(profile.pay_rate or 0))
    if profile.pay_type == PayType.HOURLY:
        return pay_rate
    if profile.salary_hourly_equivalent is not None:
        return Decimal(str(profile.salary_hourly_equivalent))
    if annual_hours <= 0:
        return ZERO
    return pay_rate / Decimal(str(annual_hours))


# ===========================================
# GROUP KEY EXTRACTORS
# ===========================================

class GroupKeyExtractor(ABC):
    """Produces the grouping key for one record."""

    name: str = ""

    @abstractmethod
    def __call__(self, record: TaskTimeEntry, profile: Optional[EmployeePay]) -> Hashable:
        ...


def _dimension(value: Any) -> str:
    if value is None or value == "":
        return UNASSIGNED
    return str(value)


class WarehouseRoleKey(GroupKeyExtractor):
    name = "warehouse_role"

    def __call__(self, record, profile):
        role = profile.role if profile is not None else None
        return (_dimension(record.warehouse_id), _dimension(role))


class EmployeeKey(GroupKeyExtractor):
    name = "employee"

    def __call__(self, record, profile):
        return _dimension(record.employee_id)


class TaskTypeKey(GroupKeyExtractor):
    name = "task_type"

    def __call__(self, record, profile):
        return _dimension(record.task_type)


KeyFunction = Union[GroupKeyExtractor, Callable[[TaskTimeEntry, Optional[EmployeePay]], Hashable]]


# ===========================================
# RESULTS
# ===========================================

@dataclass
class CostGroup:
    """Hours and cost for one group key."""

    key: Hashable
    total_hours: Decimal = ZERO
    regular_hours: Decimal = ZERO
    overtime_hours: Decimal = ZERO
    cost: Decimal = ZERO
    count: int = 0
    employee_ids: Set[uuid.UUID] = field(default_factory=set)

    def add(self, regular_hours: Decimal, overtime_hours: Decimal, cost: Decimal, employee_id) -> None:
        self.regular_hours += regular_hours
        self.overtime_hours += overtime_hours
        self.total_hours += regular_hours + overtime_hours
        self.cost += cost
        self.count += 1
        if employee_id is not None:
            self.employee_ids.add(employee_id)

    def finalize(self) -> "CostGroup":
        self.total_hours = quantize_money(self.total_hours)
        self.regular_hours = quantize_money(self.regular_hours)
        self.overtime_hours = quantize_money(self.overtime_hours)
        self.cost = quantize_money(self.cost)
        return self

    def to_dict(self) -> dict:
        return {
            "key": list(self.key) if isinstance(self.key, tuple) else self.key,
            "total_hours": str(self.total_hours),
            "regular_hours": str(self.regular_hours),
            "overtime_hours": str(self.overtime_hours),
            "cost": str(self.cost),
            "count": self.count,
        }


def filter_records(
    records: Iterable[TaskTimeEntry],
    profiles: Mapping[uuid.UUID, EmployeePay],
    warehouse_ids: Optional[Iterable[uuid.UUID]] = None,
    employee_ids: Optional[Iterable[uuid.UUID]] = None,
    task_types: Optional[Iterable[str]] = None,
    roles: Optional[Iterable[str]] = None,
) -> List[TaskTimeEntry]:
    """Narrow records for a cost view. Empty or None filters match everything."""
    warehouse_set = set(warehouse_ids or [])
    employee_set = set(employee_ids or [])
    task_type_set = set(task_types or [])
    role_set = set(roles or [])

    result = []
    for record in records:
        if warehouse_set and record.warehouse_id not in warehouse_set:
            continue
        if employee_set and record.employee_id not in employee_set:
            continue
        if task_type_set and record.task_type not in task_type_set:
            continue
        if role_set:
            profile = profiles.get(record.employee_id) if record.employee_id else None
            if profile is None or profile.role not in role_set:
                continue
        result.append(record)
    return result


class CostAllocator:
    """Proportional labor cost allocation."""

    def __init__(self, annual_hours: Decimal = Decimal("2080")):
        self.annual_hours = Decimal(str(annual_hours))

    def allocate_cost(
        self,
        records: Iterable[TaskTimeEntry],
        allocation: OvertimeAllocation,
        profiles: Mapping[uuid.UUID, EmployeePay],
        overtime_multiplier: Optional[Decimal] = None,
        group_key: Optional[KeyFunction] = None,
    ) -> Dict[Hashable, CostGroup]:
        """
        Cost per group key.

        Records without an employee still count their hours, at zero cost.
        The multiplier defaults to the one the allocation was computed with.
        """
        multiplier = Decimal(str(
            overtime_multiplier if overtime_multiplier is not None else allocation.overtime_multiplier
        ))
        key_fn = group_key or EmployeeKey()

        groups: Dict[Hashable, CostGroup] = {}
        for record in records:
            minutes = int(record.duration_minutes or 0)
            if minutes <= 0:
                continue

            profile = profiles.get(record.employee_id) if record.employee_id is not None else None
            bucket = allocation.get(record.employee_id) if record.employee_id is not None else None
            ratio = bucket.overtime_ratio if bucket is not None else Decimal("0")

            hours = Decimal(minutes) / SIXTY
            overtime_hours = hours * ratio
            regular_hours = hours - overtime_hours

            rate = hourly_rate(profile, self.annual_hours)
            cost = regular_hours * rate + overtime_hours * rate * multiplier

            key = key_fn(record, profile)
            group = groups.get(key)
            if group is None:
                group = groups[key] = CostGroup(key=key)
            group.add(regular_hours, overtime_hours, cost, record.employee_id)

        return {key: group.finalize() for key, group in groups.items()}


# ===========================================
# REPORT
# ===========================================

@dataclass
class LaborCostReport:
    """Standard labor cost views for a period."""

    start_date: date
    end_date: date
    by_warehouse_role: List[CostGroup]
    by_employee: List[CostGroup]
    by_task_type: List[CostGroup]
    total_hours: Decimal
    regular_hours: Decimal
    overtime_hours: Decimal
    total_cost: Decimal
    task_count: int
    employee_count: int
    allocation: OvertimeAllocation


def build_labor_report(
    records: List[TaskTimeEntry],
    profiles: Mapping[uuid.UUID, EmployeePay],
    start_date: date,
    end_date: date,
    labor_settings: Optional[LaborSettings] = None,
    warehouse_ids: Optional[Iterable[uuid.UUID]] = None,
    employee_ids: Optional[Iterable[uuid.UUID]] = None,
    task_types: Optional[Iterable[str]] = None,
    roles: Optional[Iterable[str]] = None,
) -> LaborCostReport:
    """
    Build the warehouse+role, employee and task type views.

    Overtime is computed over every record in the period; the filters
    narrow only the cost views.
    """
    labor_settings = labor_settings or LaborSettings()

    allocation = OvertimeAllocator(labor_settings.week_starts_on).allocate(
        records,
        profiles,
        labor_settings.standard_weekly_minutes,
        labor_settings.overtime_multiplier,
    )
    filtered = filter_records(records, profiles, warehouse_ids, employee_ids, task_types, roles)

    allocator = CostAllocator(labor_settings.salary_annual_hours)
    by_warehouse_role = allocator.allocate_cost(filtered, allocation, profiles, group_key=WarehouseRoleKey())
    by_employee = allocator.allocate_cost(filtered, allocation, profiles, group_key=EmployeeKey())
    by_task_type = allocator.allocate_cost(filtered, allocation, profiles, group_key=TaskTypeKey())

    employee_groups = list(by_employee.values())
    distinct_employees = {
        employee_id for group in employee_groups for employee_id in group.employee_ids
    }

    return LaborCostReport(
        start_date=start_date,
        end_date=end_date,
        by_warehouse_role=sorted(by_warehouse_role.values(), key=lambda g: g.key),
        by_employee=sorted(employee_groups, key=lambda g: (-g.cost, str(g.key))),
        by_task_type=sorted(by_task_type.values(), key=lambda g: (-g.cost, str(g.key))),
        total_hours=sum((g.total_hours for g in employee_groups), ZERO),
        regular_hours=sum((g.regular_hours for g in employee_groups), ZERO),
        overtime_hours=sum((g.overtime_hours for g in employee_groups), ZERO),
        total_cost=sum((g.cost for g in employee_groups), ZERO),
        task_count=sum(g.count for g in employee_groups),
        employee_count=len(distinct_employees),
        allocation=allocation,
    )
