"""
WMS Billing Core - Overtime Allocator

Splits completed-task minutes into regular and overtime buckets per
employee. Minutes are grouped by week; within a week, minutes beyond the
standard workweek are overtime. Only overtime-eligible employees get an
overtime bucket; everyone else is all regular time.

Pure: the same inputs always produce the same allocation, so it can be
re-run for "what-if" views without touching storage.
"""

import calendar
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, Mapping, Optional

from app.models.labor import EmployeePay, TaskTimeEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LaborSettings:
    """Labor costing parameters for a tenant."""

    standard_workweek_hours: Decimal = Decimal("40")
    overtime_multiplier: Decimal = Decimal("1.5")
    week_starts_on: int = calendar.SUNDAY
    salary_annual_hours: Decimal = Decimal("2080")

    @property
    def standard_weekly_minutes(self) -> int:
        return int(self.standard_workweek_hours * 60)

    @classmethod
    def from_settings(cls, settings) -> "LaborSettings":
        return cls(
            standard_workweek_hours=Decimal(str(settings.standard_workweek_hours)),
            overtime_multiplier=Decimal(str(settings.overtime_multiplier)),
            week_starts_on=settings.labor_week_starts_on,
            salary_annual_hours=Decimal(str(settings.salary_annual_hours)),
        )


@dataclass
class OvertimeBucket:
    regular_minutes: int = 0
    overtime_minutes: int = 0

    @property
    def total_minutes(self) -> int:
        return self.regular_minutes + self.overtime_minutes

    @property
    def overtime_ratio(self) -> Decimal:
        """Share of the employee's minutes that are overtime."""
        if self.total_minutes <= 0:
            return Decimal("0")
        return Decimal(self.overtime_minutes) / Decimal(self.total_minutes)


@dataclass
class OvertimeAllocation:
    """Per-employee buckets plus the parameters they were computed with."""

    buckets: Dict[uuid.UUID, OvertimeBucket]
    standard_weekly_minutes: int
    overtime_multiplier: Decimal
    week_starts_on: int
    weekly_minutes: Dict[uuid.UUID, Dict[date, int]] = field(default_factory=dict)

    def __getitem__(self, employee_id: uuid.UUID) -> OvertimeBucket:
        return self.buckets[employee_id]

    def __contains__(self, employee_id: uuid.UUID) -> bool:
        return employee_id in self.buckets

    def __len__(self) -> int:
        return len(self.buckets)

    def get(self, employee_id: uuid.UUID) -> Optional[OvertimeBucket]:
        return self.buckets.get(employee_id)

    def items(self):
        return self.buckets.items()

    @property
    def total_overtime_minutes(self) -> int:
        return sum(bucket.overtime_minutes for bucket in self.buckets.values())


def week_start(moment: datetime, week_starts_on: int = calendar.SUNDAY) -> date:
    """
    First day of the week containing moment.

    week_starts_on uses Python weekday numbering (Monday=0, Sunday=6).
    """
    day = moment.date() if isinstance(moment, datetime) else moment
    return day - timedelta(days=(day.weekday() - week_starts_on) % 7)


class OvertimeAllocator:
    """Weekly overtime split over completed-task records."""

    def __init__(self, week_starts_on: int = calendar.SUNDAY):
        if not 0 <= week_starts_on <= 6:
            raise ValueError(f"week_starts_on must be 0-6, got {week_starts_on}")
        self.week_starts_on = week_starts_on

    def allocate(
        self,
        records: Iterable[TaskTimeEntry],
        profiles: Mapping[uuid.UUID, EmployeePay],
        standard_weekly_minutes: int,
        overtime_multiplier: Decimal = Decimal("1.5"),
    ) -> OvertimeAllocation:
        """
        Allocate minutes into regular/overtime buckets per employee.

        Records without an employee, without a positive duration or without
        a completion timestamp are ignored.
        """
        weekly: Dict[uuid.UUID, Dict[date, int]] = {}
        for record in records:
            if record.employee_id is None or record.completed_at is None:
                continue
            minutes = int(record.duration_minutes or 0)
            if minutes <= 0:
                continue
            week = week_start(record.completed_at, self.week_starts_on)
            employee_weeks = weekly.setdefault(record.employee_id, {})
            employee_weeks[week] = employee_weeks.get(week, 0) + minutes

        buckets: Dict[uuid.UUID, OvertimeBucket] = {}
        for employee_id, weeks in weekly.items():
            profile = profiles.get(employee_id)
            eligible = profile is not None and bool(profile.overtime_eligible)
            bucket = OvertimeBucket()

            for minutes in weeks.values():
                if eligible and minutes > standard_weekly_minutes:
                    bucket.regular_minutes += standard_weekly_minutes
                    bucket.overtime_minutes += minutes - standard_weekly_minutes
                else:
                    bucket.regular_minutes += minutes

            buckets[employee_id] = bucket

        allocation = OvertimeAllocation(
            buckets=buckets,
            standard_weekly_minutes=standard_weekly_minutes,
            overtime_multiplier=Decimal(str(overtime_multiplier)),
            week_starts_on=self.week_starts_on,
            weekly_minutes=weekly,
        )
        logger.debug(
            f"Allocated {len(buckets)} employees, {allocation.total_overtime_minutes} overtime minutes"
        )
        return allocation
