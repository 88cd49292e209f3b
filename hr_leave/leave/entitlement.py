"""FTE and pro-rata entitlement calculations.

Read-only over Employee and LeavePolicy. Values are returned at full
precision except ``fte`` itself, which is a 2 dp ratio by definition.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Optional

from hr_leave.common.constants import (
    DEFAULT_HOURS_PER_WEEK,
    DEFAULT_STANDARD_HOURS_PER_DAY,
    AccrualUnit,
    EmploymentType,
)
from hr_leave.leave.schemas import FTEResult, ProRataEntitlement

if TYPE_CHECKING:
    from hr_leave.core_hr.models import Employee
    from hr_leave.leave.models import LeavePolicy

ONE = Decimal("1")
HUNDRED = Decimal("100")
FTE_PLACES = Decimal("0.01")


def _full_time_hours(policy: Optional[LeavePolicy]) -> Decimal:
    if policy is not None and policy.hours_per_week_reference:
        return Decimal(policy.hours_per_week_reference)
    return DEFAULT_HOURS_PER_WEEK


def _standard_hours_per_day(policy: LeavePolicy) -> Decimal:
    if policy.standard_hours_per_day:
        return Decimal(policy.standard_hours_per_day)
    return DEFAULT_STANDARD_HOURS_PER_DAY


def _percent(ratio: Decimal) -> int:
    return int((ratio * HUNDRED).quantize(ONE, rounding=ROUND_HALF_UP))


def calculate_fte(employee: Employee, policy: Optional[LeavePolicy] = None) -> FTEResult:
    """Fraction of the policy's full-time week the employee is contracted for.

    full_time is always 1.0; part_time needs ``hours_per_week``; casual and
    contractor staff have no FTE and therefore no defined entitlement.
    """
    full_time_hours = _full_time_hours(policy)
    hours = Decimal(employee.hours_per_week) if employee.hours_per_week else None

    if employee.employment_type == EmploymentType.full_time:
        return FTEResult(
            fte=ONE,
            fte_percent=100,
            hours_per_week=hours or full_time_hours,
            full_time_hours=full_time_hours,
            is_pro_rata=False,
        )

    if employee.employment_type == EmploymentType.part_time and hours:
        ratio = hours / full_time_hours
        return FTEResult(
            fte=ratio.quantize(FTE_PLACES, rounding=ROUND_HALF_UP),
            fte_percent=_percent(ratio),
            hours_per_week=hours,
            full_time_hours=full_time_hours,
            is_pro_rata=True,
        )

    return FTEResult(
        fte=None,
        fte_percent=None,
        hours_per_week=hours,
        full_time_hours=full_time_hours,
        is_pro_rata=employee.employment_type == EmploymentType.part_time,
    )


def base_days_per_year(policy: LeavePolicy) -> Decimal:
    """Normalize the policy's accrual rate to full-time days per year."""
    rate = Decimal(policy.accrual_rate or 0)
    per_day = _standard_hours_per_day(policy)

    if policy.accrual_unit == AccrualUnit.hours_per_year:
        return rate / per_day
    if policy.accrual_unit == AccrualUnit.weeks_per_year:
        return (rate * _full_time_hours(policy)) / per_day
    return rate


def calculate_pro_rata_entitlement(
    policy: LeavePolicy,
    fte: FTEResult,
) -> ProRataEntitlement:
    per_day = _standard_hours_per_day(policy)
    base_days = base_days_per_year(policy)
    pro_rata_days = base_days * (fte.fte if fte.fte is not None else ONE)

    return ProRataEntitlement(
        base_days_per_year=base_days,
        base_hours_per_year=base_days * per_day,
        pro_rata_days=pro_rata_days,
        pro_rata_hours=pro_rata_days * per_day,
        standard_hours_per_day=per_day,
    )


def hours_to_days(hours: Decimal, standard_hours_per_day: Optional[Decimal] = None) -> Decimal:
    per_day = Decimal(standard_hours_per_day or DEFAULT_STANDARD_HOURS_PER_DAY)
    return Decimal(hours) / per_day


def days_to_hours(days: Decimal, standard_hours_per_day: Optional[Decimal] = None) -> Decimal:
    per_day = Decimal(standard_hours_per_day or DEFAULT_STANDARD_HOURS_PER_DAY)
    return Decimal(days) * per_day
