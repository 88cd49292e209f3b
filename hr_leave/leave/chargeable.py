"""Chargeable-leave calculation.

Walks each calendar day of a requested range, skips weekends and matching
public holidays, and charges one day per remaining working day (half a day
on the first/last day for ``half_start``/``half_end``).
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional

from hr_leave.common.constants import CalendarDayKind, PartialDayType
from hr_leave.common.exceptions import InvalidDateRangeException
from hr_leave.holidays.calendar import (
    CalendarSubject,
    HolidaySet,
    is_weekend,
    iter_days,
)
from hr_leave.leave.schemas import ChargeableDay, ChargeableLeaveResult

FULL_DAY = Decimal("1.0")
HALF_DAY = Decimal("0.5")
NO_CHARGE = Decimal("0")


def _day_charge(
    day: date,
    start: date,
    end: date,
    partial_day_type: PartialDayType,
) -> Decimal:
    if day == start and partial_day_type == PartialDayType.half_start:
        return HALF_DAY
    if day == end and partial_day_type == PartialDayType.half_end:
        return HALF_DAY
    return FULL_DAY


def calculate_chargeable_leave(
    start: date,
    end: date,
    employee: CalendarSubject,
    partial_day_type: PartialDayType = PartialDayType.full,
    holidays: Optional[HolidaySet] = None,
) -> ChargeableLeaveResult:
    """Return the chargeable-day total for [start, end] plus a per-day breakdown.

    Pure given ``holidays``: two calls with the same set always agree.
    """
    if end < start:
        raise InvalidDateRangeException(start, end)

    holidays = holidays if holidays is not None else HolidaySet.empty()
    total = NO_CHARGE
    breakdown: list[ChargeableDay] = []

    for day in iter_days(start, end):
        if is_weekend(day):
            breakdown.append(
                ChargeableDay(date=day, kind=CalendarDayKind.weekend, charge=NO_CHARGE)
            )
            continue

        holiday = holidays.holiday_on(day, employee)
        if holiday is not None:
            breakdown.append(
                ChargeableDay(
                    date=day,
                    kind=CalendarDayKind.holiday,
                    charge=NO_CHARGE,
                    holiday_name=holiday.name,
                )
            )
            continue

        charge = _day_charge(day, start, end, partial_day_type)
        total += charge
        breakdown.append(ChargeableDay(date=day, kind=CalendarDayKind.working, charge=charge))

    return ChargeableLeaveResult(chargeable_days=total, breakdown=breakdown)
