"""Service-length eligibility for gated leave categories (e.g. long service)."""

from __future__ import annotations

import calendar
from datetime import date, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from hr_leave.common.constants import DAYS_PER_YEAR_OF_SERVICE
from hr_leave.leave.schemas import EligibilityResult

if TYPE_CHECKING:
    from hr_leave.core_hr.models import Employee
    from hr_leave.leave.models import LeavePolicy


def add_years(start: date, years: Decimal) -> date:
    """Calendar-year addition; 29 Feb lands on 28 Feb in non-leap years.

    A fractional minimum (e.g. 7.5 years) adds the whole years by calendar
    and the remainder as 365.25-day years.
    """
    whole = int(years)
    target_year = start.year + whole
    day = start.day
    if start.month == 2 and day == 29 and not calendar.isleap(target_year):
        day = 28
    result = start.replace(year=target_year, day=day)

    fraction = Decimal(years) - whole
    if fraction:
        result += timedelta(days=int(fraction * DAYS_PER_YEAR_OF_SERVICE))
    return result


def years_of_service(service_start: date, as_of: date) -> Decimal:
    return Decimal((as_of - service_start).days) / DAYS_PER_YEAR_OF_SERVICE


def is_eligible(
    employee: Employee,
    policy: LeavePolicy,
    as_of: Optional[date] = None,
) -> EligibilityResult:
    """Whether the employee may accrue and use the policy's leave category.

    Policies without ``min_service_years_before_accrual`` are always eligible.
    """
    as_of = as_of or date.today()
    service_start = employee.service_start
    years = years_of_service(service_start, as_of) if service_start else Decimal("0")
    min_years = policy.min_service_years_before_accrual

    if min_years is None:
        return EligibilityResult(eligible=True, years_of_service=years)

    min_years = Decimal(min_years)
    if service_start is None:
        return EligibilityResult(eligible=False, years_of_service=years, min_years=min_years)

    # Eligible from the calendar anniversary on, even where 365.25-day years
    # still fall just short of the minimum.
    eligibility_date = add_years(service_start, min_years)
    return EligibilityResult(
        eligible=years >= min_years or as_of >= eligibility_date,
        years_of_service=years,
        min_years=min_years,
        eligibility_date=eligibility_date,
    )
