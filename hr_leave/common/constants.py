"""Enums and constants for the leave engine — matching PostgreSQL ENUM types."""

from __future__ import annotations

import enum
from decimal import Decimal


# ── Employee / Core HR ──────────────────────────────────────────────

class EmploymentType(str, enum.Enum):
    full_time = "full_time"
    part_time = "part_time"
    casual = "casual"
    contractor = "contractor"


class EmploymentStatus(str, enum.Enum):
    active = "active"
    on_leave = "on_leave"
    terminated = "terminated"


# ── Auth / Roles ────────────────────────────────────────────────────

class UserRole(str, enum.Enum):
    employee = "employee"
    manager = "manager"
    hr_admin = "hr_admin"
    system_admin = "system_admin"


# ── Leave ───────────────────────────────────────────────────────────

class LeaveCategory(str, enum.Enum):
    annual = "annual"
    personal = "personal"
    sick = "sick"
    long_service = "long_service"
    parental = "parental"
    compassionate = "compassionate"
    other = "other"


class AccrualUnit(str, enum.Enum):
    hours_per_year = "hours_per_year"
    weeks_per_year = "weeks_per_year"
    days_per_year = "days_per_year"


class PartialDayType(str, enum.Enum):
    full = "full"
    half_start = "half_start"
    half_end = "half_end"


class LeaveStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    declined = "declined"
    cancelled = "cancelled"


class LedgerEntryType(str, enum.Enum):
    deduction = "deduction"
    restoration = "restoration"
    adjustment = "adjustment"
    accrual = "accrual"


class CalendarDayKind(str, enum.Enum):
    working = "working"
    weekend = "weekend"
    holiday = "holiday"


class LeaveResultCode(str, enum.Enum):
    """Discriminated outcomes of a leave request transition."""

    ok = "OK"
    insufficient_balance = "INSUFFICIENT_BALANCE"
    overlapping_leave = "OVERLAPPING_LEAVE"
    casual_cannot_take_paid_leave = "CASUAL_CANNOT_TAKE_PAID_LEAVE"
    not_authorized = "NOT_AUTHORIZED"
    employee_not_found = "EMPLOYEE_NOT_FOUND"
    already_decided = "ALREADY_DECIDED"
    not_eligible = "NOT_ELIGIBLE"
    request_not_found = "REQUEST_NOT_FOUND"
    leave_already_started = "LEAVE_ALREADY_STARTED"


# ── Role-based capabilities ─────────────────────────────────────────

PERMISSIONS: dict[UserRole, list[str]] = {
    UserRole.employee: [
        "leave:request",
        "leave:read_own",
        "leave:cancel_own",
    ],
    UserRole.manager: [
        "leave:request",
        "leave:read_own",
        "leave:read_team",
        "leave:cancel_own",
        "leave:approve",
        "leave:decline",
        "leave:staffing",
    ],
    UserRole.hr_admin: [
        "leave:request",
        "leave:request_on_behalf",
        "leave:read_own",
        "leave:read_team",
        "leave:read_all",
        "leave:cancel_own",
        "leave:cancel_any",
        "leave:cancel_started",
        "leave:approve",
        "leave:decline",
        "leave:staffing",
        "leave:adjust_balance",
        "leave:reconcile",
    ],
    UserRole.system_admin: [
        "leave:request",
        "leave:request_on_behalf",
        "leave:read_own",
        "leave:read_team",
        "leave:read_all",
        "leave:cancel_own",
        "leave:cancel_any",
        "leave:cancel_started",
        "leave:approve",
        "leave:decline",
        "leave:staffing",
        "leave:adjust_balance",
        "leave:reconcile",
        "leave:reset_balance",
    ],
}

# ── Misc constants ──────────────────────────────────────────────────

DEFAULT_STANDARD_HOURS_PER_DAY = Decimal("7.6")
DEFAULT_HOURS_PER_WEEK = Decimal("38")   # AU full-time reference
DAYS_PER_YEAR_OF_SERVICE = Decimal("365.25")
WEEKEND_DAYS = frozenset({5, 6})         # Saturday, Sunday
