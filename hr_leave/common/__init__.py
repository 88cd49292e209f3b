"""Common module — shared enums and exceptions for the leave engine."""

from hr_leave.common.constants import (
    PERMISSIONS,
    AccrualUnit,
    CalendarDayKind,
    EmploymentStatus,
    EmploymentType,
    LeaveCategory,
    LeaveResultCode,
    LeaveStatus,
    LedgerEntryType,
    PartialDayType,
    UserRole,
)
from hr_leave.common.exceptions import (
    AppException,
    ForbiddenException,
    InsufficientBalanceException,
    InvalidDateRangeException,
    LeaveRuleViolation,
    NotFoundException,
    ServiceUnavailableException,
    UnauthorizedException,
    ValidationException,
    register_exception_handlers,
)

__all__ = [
    # Constants / Enums
    "AccrualUnit",
    "CalendarDayKind",
    "EmploymentStatus",
    "EmploymentType",
    "LeaveCategory",
    "LeaveResultCode",
    "LeaveStatus",
    "LedgerEntryType",
    "PartialDayType",
    "UserRole",
    "PERMISSIONS",
    # Exceptions
    "AppException",
    "ForbiddenException",
    "InsufficientBalanceException",
    "InvalidDateRangeException",
    "LeaveRuleViolation",
    "NotFoundException",
    "ServiceUnavailableException",
    "UnauthorizedException",
    "ValidationException",
    "register_exception_handlers",
]
