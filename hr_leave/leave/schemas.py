"""Leave Pydantic v2 schemas — request / response validation.

Naming conventions:
  - *Create / *Request  → request bodies (write)
  - *Out / *Result      → response bodies (read)
  - *Brief              → compact embedded representations

Durations are decimal hours. Calculations keep full precision; the
``Presented`` annotation rounds to 2 dp only when a model is serialized.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    field_validator,
    model_validator,
)

from hr_leave.common.constants import (
    AccrualUnit,
    CalendarDayKind,
    EmploymentType,
    LeaveCategory,
    LeaveResultCode,
    LeaveStatus,
    PERMISSIONS,
    PartialDayType,
    UserRole,
)

TWO_PLACES = Decimal("0.01")


def round_for_display(value: Optional[Decimal]) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


Presented = Annotated[Decimal, PlainSerializer(round_for_display, return_type=Decimal)]


# ═════════════════════════════════════════════════════════════════════
# Actor
# ═════════════════════════════════════════════════════════════════════


class Actor(BaseModel):
    """Who is acting, and what their role lets them do."""

    model_config = ConfigDict(frozen=True)

    employee_id: uuid.UUID
    role: UserRole = UserRole.employee
    capabilities: frozenset[str] = frozenset()

    @classmethod
    def for_role(cls, employee_id: uuid.UUID, role: UserRole) -> Actor:
        return cls(
            employee_id=employee_id,
            role=role,
            capabilities=frozenset(PERMISSIONS.get(role, [])),
        )

    def can(self, capability: str) -> bool:
        return capability in self.capabilities


# ═════════════════════════════════════════════════════════════════════
# Embedded / shared
# ═════════════════════════════════════════════════════════════════════


class EmployeeBrief(BaseModel):
    """Minimal employee info embedded in leave responses."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    employee_code: str
    display_name: str
    employment_type: EmploymentType
    department_id: Optional[uuid.UUID] = None
    entity_id: uuid.UUID


class LeaveTypeBrief(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    code: str
    name: str
    category: LeaveCategory
    is_paid: bool = True


class LeavePolicyBrief(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    leave_type: LeaveCategory
    accrual_unit: AccrualUnit
    accrual_rate: Decimal
    standard_hours_per_day: Decimal
    hours_per_week_reference: Decimal
    min_service_years_before_accrual: Optional[Decimal] = None
    allow_negative_balance: bool = False


# ═════════════════════════════════════════════════════════════════════
# Chargeable leave
# ═════════════════════════════════════════════════════════════════════


class ChargeableDay(BaseModel):
    """One calendar day of a requested range."""

    date: date
    kind: CalendarDayKind
    charge: Decimal
    holiday_name: Optional[str] = None


class ChargeableLeaveResult(BaseModel):
    chargeable_days: Decimal
    breakdown: list[ChargeableDay] = Field(default_factory=list)

    @property
    def working_days(self) -> int:
        return sum(1 for d in self.breakdown if d.kind == CalendarDayKind.working)


class ChargeablePreviewRequest(BaseModel):
    """Payload for previewing a request before submission."""

    employee_id: uuid.UUID
    start_date: date
    end_date: date
    partial_day_type: PartialDayType = PartialDayType.full


# ═════════════════════════════════════════════════════════════════════
# Entitlement / eligibility
# ═════════════════════════════════════════════════════════════════════


class FTEResult(BaseModel):
    fte: Optional[Decimal] = None
    fte_percent: Optional[int] = None
    hours_per_week: Optional[Decimal] = None
    full_time_hours: Decimal
    is_pro_rata: bool = False


class ProRataEntitlement(BaseModel):
    base_days_per_year: Presented
    base_hours_per_year: Presented
    pro_rata_days: Presented
    pro_rata_hours: Presented
    standard_hours_per_day: Decimal


class EligibilityResult(BaseModel):
    eligible: bool
    years_of_service: Presented
    min_years: Optional[Decimal] = None
    eligibility_date: Optional[date] = None


# ═════════════════════════════════════════════════════════════════════
# Leave Balance
# ═════════════════════════════════════════════════════════════════════


class LeaveBalanceOut(BaseModel):
    """Ledger row plus fields computed by the service."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    employee_id: uuid.UUID
    leave_type: LeaveCategory
    opening_balance_hours: Presented
    accrued_hours: Presented
    taken_hours: Presented
    adjusted_hours: Presented
    available_hours: Presented

    # Computed fields — filled by service, not from ORM
    pending_hours: Presented = Decimal("0")
    available_days: Optional[Presented] = None


class BalanceAdjustRequest(BaseModel):
    delta_hours: Decimal = Field(..., description="Signed hours to add to the balance")
    reason: str = Field(..., min_length=3, max_length=500)

    @field_validator("delta_hours")
    @classmethod
    def _non_zero(cls, v: Decimal) -> Decimal:
        if v == 0:
            raise ValueError("Adjustment must be non-zero.")
        return v


# ═════════════════════════════════════════════════════════════════════
# Leave Request
# ═════════════════════════════════════════════════════════════════════


class LeaveRequestCreate(BaseModel):
    """Payload for submitting a leave request."""

    employee_id: Optional[uuid.UUID] = Field(
        None, description="Defaults to the authenticated employee"
    )
    leave_type_id: uuid.UUID
    start_date: date = Field(..., description="Leave start date (inclusive)")
    end_date: date = Field(..., description="Leave end date (inclusive)")
    partial_day_type: PartialDayType = PartialDayType.full
    reason: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def _check_range(self) -> LeaveRequestCreate:
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class LeaveRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    employee_id: uuid.UUID
    leave_type_id: uuid.UUID
    start_date: date
    end_date: date
    partial_day_type: PartialDayType
    status: LeaveStatus
    chargeable_days: Decimal
    chargeable_hours: Presented
    manager_id: Optional[uuid.UUID] = None
    reason: Optional[str] = None
    decision_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    decided_by: Optional[uuid.UUID] = None
    decided_at: Optional[datetime] = None
    cancelled_by: Optional[uuid.UUID] = None
    cancelled_at: Optional[datetime] = None
    version: int


class LeaveApproveRequest(BaseModel):
    remarks: Optional[str] = Field(None, max_length=1000)


class LeaveDeclineRequest(BaseModel):
    reason: str = Field(..., max_length=1000)


class LeaveCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class LeaveActionResult(BaseModel):
    """Outcome of a state-machine operation; callers branch on ``code``."""

    success: bool
    code: LeaveResultCode
    message: Optional[str] = None
    request: Optional[LeaveRequestOut] = None

    @classmethod
    def ok(cls, request: LeaveRequestOut, message: Optional[str] = None) -> LeaveActionResult:
        return cls(success=True, code=LeaveResultCode.ok, message=message, request=request)

    @classmethod
    def fail(
        cls,
        code: LeaveResultCode,
        message: str,
        request: Optional[LeaveRequestOut] = None,
    ) -> LeaveActionResult:
        return cls(success=False, code=code, message=message, request=request)


# ═════════════════════════════════════════════════════════════════════
# Staffing
# ═════════════════════════════════════════════════════════════════════


class OverlappingLeave(BaseModel):
    request_id: uuid.UUID
    employee_id: uuid.UUID
    employee_name: str
    start_date: date
    end_date: date
    status: LeaveStatus


class StaffingWarning(BaseModel):
    kind: str
    message: str


class StaffingStats(BaseModel):
    scope_label: str
    total_headcount: int
    concurrent_leave_count: int
    active_after_approval: int
    max_concurrent_leave: Optional[int] = None
    min_active_headcount: Optional[int] = None


class StaffingConflictResult(BaseModel):
    has_conflict: bool
    overlapping_leave: list[OverlappingLeave] = Field(default_factory=list)
    warnings: list[StaffingWarning] = Field(default_factory=list)
    stats: Optional[StaffingStats] = None


# ═════════════════════════════════════════════════════════════════════
# Context / cache / reconciliation
# ═════════════════════════════════════════════════════════════════════


class LeaveContextOut(BaseModel):
    """Everything a balance view needs about one employee, in one read."""

    employee: EmployeeBrief
    fte: FTEResult
    policies: dict[LeaveCategory, LeavePolicyBrief] = Field(default_factory=dict)
    balances: dict[LeaveCategory, LeaveBalanceOut] = Field(default_factory=dict)
    entitlements: dict[LeaveCategory, ProRataEntitlement] = Field(default_factory=dict)
    eligibility: dict[LeaveCategory, EligibilityResult] = Field(default_factory=dict)
    cache_version: int = 0


class CacheVersionOut(BaseModel):
    employee_id: uuid.UUID
    version: int


class LedgerDiscrepancy(BaseModel):
    request_id: uuid.UUID
    employee_id: uuid.UUID
    status: LeaveStatus
    kind: str
    detail: str


class ReconciliationReport(BaseModel):
    checked_requests: int
    discrepancies: list[LedgerDiscrepancy] = Field(default_factory=list)
