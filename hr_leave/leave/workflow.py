"""Leave request state machine and lifecycle operations.

Allowed transitions:
- pending  → approved | declined | cancelled
- approved → cancelled (recall)
- declined, cancelled: terminal

Status writes are compare-and-set: ``UPDATE … WHERE id = :id AND status =
:expected AND version = :version``. When two approvers race, exactly one
UPDATE matches; the other gets ``ALREADY_DECIDED`` and never reaches the
ledger. On approval the status flip and the deduction share a savepoint, so
a deduction that fails leaves the request pending; both then commit with the
caller's unit of work (``get_db``). Cache versions move only after that
commit.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from hr_leave.common.constants import (
    EmploymentType,
    LeaveCategory,
    LeaveResultCode,
    LeaveStatus,
)
from hr_leave.common.exceptions import (
    InsufficientBalanceException,
    InvalidDateRangeException,
    NotFoundException,
    ValidationException,
)
from hr_leave.core_hr.models import Employee
from hr_leave.holidays.calendar import HolidaySet, load_holiday_set
from hr_leave.leave.cache import LeaveCacheVersions
from hr_leave.leave.chargeable import calculate_chargeable_leave
from hr_leave.leave.eligibility import is_eligible
from hr_leave.leave.entitlement import days_to_hours
from hr_leave.leave.ledger import BalanceLedger, get_active_policy
from hr_leave.leave.models import LeavePolicy, LeaveRequest, LeaveType
from hr_leave.leave.schemas import (
    Actor,
    LeaveActionResult,
    LeaveRequestCreate,
    LeaveRequestOut,
)

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (LeaveStatus.pending, LeaveStatus.approved)


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition from '{from_status}' to '{to_status}'")


class LeaveRequestStateMachine:
    """Transition table for LeaveRequest.status."""

    VALID_TRANSITIONS: dict[LeaveStatus, list[LeaveStatus]] = {
        LeaveStatus.pending: [
            LeaveStatus.approved,
            LeaveStatus.declined,
            LeaveStatus.cancelled,
        ],
        LeaveStatus.approved: [LeaveStatus.cancelled],
        LeaveStatus.declined: [],  # Terminal
        LeaveStatus.cancelled: [],  # Terminal
    }

    @classmethod
    def can_transition(cls, from_status: LeaveStatus, to_status: LeaveStatus) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def validate_transition(cls, from_status: LeaveStatus, to_status: LeaveStatus) -> None:
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status.value, to_status.value)

    @classmethod
    def is_terminal(cls, status: LeaveStatus) -> bool:
        return not cls.VALID_TRANSITIONS.get(status)

    @classmethod
    def is_recall(cls, from_status: LeaveStatus, to_status: LeaveStatus) -> bool:
        return from_status == LeaveStatus.approved and to_status == LeaveStatus.cancelled


# ── Helpers ─────────────────────────────────────────────────────────


def _out(request: LeaveRequest) -> LeaveRequestOut:
    return LeaveRequestOut.model_validate(request)


def _hours_for(days: Decimal, policy: Optional[LeavePolicy]) -> Decimal:
    return days_to_hours(days, policy.standard_hours_per_day if policy else None)


def _entitlement_refusal(
    employee: Employee,
    leave_type: LeaveType,
    policy: Optional[LeavePolicy],
    as_of: Optional[date],
    request: Optional[LeaveRequest] = None,
) -> Optional[LeaveActionResult]:
    """Casual and service-length rules, checked at submission and approval."""
    current = _out(request) if request is not None else None
    if leave_type.is_paid and employee.employment_type == EmploymentType.casual:
        return LeaveActionResult.fail(
            LeaveResultCode.casual_cannot_take_paid_leave,
            "Casual employees cannot take paid leave.",
            current,
        )
    if leave_type.is_paid and policy is None:
        return LeaveActionResult.fail(
            LeaveResultCode.not_eligible,
            f"No active {leave_type.category.value} leave policy applies.",
            current,
        )
    if policy is not None:
        eligibility = is_eligible(employee, policy, as_of)
        if not eligibility.eligible:
            return LeaveActionResult.fail(
                LeaveResultCode.not_eligible,
                f"Not eligible for {leave_type.name} until {eligibility.eligibility_date}.",
                current,
            )
    return None


async def load_leave_request(db: AsyncSession, request_id: uuid.UUID) -> Optional[LeaveRequest]:
    result = await db.execute(
        select(LeaveRequest)
        .where(LeaveRequest.id == request_id)
        .options(selectinload(LeaveRequest.leave_type))
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def pending_hours(
    db: AsyncSession,
    employee_id: uuid.UUID,
    category: LeaveCategory,
    *,
    exclude_request_id: Optional[uuid.UUID] = None,
) -> Decimal:
    """Hours already requested but not yet decided for a leave category."""
    query = (
        select(func.coalesce(func.sum(LeaveRequest.chargeable_hours), 0))
        .join(LeaveType, LeaveRequest.leave_type_id == LeaveType.id)
        .where(
            LeaveRequest.employee_id == employee_id,
            LeaveRequest.status == LeaveStatus.pending,
            LeaveType.category == category,
        )
    )
    if exclude_request_id is not None:
        query = query.where(LeaveRequest.id != exclude_request_id)
    return Decimal(str((await db.execute(query)).scalar_one()))


async def find_overlapping_requests(
    db: AsyncSession,
    employee_id: uuid.UUID,
    start: date,
    end: date,
    *,
    exclude_request_id: Optional[uuid.UUID] = None,
) -> list[LeaveRequest]:
    query = select(LeaveRequest).where(
        LeaveRequest.employee_id == employee_id,
        LeaveRequest.status.in_(ACTIVE_STATUSES),
        LeaveRequest.start_date <= end,
        LeaveRequest.end_date >= start,
    )
    if exclude_request_id is not None:
        query = query.where(LeaveRequest.id != exclude_request_id)
    return list((await db.execute(query)).scalars().all())


async def compare_and_set_status(
    db: AsyncSession,
    request: LeaveRequest,
    expected: LeaveStatus,
    target: LeaveStatus,
    **values: Any,
) -> bool:
    """Flip ``request`` from ``expected`` to ``target`` iff nobody else has.

    Matches on both status and version, so a stale in-memory copy can never
    overwrite a newer decision. Returns False when the row had moved on.
    """
    LeaveRequestStateMachine.validate_transition(expected, target)
    result = await db.execute(
        update(LeaveRequest)
        .where(
            LeaveRequest.id == request.id,
            LeaveRequest.status == expected,
            LeaveRequest.version == request.version,
        )
        .values(
            status=target,
            version=LeaveRequest.version + 1,
            updated_at=func.now(),
            **values,
        )
        .returning(LeaveRequest.version)
        .execution_options(synchronize_session=False)
    )
    if result.scalar_one_or_none() is None:
        logger.warning(
            "Compare-and-set lost for leave request %s (%s → %s at version %s)",
            request.id, expected.value, target.value, request.version,
        )
        return False

    await db.refresh(request)
    logger.info(
        "Leave request %s: %s → %s (version %s)",
        request.id, expected.value, target.value, request.version,
    )
    return True


# ═════════════════════════════════════════════════════════════════════
# LeaveWorkflow
# ═════════════════════════════════════════════════════════════════════


class LeaveWorkflow:
    """Async submit / approve / decline / cancel operations.

    Domain-rule outcomes come back as ``LeaveActionResult`` codes; malformed
    input raises before anything is written.
    """

    @staticmethod
    async def submit_leave_request(
        db: AsyncSession,
        body: LeaveRequestCreate,
        actor: Actor,
        cache: LeaveCacheVersions,
        *,
        holidays: Optional[HolidaySet] = None,
        as_of: Optional[date] = None,
    ) -> LeaveActionResult:
        """Validate and create a pending request. No ledger mutation."""
        if body.end_date < body.start_date:
            raise InvalidDateRangeException(body.start_date, body.end_date)

        employee_id = body.employee_id or actor.employee_id
        if not actor.can("leave:request"):
            return LeaveActionResult.fail(
                LeaveResultCode.not_authorized, "You may not request leave."
            )
        if employee_id != actor.employee_id and not actor.can("leave:request_on_behalf"):
            return LeaveActionResult.fail(
                LeaveResultCode.not_authorized,
                "You may not request leave on behalf of another employee.",
            )

        employee = await db.get(Employee, employee_id)
        if employee is None or not employee.is_active:
            return LeaveActionResult.fail(
                LeaveResultCode.employee_not_found, f"Employee {employee_id} not found."
            )

        leave_type = await db.get(LeaveType, body.leave_type_id)
        if (
            leave_type is None
            or not leave_type.is_active
            or leave_type.entity_id != employee.entity_id
        ):
            raise NotFoundException("LeaveType", body.leave_type_id)

        policy = await get_active_policy(db, employee.entity_id, leave_type.category)
        refused = _entitlement_refusal(employee, leave_type, policy, as_of)
        if refused is not None:
            return refused

        if holidays is None:
            holidays = await load_holiday_set(db, employee, body.start_date, body.end_date)
        chargeable = calculate_chargeable_leave(
            body.start_date, body.end_date, employee, body.partial_day_type, holidays,
        )
        if chargeable.chargeable_days == 0:
            raise ValidationException(
                {"start_date": ["The selected dates contain no working days."]}
            )

        if await find_overlapping_requests(db, employee.id, body.start_date, body.end_date):
            return LeaveActionResult.fail(
                LeaveResultCode.overlapping_leave,
                "Another pending or approved request overlaps these dates.",
            )

        hours = _hours_for(chargeable.chargeable_days, policy)

        if leave_type.is_paid:
            await BalanceLedger.ensure_leave_balances(db, employee.id, as_of=as_of)
            balance = await BalanceLedger.get_balance(db, employee.id, leave_type.category)
            available = Decimal(balance.available_hours) if balance else Decimal("0")
            committed = await pending_hours(db, employee.id, leave_type.category)
            if not policy.allow_negative_balance and available - committed < hours:
                return LeaveActionResult.fail(
                    LeaveResultCode.insufficient_balance,
                    f"Insufficient {leave_type.category.value} balance. "
                    f"Available: {available - committed}h, Requested: {hours}h.",
                )

        request = LeaveRequest(
            employee_id=employee.id,
            leave_type_id=leave_type.id,
            start_date=body.start_date,
            end_date=body.end_date,
            partial_day_type=body.partial_day_type,
            status=LeaveStatus.pending,
            chargeable_days=chargeable.chargeable_days,
            chargeable_hours=hours,
            manager_id=employee.manager_id,
            reason=body.reason,
            version=1,
        )
        db.add(request)
        await db.flush()
        await db.refresh(request)

        logger.info(
            "Leave request %s submitted for employee %s: %s days of %s",
            request.id, employee.id, chargeable.chargeable_days, leave_type.code,
        )
        cache.invalidate_on_commit(db, employee.id)
        return LeaveActionResult.ok(_out(request), "Leave request submitted.")

    @staticmethod
    async def approve_leave_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor: Actor,
        cache: LeaveCacheVersions,
        *,
        remarks: Optional[str] = None,
        as_of: Optional[date] = None,
    ) -> LeaveActionResult:
        """Recompute with current holidays, flip to approved, deduct once."""
        if not actor.can("leave:approve"):
            return LeaveActionResult.fail(
                LeaveResultCode.not_authorized, "You may not approve leave."
            )

        request = await load_leave_request(db, request_id)
        if request is None:
            return LeaveActionResult.fail(
                LeaveResultCode.request_not_found, f"Leave request {request_id} not found."
            )
        if not LeaveRequestStateMachine.can_transition(request.status, LeaveStatus.approved):
            return LeaveActionResult.fail(
                LeaveResultCode.already_decided,
                f"Leave request is already {request.status.value}.",
                _out(request),
            )

        employee = await db.get(Employee, request.employee_id, populate_existing=True)
        if employee is None:
            return LeaveActionResult.fail(
                LeaveResultCode.employee_not_found,
                f"Employee {request.employee_id} not found.",
            )

        leave_type = request.leave_type
        policy = await get_active_policy(db, employee.entity_id, leave_type.category)
        # Employment type or service rules may have changed since submission
        refused = _entitlement_refusal(employee, leave_type, policy, as_of, request)
        if refused is not None:
            return refused

        # Holiday data may have changed since submission
        holidays = await load_holiday_set(db, employee, request.start_date, request.end_date)
        chargeable = calculate_chargeable_leave(
            request.start_date, request.end_date, employee, request.partial_day_type, holidays,
        )
        hours = _hours_for(chargeable.chargeable_days, policy)
        allow_negative = bool(policy and policy.allow_negative_balance)

        if leave_type.is_paid and hours > 0 and not allow_negative:
            balance = await BalanceLedger.get_balance(db, employee.id, leave_type.category)
            available = Decimal(balance.available_hours) if balance else Decimal("0")
            if available < hours:
                return LeaveActionResult.fail(
                    LeaveResultCode.insufficient_balance,
                    f"Insufficient {leave_type.category.value} balance. "
                    f"Available: {available}h, Requested: {hours}h.",
                    _out(request),
                )

        # The status flip and the deduction succeed or roll back together
        try:
            async with db.begin_nested():
                won = await compare_and_set_status(
                    db,
                    request,
                    LeaveStatus.pending,
                    LeaveStatus.approved,
                    chargeable_days=chargeable.chargeable_days,
                    chargeable_hours=hours,
                    decided_by=actor.employee_id,
                    decided_at=datetime.now(timezone.utc),
                    decision_reason=remarks,
                )
                if won and leave_type.is_paid and hours > 0:
                    await BalanceLedger.deduct(
                        db,
                        employee.id,
                        leave_type.category,
                        hours,
                        request_id=request.id,
                        allow_negative=allow_negative,
                        reason=f"Approved leave {request.start_date} – {request.end_date}",
                    )
        except InsufficientBalanceException as exc:
            logger.warning(
                "Approval of leave request %s rolled back: %s", request_id, exc.detail,
            )
            current = await load_leave_request(db, request_id)
            return LeaveActionResult.fail(
                LeaveResultCode.insufficient_balance,
                f"Insufficient {leave_type.category.value} balance. "
                f"Available: {exc.available_hours}h, Requested: {hours}h.",
                _out(current) if current else None,
            )

        if not won:
            current = await load_leave_request(db, request_id)
            return LeaveActionResult.fail(
                LeaveResultCode.already_decided,
                "Leave request was decided by someone else.",
                _out(current) if current else None,
            )

        cache.invalidate_on_commit(db, employee.id)
        return LeaveActionResult.ok(_out(request), "Leave request approved.")

    @staticmethod
    async def decline_leave_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor: Actor,
        cache: LeaveCacheVersions,
        reason: str,
    ) -> LeaveActionResult:
        if not reason or not reason.strip():
            raise ValidationException({"reason": ["A reason is required to decline leave."]})
        if not actor.can("leave:decline"):
            return LeaveActionResult.fail(
                LeaveResultCode.not_authorized, "You may not decline leave."
            )

        request = await load_leave_request(db, request_id)
        if request is None:
            return LeaveActionResult.fail(
                LeaveResultCode.request_not_found, f"Leave request {request_id} not found."
            )
        if not LeaveRequestStateMachine.can_transition(request.status, LeaveStatus.declined):
            return LeaveActionResult.fail(
                LeaveResultCode.already_decided,
                f"Leave request is already {request.status.value}.",
                _out(request),
            )

        won = await compare_and_set_status(
            db,
            request,
            LeaveStatus.pending,
            LeaveStatus.declined,
            decided_by=actor.employee_id,
            decided_at=datetime.now(timezone.utc),
            decision_reason=reason.strip(),
        )
        if not won:
            return LeaveActionResult.fail(
                LeaveResultCode.already_decided, "Leave request was decided by someone else."
            )

        cache.invalidate_on_commit(db, request.employee_id)
        return LeaveActionResult.ok(_out(request), "Leave request declined.")

    @staticmethod
    async def cancel_leave_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor: Actor,
        cache: LeaveCacheVersions,
        *,
        reason: Optional[str] = None,
        today: Optional[date] = None,
    ) -> LeaveActionResult:
        """Cancel a pending request, or recall an approved one and restore
        exactly the hours its approval deducted."""
        today = today or date.today()

        request = await load_leave_request(db, request_id)
        if request is None:
            return LeaveActionResult.fail(
                LeaveResultCode.request_not_found, f"Leave request {request_id} not found."
            )

        is_owner = request.employee_id == actor.employee_id
        if not (actor.can("leave:cancel_any") or (is_owner and actor.can("leave:cancel_own"))):
            return LeaveActionResult.fail(
                LeaveResultCode.not_authorized, "You may not cancel this leave request."
            )

        previous = request.status
        category = request.leave_type.category
        if not LeaveRequestStateMachine.can_transition(previous, LeaveStatus.cancelled):
            return LeaveActionResult.fail(
                LeaveResultCode.already_decided,
                f"Leave request is already {previous.value}.",
                _out(request),
            )

        if request.start_date < today and not actor.can("leave:cancel_started"):
            return LeaveActionResult.fail(
                LeaveResultCode.leave_already_started,
                "Leave that has already started cannot be cancelled.",
                _out(request),
            )

        won = await compare_and_set_status(
            db,
            request,
            previous,
            LeaveStatus.cancelled,
            cancelled_by=actor.employee_id,
            cancelled_at=datetime.now(timezone.utc),
            cancellation_reason=reason,
        )
        if not won:
            return LeaveActionResult.fail(
                LeaveResultCode.already_decided, "Leave request changed while cancelling."
            )

        if LeaveRequestStateMachine.is_recall(previous, LeaveStatus.cancelled):
            deducted = await BalanceLedger.deducted_hours_for_request(db, request.id)
            if deducted:
                await BalanceLedger.restore(
                    db,
                    request.employee_id,
                    category,
                    deducted,
                    request.id,
                    reason=reason or "Approved leave recalled",
                )

        cache.invalidate_on_commit(db, request.employee_id)
        return LeaveActionResult.ok(_out(request), "Leave request cancelled.")
