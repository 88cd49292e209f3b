"""Advisory staffing check for approvers.

Counts how many members of the requester's department (or legal entity, for
employees without a department) would be absent at the same time. Never
blocks or alters a request; it only produces warnings.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hr_leave.common.constants import EmploymentStatus
from hr_leave.config import settings
from hr_leave.core_hr.models import Department, Employee
from hr_leave.leave.models import LeaveRequest, StaffingRule
from hr_leave.leave.schemas import (
    OverlappingLeave,
    StaffingConflictResult,
    StaffingStats,
    StaffingWarning,
)
from hr_leave.leave.workflow import ACTIVE_STATUSES

logger = logging.getLogger(__name__)


async def resolve_staffing_rule(db: AsyncSession, employee: Employee) -> Optional[StaffingRule]:
    """Department rule first, then the entity-wide rule."""
    if employee.department_id is not None:
        result = await db.execute(
            select(StaffingRule).where(
                StaffingRule.entity_id == employee.entity_id,
                StaffingRule.department_id == employee.department_id,
                StaffingRule.is_active.is_(True),
            )
        )
        rule = result.scalars().first()
        if rule is not None:
            return rule

    result = await db.execute(
        select(StaffingRule).where(
            StaffingRule.entity_id == employee.entity_id,
            StaffingRule.department_id.is_(None),
            StaffingRule.is_active.is_(True),
        )
    )
    return result.scalars().first()


def _scope_filter(employee: Employee):
    if employee.department_id is not None:
        return Employee.department_id == employee.department_id
    return Employee.entity_id == employee.entity_id


async def _scope_label(db: AsyncSession, employee: Employee) -> str:
    if employee.department_id is None:
        return "Entity"
    department = await db.get(Department, employee.department_id)
    return department.name if department else "Department"


async def check_staffing_conflict(
    db: AsyncSession,
    request: LeaveRequest,
    employee: Employee,
    *,
    default_max_concurrent: Optional[int] = None,
) -> StaffingConflictResult:
    """Would approving ``request`` leave the department short-staffed?"""
    scope = _scope_filter(employee)

    headcount = (
        await db.execute(
            select(func.count(Employee.id)).where(
                scope,
                Employee.status != EmploymentStatus.terminated,
            )
        )
    ).scalar_one()

    result = await db.execute(
        select(LeaveRequest, Employee)
        .join(Employee, LeaveRequest.employee_id == Employee.id)
        .where(
            scope,
            Employee.id != employee.id,
            Employee.status != EmploymentStatus.terminated,
            LeaveRequest.id != request.id,
            LeaveRequest.status.in_(ACTIVE_STATUSES),
            LeaveRequest.start_date <= request.end_date,
            LeaveRequest.end_date >= request.start_date,
        )
        .order_by(LeaveRequest.start_date)
    )
    overlapping = [
        OverlappingLeave(
            request_id=req.id,
            employee_id=emp.id,
            employee_name=emp.display_name,
            start_date=req.start_date,
            end_date=req.end_date,
            status=req.status,
        )
        for req, emp in result.all()
    ]

    # The requester counts as absent too
    concurrent = len({o.employee_id for o in overlapping}) + 1
    active_after = headcount - concurrent

    rule = await resolve_staffing_rule(db, employee)
    if rule is not None:
        max_concurrent = rule.max_concurrent_leave
        min_active = rule.min_active_headcount
    else:
        max_concurrent = (
            default_max_concurrent
            if default_max_concurrent is not None
            else settings.STAFFING_MAX_CONCURRENT_LEAVE
        )
        min_active = None

    label = await _scope_label(db, employee)
    warnings: list[StaffingWarning] = []
    if max_concurrent is not None and concurrent > max_concurrent:
        warnings.append(
            StaffingWarning(
                kind="max_concurrent_leave",
                message=(
                    f"{concurrent} people in {label} would be on leave at once "
                    f"(limit {max_concurrent})."
                ),
            )
        )
    if min_active is not None and active_after < min_active:
        warnings.append(
            StaffingWarning(
                kind="min_active_headcount",
                message=(
                    f"Only {active_after} of {headcount} in {label} would remain "
                    f"(minimum {min_active})."
                ),
            )
        )

    if warnings:
        logger.info(
            "Staffing conflict for leave request %s in %s: %d concurrent, %d remaining",
            request.id, label, concurrent, active_after,
        )

    return StaffingConflictResult(
        has_conflict=bool(warnings),
        overlapping_leave=overlapping,
        warnings=warnings,
        stats=StaffingStats(
            scope_label=label,
            total_headcount=headcount,
            concurrent_leave_count=concurrent,
            active_after_approval=active_after,
            max_concurrent_leave=max_concurrent,
            min_active_headcount=min_active,
        ),
    )
