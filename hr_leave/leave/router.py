"""Leave router — preview, context, balances, request listings and
lifecycle, staffing, cache versions and reconciliation.

All endpoints require a bearer token. Domain-rule failures from the workflow
are raised as ``LeaveRuleViolation`` so clients get a problem+json body
carrying the result code.
"""


import uuid
from datetime import date
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from hr_leave.common.constants import LeaveCategory, LeaveStatus
from hr_leave.common.exceptions import ForbiddenException, LeaveRuleViolation
from hr_leave.common.pagination import PaginatedResponse, PaginationParams
from hr_leave.database import get_db
from hr_leave.dependencies import get_current_actor, get_leave_cache, require_capability
from hr_leave.leave.cache import LeaveCacheVersions
from hr_leave.leave.ledger import BalanceLedger
from hr_leave.leave.schemas import (
    Actor,
    BalanceAdjustRequest,
    CacheVersionOut,
    ChargeableLeaveResult,
    ChargeablePreviewRequest,
    LeaveActionResult,
    LeaveApproveRequest,
    LeaveBalanceOut,
    LeaveCancelRequest,
    LeaveContextOut,
    LeaveDeclineRequest,
    LeaveRequestCreate,
    LeaveRequestOut,
    ReconciliationReport,
    StaffingConflictResult,
)
from hr_leave.leave.service import LeaveService
from hr_leave.leave.workflow import LeaveWorkflow

router = APIRouter(prefix="", tags=["leave"])


def _ensure_can_read(actor: Actor, employee_id: uuid.UUID) -> None:
    if actor.employee_id == employee_id:
        return
    if actor.can("leave:read_team") or actor.can("leave:read_all"):
        return
    raise ForbiddenException("You may not view another employee's leave.")


def _unwrap(result: LeaveActionResult) -> LeaveRequestOut:
    if not result.success:
        raise LeaveRuleViolation(result.code, result.message or result.code.value)
    return result.request


# ── POST /preview ───────────────────────────────────────────────────

@router.post("/preview", response_model=ChargeableLeaveResult)
async def preview_leave(
    body: ChargeablePreviewRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Chargeable days for a prospective request, with a per-day breakdown."""
    _ensure_can_read(actor, body.employee_id)
    return await LeaveService.preview_chargeable_leave(
        db, body.employee_id, body.start_date, body.end_date, body.partial_day_type,
    )


# ── GET /employees/{id}/context ─────────────────────────────────────

@router.get("/employees/{employee_id}/context", response_model=LeaveContextOut)
async def leave_context(
    employee_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    cache: LeaveCacheVersions = Depends(get_leave_cache),
    db: AsyncSession = Depends(get_db),
):
    """Employee, FTE, policies, balances, entitlements and eligibility in one read."""
    _ensure_can_read(actor, employee_id)
    return await LeaveService.get_leave_context_for_employee(db, employee_id, cache=cache)


# ── POST /employees/{id}/balances/ensure ────────────────────────────

@router.post("/employees/{employee_id}/balances/ensure", response_model=list[LeaveBalanceOut])
async def ensure_balances(
    employee_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Create any missing zeroed balance rows. Idempotent."""
    _ensure_can_read(actor, employee_id)
    return await BalanceLedger.ensure_leave_balances(db, employee_id)


# ── POST /employees/{id}/balances/{leave_type}/adjust ───────────────

@router.post(
    "/employees/{employee_id}/balances/{leave_type}/adjust",
    response_model=LeaveBalanceOut,
)
async def adjust_balance(
    employee_id: uuid.UUID,
    leave_type: LeaveCategory,
    body: BalanceAdjustRequest,
    actor: Actor = Depends(require_capability("leave:adjust_balance")),
    cache: LeaveCacheVersions = Depends(get_leave_cache),
    db: AsyncSession = Depends(get_db),
):
    """Administrative ledger correction (positive or negative hours)."""
    balance = await BalanceLedger.adjust(
        db, employee_id, leave_type, body.delta_hours, body.reason,
    )
    cache.invalidate_on_commit(db, employee_id)
    return balance


# ── POST /employees/{id}/accrual ────────────────────────────────────

@router.post("/employees/{employee_id}/accrual")
async def run_accrual(
    employee_id: uuid.UUID,
    period_key: str = Query(..., min_length=1, max_length=50),
    periods_per_year: int = Query(12, ge=1, le=366),
    actor: Actor = Depends(require_capability("leave:adjust_balance")),
    cache: LeaveCacheVersions = Depends(get_leave_cache),
    db: AsyncSession = Depends(get_db),
):
    """Credit one accrual period for the employee. Re-running a period is a no-op."""
    credited = await LeaveService.run_accrual(
        db,
        employee_id,
        period_key=period_key,
        periods_per_year=periods_per_year,
        cache=cache,
    )
    return {"period_key": period_key, "credited_hours": credited}


# ── POST /employees/{id}/balances/reset ─────────────────────────────

@router.post("/employees/{employee_id}/balances/reset")
async def reset_balances(
    employee_id: uuid.UUID,
    actor: Actor = Depends(require_capability("leave:reset_balance")),
    cache: LeaveCacheVersions = Depends(get_leave_cache),
    db: AsyncSession = Depends(get_db),
):
    """Delete every balance row and journal entry for the employee."""
    deleted = await BalanceLedger.reset_balances(db, employee_id)
    cache.invalidate_on_commit(db, employee_id)
    return {"deleted": deleted}


# ── GET /requests ───────────────────────────────────────────────────

@router.get("/requests", response_model=PaginatedResponse[LeaveRequestOut])
async def list_requests(
    scope: Literal["my", "team", "all"] = Query("my"),
    employee_id: Optional[uuid.UUID] = Query(None),
    status: Optional[LeaveStatus] = Query(None),
    leave_type_id: Optional[uuid.UUID] = Query(None),
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    pagination: PaginationParams = Depends(),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Own, direct-report or all leave requests.

    ``scope=team&status=pending`` is a manager's approval queue.
    """
    if scope == "my":
        employee_ids = [actor.employee_id]
    elif scope == "team":
        if not actor.can("leave:read_team"):
            raise ForbiddenException("You may not view team leave.")
        employee_ids = await LeaveService.direct_report_ids(db, actor.employee_id)
    else:
        if not actor.can("leave:read_all"):
            raise ForbiddenException("You may not view all leave.")
        employee_ids = None

    if employee_id is not None:
        if employee_ids is not None and employee_id not in employee_ids:
            employee_ids = []
        else:
            employee_ids = [employee_id]

    return await LeaveService.list_requests(
        db,
        employee_ids=employee_ids,
        status=status,
        leave_type_id=leave_type_id,
        start=from_date,
        end=to_date,
        pagination=pagination,
    )


# ── POST /requests ──────────────────────────────────────────────────

@router.post("/requests", response_model=LeaveRequestOut, status_code=status.HTTP_201_CREATED)
async def submit_request(
    body: LeaveRequestCreate,
    actor: Actor = Depends(get_current_actor),
    cache: LeaveCacheVersions = Depends(get_leave_cache),
    db: AsyncSession = Depends(get_db),
):
    """Submit a leave request. Checks eligibility, overlap and balance."""
    return _unwrap(await LeaveWorkflow.submit_leave_request(db, body, actor, cache))


# ── POST /requests/{id}/approve ─────────────────────────────────────

@router.post("/requests/{request_id}/approve", response_model=LeaveRequestOut)
async def approve_request(
    request_id: uuid.UUID,
    body: LeaveApproveRequest,
    actor: Actor = Depends(get_current_actor),
    cache: LeaveCacheVersions = Depends(get_leave_cache),
    db: AsyncSession = Depends(get_db),
):
    """Approve a pending request. Deducts the recomputed hours from the balance."""
    return _unwrap(
        await LeaveWorkflow.approve_leave_request(
            db, request_id, actor, cache, remarks=body.remarks,
        )
    )


# ── POST /requests/{id}/decline ─────────────────────────────────────

@router.post("/requests/{request_id}/decline", response_model=LeaveRequestOut)
async def decline_request(
    request_id: uuid.UUID,
    body: LeaveDeclineRequest,
    actor: Actor = Depends(get_current_actor),
    cache: LeaveCacheVersions = Depends(get_leave_cache),
    db: AsyncSession = Depends(get_db),
):
    """Decline a pending request. A reason is required."""
    return _unwrap(
        await LeaveWorkflow.decline_leave_request(db, request_id, actor, cache, body.reason)
    )


# ── POST /requests/{id}/cancel ──────────────────────────────────────

@router.post("/requests/{request_id}/cancel", response_model=LeaveRequestOut)
async def cancel_request(
    request_id: uuid.UUID,
    body: LeaveCancelRequest,
    actor: Actor = Depends(get_current_actor),
    cache: LeaveCacheVersions = Depends(get_leave_cache),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a pending request or recall an approved one (restores its hours)."""
    return _unwrap(
        await LeaveWorkflow.cancel_leave_request(
            db, request_id, actor, cache, reason=body.reason,
        )
    )


# ── GET /requests/{id}/staffing ─────────────────────────────────────

@router.get("/requests/{request_id}/staffing", response_model=StaffingConflictResult)
async def staffing_conflict(
    request_id: uuid.UUID,
    actor: Actor = Depends(require_capability("leave:staffing")),
    db: AsyncSession = Depends(get_db),
):
    """Advisory: who else is away, and would approval breach staffing rules?"""
    return await LeaveService.get_staffing_conflict(db, request_id)


# ── GET /cache/{employee_id} ────────────────────────────────────────

@router.get("/cache/{employee_id}", response_model=CacheVersionOut)
async def cache_version(
    employee_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    cache: LeaveCacheVersions = Depends(get_leave_cache),
):
    """Current leave-data version for the employee; refetch when it changes."""
    _ensure_can_read(actor, employee_id)
    return CacheVersionOut(employee_id=employee_id, version=cache.version(employee_id))


# ── GET /reconciliation ─────────────────────────────────────────────

@router.get("/reconciliation", response_model=ReconciliationReport)
async def reconciliation(
    actor: Actor = Depends(require_capability("leave:reconcile")),
    db: AsyncSession = Depends(get_db),
):
    """Requests whose status and ledger journal disagree."""
    return await LeaveService.find_ledger_discrepancies(db)
