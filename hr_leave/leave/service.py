"""Leave service layer — read models, previews, accrual and reconciliation.

Business logic:
  - Chargeable-leave preview with a fresh or caller-supplied holiday set
  - One-read leave context per employee (FTE, policies, balances, eligibility)
  - Periodic accrual of pro-rata entitlement into the ledger
  - Reconciliation pass over requests and the ledger journal
  - Filtered, paginated request listings (own, team, all)
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from hr_leave.common.constants import (
    EmploymentStatus,
    LeaveCategory,
    LeaveStatus,
    LedgerEntryType,
    PartialDayType,
)
from hr_leave.common.exceptions import NotFoundException, ValidationException
from hr_leave.common.pagination import (
    PaginatedResponse,
    PaginationMeta,
    PaginationParams,
    fetch_page,
)
from hr_leave.core_hr.models import Employee
from hr_leave.holidays.calendar import HolidaySet, load_holiday_set
from hr_leave.leave.cache import LeaveCacheVersions
from hr_leave.leave.chargeable import calculate_chargeable_leave
from hr_leave.leave.eligibility import is_eligible
from hr_leave.leave.entitlement import (
    calculate_fte,
    calculate_pro_rata_entitlement,
    hours_to_days,
)
from hr_leave.leave.ledger import BalanceLedger
from hr_leave.leave.models import LeaveLedgerEntry, LeavePolicy, LeaveRequest
from hr_leave.leave.schemas import (
    ChargeableLeaveResult,
    EmployeeBrief,
    LeaveBalanceOut,
    LeaveContextOut,
    LeavePolicyBrief,
    LeaveRequestOut,
    LedgerDiscrepancy,
    ReconciliationReport,
    StaffingConflictResult,
)
from hr_leave.leave.staffing import check_staffing_conflict
from hr_leave.leave.workflow import load_leave_request, pending_hours

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════
# LeaveService
# ═════════════════════════════════════════════════════════════════════


class LeaveService:
    """Async read-side and administrative leave operations."""

    # ─────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _get_employee(db: AsyncSession, employee_id: uuid.UUID) -> Employee:
        employee = await db.get(Employee, employee_id)
        if employee is None:
            raise NotFoundException("Employee", employee_id)
        return employee

    @staticmethod
    async def _active_policies(db: AsyncSession, entity_id: uuid.UUID) -> dict[LeaveCategory, LeavePolicy]:
        """One policy per leave type; the oldest wins if data has duplicates."""
        result = await db.execute(
            select(LeavePolicy)
            .where(LeavePolicy.entity_id == entity_id, LeavePolicy.is_active.is_(True))
            .order_by(LeavePolicy.created_at)
        )
        policies: dict[LeaveCategory, LeavePolicy] = {}
        for policy in result.scalars().all():
            policies.setdefault(policy.leave_type, policy)
        return policies

    # ─────────────────────────────────────────────────────────────────
    # Preview
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def preview_chargeable_leave(
        db: AsyncSession,
        employee_id: uuid.UUID,
        start: date,
        end: date,
        partial_day_type: PartialDayType = PartialDayType.full,
        holidays: Optional[HolidaySet] = None,
    ) -> ChargeableLeaveResult:
        """Chargeable days for a prospective request.

        Pass ``holidays`` to pin the holiday data; otherwise the current
        holidays are loaded.
        """
        employee = await LeaveService._get_employee(db, employee_id)
        if holidays is None:
            holidays = await load_holiday_set(db, employee, start, end)
        return calculate_chargeable_leave(start, end, employee, partial_day_type, holidays)

    # ─────────────────────────────────────────────────────────────────
    # Context
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_leave_context_for_employee(
        db: AsyncSession,
        employee_id: uuid.UUID,
        *,
        cache: LeaveCacheVersions,
        as_of: Optional[date] = None,
    ) -> LeaveContextOut:
        """Bundle everything a balance view needs for one employee."""
        employee = await LeaveService._get_employee(db, employee_id)
        policies = await LeaveService._active_policies(db, employee.entity_id)

        context = LeaveContextOut(
            employee=EmployeeBrief.model_validate(employee),
            fte=calculate_fte(employee, policies.get(LeaveCategory.annual)),
            policies={c: LeavePolicyBrief.model_validate(p) for c, p in policies.items()},
            cache_version=cache.version(employee_id),
        )

        for category, policy in policies.items():
            eligibility = is_eligible(employee, policy, as_of)
            context.eligibility[category] = eligibility
            if eligibility.eligible:
                context.entitlements[category] = calculate_pro_rata_entitlement(
                    policy, calculate_fte(employee, policy)
                )

        for balance in await BalanceLedger.list_balances(db, employee_id):
            policy = policies.get(balance.leave_type)
            out = LeaveBalanceOut.model_validate(balance)
            out.pending_hours = await pending_hours(db, employee_id, balance.leave_type)
            out.available_days = hours_to_days(
                balance.available_hours,
                policy.standard_hours_per_day if policy else None,
            )
            context.balances[balance.leave_type] = out

        return context

    # ─────────────────────────────────────────────────────────────────
    # Request listings
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def direct_report_ids(db: AsyncSession, manager_id: uuid.UUID) -> list[uuid.UUID]:
        result = await db.execute(
            select(Employee.id).where(
                Employee.manager_id == manager_id,
                Employee.status != EmploymentStatus.terminated,
            )
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_requests(
        db: AsyncSession,
        *,
        employee_ids: Optional[Sequence[uuid.UUID]] = None,
        status: Optional[LeaveStatus] = None,
        leave_type_id: Optional[uuid.UUID] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        pagination: Optional[PaginationParams] = None,
    ) -> PaginatedResponse[LeaveRequestOut]:
        """Leave requests, newest first.

        ``employee_ids`` of None means every employee; an empty list matches
        nothing. ``start``/``end`` keep requests overlapping that window, so
        ``status=pending`` over a team is the approval queue.
        """
        pagination = pagination or PaginationParams(page=1, page_size=50)
        if employee_ids is not None and not employee_ids:
            return PaginatedResponse[LeaveRequestOut](
                data=[], meta=PaginationMeta.build(pagination.page, pagination.page_size, 0),
            )

        query = select(LeaveRequest).order_by(
            LeaveRequest.created_at.desc(), LeaveRequest.start_date.desc(), LeaveRequest.id,
        )
        if employee_ids is not None:
            query = query.where(LeaveRequest.employee_id.in_(employee_ids))
        if status is not None:
            query = query.where(LeaveRequest.status == status)
        if leave_type_id is not None:
            query = query.where(LeaveRequest.leave_type_id == leave_type_id)
        if start is not None:
            query = query.where(LeaveRequest.end_date >= start)
        if end is not None:
            query = query.where(LeaveRequest.start_date <= end)

        rows, meta = await fetch_page(db, query, pagination)
        return PaginatedResponse[LeaveRequestOut](
            data=[LeaveRequestOut.model_validate(r) for r in rows], meta=meta,
        )

    # ─────────────────────────────────────────────────────────────────
    # Staffing
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_staffing_conflict(
        db: AsyncSession,
        request_id: uuid.UUID,
        *,
        default_max_concurrent: Optional[int] = None,
    ) -> StaffingConflictResult:
        request = await load_leave_request(db, request_id)
        if request is None:
            raise NotFoundException("LeaveRequest", request_id)
        employee = await LeaveService._get_employee(db, request.employee_id)
        return await check_staffing_conflict(
            db, request, employee, default_max_concurrent=default_max_concurrent,
        )

    # ─────────────────────────────────────────────────────────────────
    # Accrual
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def run_accrual(
        db: AsyncSession,
        employee_id: uuid.UUID,
        *,
        period_key: str,
        periods_per_year: int = 12,
        cache: Optional[LeaveCacheVersions] = None,
        as_of: Optional[date] = None,
    ) -> dict[LeaveCategory, Decimal]:
        """Credit one period's share of each eligible pro-rata entitlement.

        Idempotent per ``period_key``; returns the hours credited by this call.
        Employees without an FTE (casual, contractor) accrue nothing.
        """
        if periods_per_year <= 0:
            raise ValidationException({"periods_per_year": ["Must be a positive integer."]})

        employee = await LeaveService._get_employee(db, employee_id)
        await BalanceLedger.ensure_leave_balances(db, employee_id, as_of=as_of)
        policies = await LeaveService._active_policies(db, employee.entity_id)

        credited: dict[LeaveCategory, Decimal] = {}
        for category, policy in policies.items():
            fte = calculate_fte(employee, policy)
            if fte.fte is None or not is_eligible(employee, policy, as_of).eligible:
                continue
            entitlement = calculate_pro_rata_entitlement(policy, fte)
            hours = entitlement.pro_rata_hours / periods_per_year
            if hours <= 0:
                continue
            if await BalanceLedger.accrue(
                db, employee_id, category, hours, period_key=period_key,
            ):
                credited[category] = hours

        if credited and cache is not None:
            cache.invalidate_on_commit(db, employee_id)
        return credited

    # ─────────────────────────────────────────────────────────────────
    # Reconciliation
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def find_ledger_discrepancies(db: AsyncSession) -> ReconciliationReport:
        """Compare request statuses with the ledger journal.

        Flags approved paid requests with no deduction, deductions against
        requests that are not approved, recalled requests whose hours were
        never restored, and deductions that differ from the request's hours.
        """
        result = await db.execute(
            select(LeaveRequest).options(selectinload(LeaveRequest.leave_type))
        )
        requests = result.scalars().all()

        entries_result = await db.execute(
            select(LeaveLedgerEntry).where(LeaveLedgerEntry.request_id.is_not(None))
        )
        by_request: dict[uuid.UUID, dict[LedgerEntryType, LeaveLedgerEntry]] = defaultdict(dict)
        for entry in entries_result.scalars().all():
            by_request[entry.request_id][entry.entry_type] = entry

        discrepancies: list[LedgerDiscrepancy] = []

        def flag(req: LeaveRequest, kind: str, detail: str) -> None:
            discrepancies.append(
                LedgerDiscrepancy(
                    request_id=req.id,
                    employee_id=req.employee_id,
                    status=req.status,
                    kind=kind,
                    detail=detail,
                )
            )

        for req in requests:
            entries = by_request.get(req.id, {})
            deduction = entries.get(LedgerEntryType.deduction)
            restoration = entries.get(LedgerEntryType.restoration)
            paid = req.leave_type.is_paid and req.chargeable_hours > 0

            if req.status == LeaveStatus.approved:
                if paid and deduction is None:
                    flag(req, "approved_without_deduction", "Approved request has no ledger deduction.")
                elif deduction is not None and -Decimal(deduction.hours) != Decimal(req.chargeable_hours):
                    flag(
                        req,
                        "deduction_mismatch",
                        f"Deducted {-deduction.hours}h but request charges {req.chargeable_hours}h.",
                    )
                if restoration is not None:
                    flag(req, "restored_while_approved", "Approved request has a restoration entry.")
            elif req.status == LeaveStatus.cancelled:
                if deduction is not None and restoration is None:
                    flag(req, "recall_without_restoration", "Recalled request was never restored.")
            elif deduction is not None:
                flag(
                    req,
                    "deduction_without_approval",
                    f"Ledger deduction exists for a {req.status.value} request.",
                )

        for d in discrepancies:
            logger.warning("Ledger discrepancy %s on request %s: %s", d.kind, d.request_id, d.detail)

        return ReconciliationReport(checked_requests=len(requests), discrepancies=discrepancies)
