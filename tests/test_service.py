"""Leave service — employee context, request listings, accrual runs, ledger reconciliation."""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from hr_leave.common.constants import (
    EmploymentStatus,
    EmploymentType,
    LeaveCategory,
    LeaveStatus,
    UserRole,
)
from hr_leave.common.exceptions import NotFoundException, ValidationException
from hr_leave.common.pagination import PaginationParams
from hr_leave.leave.ledger import BalanceLedger, deduct_key, restore_key
from hr_leave.leave.models import LeaveLedgerEntry, LeaveRequest
from hr_leave.leave.schemas import LeaveRequestCreate
from hr_leave.leave.service import LeaveService
from hr_leave.leave.workflow import LeaveWorkflow
from tests.conftest import (
    _seed_balance,
    _seed_employee,
    _seed_leave_world,
    _seed_policy,
    actor_for,
)

MON = date(2026, 2, 23)
FRI = date(2026, 2, 27)
BEFORE_LEAVE = date(2026, 2, 1)


async def _submit(db, world, cache):
    result = await LeaveWorkflow.submit_leave_request(
        db,
        LeaveRequestCreate(leave_type_id=world["leave_type"].id, start_date=MON, end_date=FRI),
        actor_for(world["employee"]),
        cache,
    )
    return result.request


async def _approve(db, world, cache, request_id):
    return await LeaveWorkflow.approve_leave_request(
        db, request_id, actor_for(world["manager"], UserRole.manager), cache,
    )


# ═════════════════════════════════════════════════════════════════════
# Context
# ═════════════════════════════════════════════════════════════════════


class TestLeaveContext:

    async def test_context_bundles_balance_view(self, db: AsyncSession, cache):
        world = await _seed_leave_world(db)
        await _seed_policy(db, leave_type=LeaveCategory.long_service, min_service_years=Decimal("10"))
        await _submit(db, world, cache)
        await db.commit()

        ctx = await LeaveService.get_leave_context_for_employee(
            db, world["employee"].id, cache=cache, as_of=date(2026, 3, 1),
        )

        assert ctx.employee.display_name == "Alex Smith"
        assert ctx.fte.fte == Decimal("1")
        assert set(ctx.policies) == {LeaveCategory.annual, LeaveCategory.long_service}
        assert ctx.cache_version == 1

        annual = ctx.balances[LeaveCategory.annual]
        assert annual.available_hours == Decimal("76")
        assert annual.pending_hours == Decimal("38")
        assert annual.available_days == Decimal("10")

        assert ctx.entitlements[LeaveCategory.annual].pro_rata_days == Decimal("20")
        assert LeaveCategory.long_service not in ctx.entitlements
        lsl = ctx.eligibility[LeaveCategory.long_service]
        assert lsl.eligible is False
        assert lsl.eligibility_date == date(2028, 1, 15)

    async def test_part_time_context_is_pro_rata(self, db: AsyncSession, cache):
        await _seed_policy(db)
        emp = await _seed_employee(
            db, employment_type=EmploymentType.part_time, hours_per_week=Decimal("30"),
        )

        ctx = await LeaveService.get_leave_context_for_employee(db, emp.id, cache=cache)

        assert ctx.fte.fte_percent == 79
        assert ctx.entitlements[LeaveCategory.annual].pro_rata_days == Decimal("15.8")
        assert ctx.balances == {}

    async def test_unknown_employee(self, db: AsyncSession, cache):
        with pytest.raises(NotFoundException):
            await LeaveService.get_leave_context_for_employee(db, uuid.uuid4(), cache=cache)


# ═════════════════════════════════════════════════════════════════════
# Accrual
# ═════════════════════════════════════════════════════════════════════


class TestRunAccrual:

    async def test_monthly_accrual_of_full_time_entitlement(self, db: AsyncSession, cache):
        """20 days × 7.6h = 152h a year, one twelfth per period."""
        await _seed_policy(db)
        emp = await _seed_employee(db)

        credited = await LeaveService.run_accrual(db, emp.id, period_key="2026-10", cache=cache)
        await db.commit()

        assert credited == {LeaveCategory.annual: Decimal("152") / 12}
        balance = await BalanceLedger.get_balance(db, emp.id, LeaveCategory.annual)
        assert balance.accrued_hours == Decimal("12.666667")
        assert cache.version(emp.id) == 1

    async def test_same_period_credited_once(self, db: AsyncSession, cache):
        await _seed_policy(db)
        emp = await _seed_employee(db)

        await LeaveService.run_accrual(db, emp.id, period_key="2026-10", cache=cache)
        await db.commit()
        again = await LeaveService.run_accrual(db, emp.id, period_key="2026-10", cache=cache)
        await db.commit()

        assert again == {}
        assert cache.version(emp.id) == 1

    async def test_part_time_accrues_pro_rata(self, db: AsyncSession):
        await _seed_policy(db)
        emp = await _seed_employee(
            db, employment_type=EmploymentType.part_time, hours_per_week=Decimal("19"),
        )

        credited = await LeaveService.run_accrual(db, emp.id, period_key="2026", periods_per_year=1)

        assert credited[LeaveCategory.annual] == Decimal("76")

    async def test_casual_accrues_nothing(self, db: AsyncSession):
        await _seed_policy(db)
        emp = await _seed_employee(db, employment_type=EmploymentType.casual)

        assert await LeaveService.run_accrual(db, emp.id, period_key="2026-10") == {}

    async def test_ineligible_category_skipped(self, db: AsyncSession):
        await _seed_policy(db, leave_type=LeaveCategory.long_service, min_service_years=Decimal("10"))
        emp = await _seed_employee(db, start_date=date(2020, 1, 1))

        credited = await LeaveService.run_accrual(
            db, emp.id, period_key="2026-10", as_of=date(2026, 10, 1),
        )

        assert credited == {}

    async def test_invalid_period_count(self, db: AsyncSession):
        emp = await _seed_employee(db)
        with pytest.raises(ValidationException):
            await LeaveService.run_accrual(db, emp.id, period_key="2026-10", periods_per_year=0)


# ═════════════════════════════════════════════════════════════════════
# Reconciliation
# ═════════════════════════════════════════════════════════════════════


class TestFindLedgerDiscrepancies:

    async def test_clean_lifecycle_has_no_discrepancies(self, db: AsyncSession, cache):
        world = await _seed_leave_world(db)
        approved = await _submit(db, world, cache)
        await _approve(db, world, cache, approved.id)
        await LeaveWorkflow.cancel_leave_request(
            db, approved.id, actor_for(world["employee"]), cache, today=BEFORE_LEAVE,
        )
        await _submit(db, world, cache)

        report = await LeaveService.find_ledger_discrepancies(db)

        assert report.checked_requests == 2
        assert report.discrepancies == []

    async def test_approved_without_deduction(self, db: AsyncSession, cache):
        world = await _seed_leave_world(db)
        request = await _submit(db, world, cache)
        await _approve(db, world, cache, request.id)
        await db.execute(
            delete(LeaveLedgerEntry).where(LeaveLedgerEntry.idempotency_key == deduct_key(request.id))
        )

        report = await LeaveService.find_ledger_discrepancies(db)

        assert [(d.request_id, d.kind) for d in report.discrepancies] == [
            (request.id, "approved_without_deduction")
        ]

    async def test_recall_without_restoration(self, db: AsyncSession, cache):
        world = await _seed_leave_world(db)
        request = await _submit(db, world, cache)
        await _approve(db, world, cache, request.id)
        await LeaveWorkflow.cancel_leave_request(
            db, request.id, actor_for(world["employee"]), cache, today=BEFORE_LEAVE,
        )
        await db.execute(
            delete(LeaveLedgerEntry).where(LeaveLedgerEntry.idempotency_key == restore_key(request.id))
        )

        report = await LeaveService.find_ledger_discrepancies(db)

        assert [d.kind for d in report.discrepancies] == ["recall_without_restoration"]
        assert report.discrepancies[0].status == LeaveStatus.cancelled

    async def test_deduction_against_pending_request(self, db: AsyncSession, cache):
        world = await _seed_leave_world(db)
        request = await _submit(db, world, cache)
        await BalanceLedger.deduct(
            db, world["employee"].id, LeaveCategory.annual, Decimal("38"), request_id=request.id,
        )

        report = await LeaveService.find_ledger_discrepancies(db)

        assert [d.kind for d in report.discrepancies] == ["deduction_without_approval"]

    async def test_deduction_mismatch(self, db: AsyncSession, cache):
        world = await _seed_leave_world(db)
        request = await _submit(db, world, cache)
        await BalanceLedger.deduct(
            db, world["employee"].id, LeaveCategory.annual, Decimal("7.6"), request_id=request.id,
        )
        # Approval finds the request's deduction key already used
        await _approve(db, world, cache, request.id)

        report = await LeaveService.find_ledger_discrepancies(db)

        assert [d.kind for d in report.discrepancies] == ["deduction_mismatch"]

    async def test_approved_request_seeded_without_ledger(self, db: AsyncSession):
        world = await _seed_leave_world(db)
        db.add(
            LeaveRequest(
                employee_id=world["employee"].id,
                leave_type_id=world["leave_type"].id,
                start_date=MON,
                end_date=FRI,
                status=LeaveStatus.approved,
                chargeable_days=Decimal("5"),
                chargeable_hours=Decimal("38"),
                version=2,
            )
        )
        await db.flush()

        report = await LeaveService.find_ledger_discrepancies(db)

        assert report.checked_requests == 1
        assert report.discrepancies[0].kind == "approved_without_deduction"


# ═════════════════════════════════════════════════════════════════════
# Listings
# ═════════════════════════════════════════════════════════════════════


class TestListRequests:

    async def _two_employees_with_requests(self, db, world, cache):
        colleague = await _seed_employee(
            db, first_name="Pat", department_id=world["department"].id, manager_id=world["manager"].id,
        )
        await _seed_balance(db, colleague.id)
        march = await LeaveWorkflow.submit_leave_request(
            db,
            LeaveRequestCreate(
                leave_type_id=world["leave_type"].id,
                start_date=date(2026, 3, 2),
                end_date=date(2026, 3, 3),
            ),
            actor_for(colleague),
            cache,
        )
        february = await _submit(db, world, cache)
        return colleague, march.request, february

    async def test_filters_by_employee_and_status(self, db: AsyncSession, cache):
        world = await _seed_leave_world(db)
        colleague, march, february = await self._two_employees_with_requests(db, world, cache)
        await _approve(db, world, cache, february.id)

        mine = await LeaveService.list_requests(db, employee_ids=[world["employee"].id])
        pending = await LeaveService.list_requests(db, status=LeaveStatus.pending)

        assert [r.id for r in mine.data] == [february.id]
        assert mine.data[0].status == LeaveStatus.approved
        assert [r.id for r in pending.data] == [march.id]
        assert pending.meta.total == 1

    async def test_date_window_keeps_overlapping_requests(self, db: AsyncSession, cache):
        world = await _seed_leave_world(db)
        _, march, february = await self._two_employees_with_requests(db, world, cache)

        late_feb = await LeaveService.list_requests(
            db, start=date(2026, 2, 27), end=date(2026, 3, 1),
        )
        early_march = await LeaveService.list_requests(db, start=date(2026, 3, 3))

        assert [r.id for r in late_feb.data] == [february.id]
        assert [r.id for r in early_march.data] == [march.id]

    async def test_empty_team_matches_nothing(self, db: AsyncSession, cache):
        world = await _seed_leave_world(db)
        await _submit(db, world, cache)

        page = await LeaveService.list_requests(db, employee_ids=[])

        assert page.data == []
        assert page.meta.total == 0

    async def test_pagination(self, db: AsyncSession, cache):
        world = await _seed_leave_world(db)
        await self._two_employees_with_requests(db, world, cache)

        page = await LeaveService.list_requests(
            db, pagination=PaginationParams(page=2, page_size=1),
        )

        assert len(page.data) == 1
        assert page.meta.total == 2
        assert page.meta.total_pages == 2
        assert page.meta.has_prev is True
        assert page.meta.has_next is False

    async def test_direct_reports(self, db: AsyncSession, cache):
        world = await _seed_leave_world(db)
        colleague, _, _ = await self._two_employees_with_requests(db, world, cache)
        await _seed_employee(
            db, first_name="Gone", manager_id=world["manager"].id, status=EmploymentStatus.terminated,
        )

        reports = await LeaveService.direct_report_ids(db, world["manager"].id)

        assert set(reports) == {world["employee"].id, colleague.id}
