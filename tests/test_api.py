"""Leave HTTP API — auth, request lifecycle, context, admin endpoints."""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from hr_leave.common.constants import LeaveCategory, UserRole
from hr_leave.leave.ledger import BalanceLedger
from tests.conftest import (
    _seed_leave_world,
    auth_headers_for,
    create_access_token,
)

BASE = "/api/v1/leave"

# 2030-03-04 is a Monday; far enough ahead that cancellation is always allowed
START = "2030-03-04"
END = "2030-03-08"


async def _world(db: AsyncSession) -> dict:
    world = await _seed_leave_world(db)
    await db.commit()
    return world


async def _submit(client: AsyncClient, world: dict) -> dict:
    resp = await client.post(
        f"{BASE}/requests",
        json={"leave_type_id": str(world["leave_type"].id), "start_date": START, "end_date": END},
        headers=auth_headers_for(world["employee"].id),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def _manager(world: dict) -> dict[str, str]:
    return auth_headers_for(world["manager"].id, UserRole.manager)


def _hr(world: dict) -> dict[str, str]:
    return auth_headers_for(world["hr"].id, UserRole.hr_admin)


async def _available(db: AsyncSession, employee_id) -> Decimal:
    balance = await BalanceLedger.get_balance(db, employee_id, LeaveCategory.annual)
    return balance.available_hours


# ═════════════════════════════════════════════════════════════════════
# System / auth
# ═════════════════════════════════════════════════════════════════════


class TestHealthAndAuth:

    async def test_health(self, client: AsyncClient):
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    async def test_missing_token(self, client: AsyncClient):
        resp = await client.get(f"{BASE}/cache/{uuid.uuid4()}")
        assert resp.status_code == 401
        assert resp.headers["content-type"].startswith("application/problem+json")

    async def test_expired_token(self, client: AsyncClient):
        token = create_access_token(uuid.uuid4(), expired=True)
        resp = await client.get(
            f"{BASE}/cache/{uuid.uuid4()}", headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Token has expired."

    async def test_garbage_token(self, client: AsyncClient):
        resp = await client.get(
            f"{BASE}/cache/{uuid.uuid4()}", headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert resp.status_code == 401


# ═════════════════════════════════════════════════════════════════════
# Preview / submit
# ═════════════════════════════════════════════════════════════════════


class TestPreviewAndSubmit:

    async def test_preview(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        resp = await client.post(
            f"{BASE}/preview",
            json={
                "employee_id": str(world["employee"].id),
                "start_date": START,
                "end_date": END,
                "partial_day_type": "half_start",
            },
            headers=auth_headers_for(world["employee"].id),
        )
        assert resp.status_code == 200
        data = resp.json()
        assert Decimal(data["chargeable_days"]) == Decimal("4.5")
        assert len(data["breakdown"]) == 5

    async def test_preview_of_someone_else_forbidden(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        resp = await client.post(
            f"{BASE}/preview",
            json={"employee_id": str(world["manager"].id), "start_date": START, "end_date": END},
            headers=auth_headers_for(world["employee"].id),
        )
        assert resp.status_code == 403

    async def test_submit(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        data = await _submit(client, world)

        assert data["status"] == "pending"
        assert data["employee_id"] == str(world["employee"].id)
        assert Decimal(data["chargeable_hours"]) == Decimal("38")
        assert await _available(db, world["employee"].id) == Decimal("76")

    async def test_submit_inverted_dates(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        resp = await client.post(
            f"{BASE}/requests",
            json={"leave_type_id": str(world["leave_type"].id), "start_date": END, "end_date": START},
            headers=auth_headers_for(world["employee"].id),
        )
        assert resp.status_code == 422

    async def test_submit_overlap_is_conflict(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        await _submit(client, world)

        resp = await client.post(
            f"{BASE}/requests",
            json={"leave_type_id": str(world["leave_type"].id), "start_date": START, "end_date": START},
            headers=auth_headers_for(world["employee"].id),
        )

        assert resp.status_code == 409
        assert resp.json()["errors"]["code"] == ["OVERLAPPING_LEAVE"]


# ═════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════


class TestDecisions:

    async def test_approve_then_second_approve_conflicts(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        request = await _submit(client, world)
        url = f"{BASE}/requests/{request['id']}/approve"

        first = await client.post(url, json={"remarks": "OK"}, headers=_manager(world))
        second = await client.post(url, json={}, headers=_hr(world))

        assert first.status_code == 200
        assert first.json()["status"] == "approved"
        assert second.status_code == 409
        assert second.headers["content-type"].startswith("application/problem+json")
        assert second.json()["errors"]["code"] == ["ALREADY_DECIDED"]
        assert await _available(db, world["employee"].id) == Decimal("38")

    async def test_employee_cannot_approve(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        request = await _submit(client, world)

        resp = await client.post(
            f"{BASE}/requests/{request['id']}/approve",
            json={},
            headers=auth_headers_for(world["employee"].id),
        )

        assert resp.status_code == 403
        assert resp.json()["errors"]["code"] == ["NOT_AUTHORIZED"]

    async def test_decline_requires_reason(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        request = await _submit(client, world)
        url = f"{BASE}/requests/{request['id']}/decline"

        missing = await client.post(url, json={}, headers=_manager(world))
        blank = await client.post(url, json={"reason": "   "}, headers=_manager(world))
        ok = await client.post(url, json={"reason": "Release week"}, headers=_manager(world))

        assert missing.status_code == 422
        assert blank.status_code == 422
        assert ok.status_code == 200
        assert ok.json()["decision_reason"] == "Release week"

    async def test_recall_via_cancel_restores_balance(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        request = await _submit(client, world)
        await client.post(f"{BASE}/requests/{request['id']}/approve", json={}, headers=_manager(world))

        resp = await client.post(
            f"{BASE}/requests/{request['id']}/cancel",
            json={"reason": "Plans changed"},
            headers=auth_headers_for(world["employee"].id),
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        assert await _available(db, world["employee"].id) == Decimal("76")

    async def test_unknown_request_is_404(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        resp = await client.post(
            f"{BASE}/requests/{uuid.uuid4()}/cancel", json={}, headers=_hr(world),
        )
        assert resp.status_code == 404
        assert resp.json()["errors"]["code"] == ["REQUEST_NOT_FOUND"]


# ═════════════════════════════════════════════════════════════════════
# Reads / admin
# ═════════════════════════════════════════════════════════════════════


class TestReadsAndAdmin:

    async def test_context_and_cache_version(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        await _submit(client, world)
        emp_id = world["employee"].id

        ctx = await client.get(f"{BASE}/employees/{emp_id}/context", headers=auth_headers_for(emp_id))
        version = await client.get(f"{BASE}/cache/{emp_id}", headers=auth_headers_for(emp_id))

        assert ctx.status_code == 200
        data = ctx.json()
        assert data["balances"]["annual"]["available_hours"] == "76.00"
        assert data["balances"]["annual"]["pending_hours"] == "38.00"
        assert data["fte"]["fte_percent"] == 100
        assert data["cache_version"] == 1
        assert version.json() == {"employee_id": str(emp_id), "version": 1}

    async def test_context_visibility(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        url = f"{BASE}/employees/{world['manager'].id}/context"

        as_employee = await client.get(url, headers=auth_headers_for(world["employee"].id))
        as_hr = await client.get(url, headers=_hr(world))

        assert as_employee.status_code == 403
        assert as_hr.status_code == 200

    async def test_adjust_requires_capability(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        url = f"{BASE}/employees/{world['employee'].id}/balances/annual/adjust"
        body = {"delta_hours": "7.6", "reason": "Carry-over from 2025"}

        denied = await client.post(url, json=body, headers=_manager(world))
        allowed = await client.post(url, json=body, headers=_hr(world))

        assert denied.status_code == 403
        assert allowed.status_code == 200
        assert allowed.json()["available_hours"] == "83.60"
        assert allowed.json()["adjusted_hours"] == "7.60"

    async def test_adjust_zero_rejected(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        resp = await client.post(
            f"{BASE}/employees/{world['employee'].id}/balances/annual/adjust",
            json={"delta_hours": "0", "reason": "Nothing at all"},
            headers=_hr(world),
        )
        assert resp.status_code == 422

    async def test_ensure_balances(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        url = f"{BASE}/employees/{world['hr'].id}/balances/ensure"

        first = await client.post(url, headers=_hr(world))
        second = await client.post(url, headers=_hr(world))

        assert first.status_code == 200
        assert [b["leave_type"] for b in second.json()] == ["annual"]

    async def test_accrual_endpoint(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        url = f"{BASE}/employees/{world['employee'].id}/accrual"

        first = await client.post(url, params={"period_key": "2026-10"}, headers=_hr(world))
        repeat = await client.post(url, params={"period_key": "2026-10"}, headers=_hr(world))

        assert first.status_code == 200
        assert "annual" in first.json()["credited_hours"]
        assert repeat.json()["credited_hours"] == {}

    async def test_reset_needs_system_admin(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        url = f"{BASE}/employees/{world['employee'].id}/balances/reset"

        denied = await client.post(url, headers=_hr(world))
        allowed = await client.post(
            url, headers=auth_headers_for(world["hr"].id, UserRole.system_admin),
        )

        assert denied.status_code == 403
        assert allowed.json() == {"deleted": 1}

    async def test_staffing(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        request = await _submit(client, world)
        url = f"{BASE}/requests/{request['id']}/staffing"

        denied = await client.get(url, headers=auth_headers_for(world["employee"].id))
        allowed = await client.get(url, headers=_manager(world))

        assert denied.status_code == 403
        assert allowed.status_code == 200
        assert allowed.json()["has_conflict"] is False
        assert allowed.json()["stats"]["total_headcount"] == 2

    async def test_reconciliation(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        request = await _submit(client, world)
        await client.post(f"{BASE}/requests/{request['id']}/approve", json={}, headers=_manager(world))

        denied = await client.get(f"{BASE}/reconciliation", headers=_manager(world))
        report = await client.get(f"{BASE}/reconciliation", headers=_hr(world))

        assert denied.status_code == 403
        assert report.status_code == 200
        assert report.json() == {"checked_requests": 1, "discrepancies": []}


# ═════════════════════════════════════════════════════════════════════
# Listings
# ═════════════════════════════════════════════════════════════════════


class TestListRequests:

    async def test_my_requests(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        request = await _submit(client, world)

        resp = await client.get(f"{BASE}/requests", headers=auth_headers_for(world["employee"].id))

        assert resp.status_code == 200
        body = resp.json()
        assert [r["id"] for r in body["data"]] == [request["id"]]
        assert body["meta"]["total"] == 1

    async def test_manager_approval_queue(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        request = await _submit(client, world)
        url = f"{BASE}/requests"
        queue = {"scope": "team", "status": "pending"}

        before = await client.get(url, params=queue, headers=_manager(world))
        await client.post(f"{url}/{request['id']}/approve", json={}, headers=_manager(world))
        after = await client.get(url, params=queue, headers=_manager(world))

        assert [r["id"] for r in before.json()["data"]] == [request["id"]]
        assert after.json()["data"] == []

    async def test_team_scope_limited_to_direct_reports(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        await _submit(client, world)

        resp = await client.get(
            f"{BASE}/requests",
            params={"scope": "team", "employee_id": str(world["employee"].id)},
            headers=auth_headers_for(world["hr"].id, UserRole.hr_admin),
        )

        assert resp.status_code == 200
        assert resp.json()["data"] == []

    async def test_scope_requires_capability(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        employee = auth_headers_for(world["employee"].id)

        team = await client.get(f"{BASE}/requests", params={"scope": "team"}, headers=employee)
        everyone = await client.get(f"{BASE}/requests", params={"scope": "all"}, headers=_manager(world))
        as_hr = await client.get(f"{BASE}/requests", params={"scope": "all"}, headers=_hr(world))

        assert team.status_code == 403
        assert everyone.status_code == 403
        assert as_hr.status_code == 200

    async def test_date_window(self, client: AsyncClient, db: AsyncSession):
        world = await _world(db)
        await _submit(client, world)

        inside = await client.get(
            f"{BASE}/requests",
            params={"scope": "all", "from_date": "2030-03-08", "to_date": "2030-03-31"},
            headers=_hr(world),
        )
        outside = await client.get(
            f"{BASE}/requests",
            params={"scope": "all", "from_date": "2030-03-09"},
            headers=_hr(world),
        )

        assert inside.json()["meta"]["total"] == 1
        assert outside.json()["meta"]["total"] == 0
