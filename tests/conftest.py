"""Shared test fixtures — async DB, client, auth helpers, seed helpers.

Uses SQLite + aiosqlite for fast isolated tests without PostgreSQL.
"""

from __future__ import annotations

import os

# Set test JWT_SECRET before any other import touches pydantic-settings
os.environ.setdefault("JWT_SECRET", "test-secret-for-ci-do-not-use-in-production")

import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from hr_leave.common.constants import (
    AccrualUnit,
    EmploymentStatus,
    EmploymentType,
    LeaveCategory,
    UserRole,
)
from hr_leave.config import settings
from hr_leave.database import Base, get_db
from hr_leave.leave.cache import LeaveCacheVersions
from hr_leave.leave.schemas import Actor
from hr_leave.main import create_app

# Import ALL model modules so SQLAlchemy can resolve cross-module relationships
import hr_leave.core_hr.models  # noqa: F401
import hr_leave.holidays.models  # noqa: F401
import hr_leave.leave.models  # noqa: F401

from hr_leave.core_hr.models import Department, Employee
from hr_leave.holidays.models import PublicHoliday
from hr_leave.leave.models import LeaveBalance, LeavePolicy, LeaveType, StaffingRule


# ── Test database (SQLite in-memory) ────────────────────────────────

TEST_DATABASE_URL = "sqlite+aiosqlite://"

engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionFactory = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False,
)

ENTITY_ID = uuid.UUID("6f1c2a3e-0000-4000-8000-000000000001")
OTHER_ENTITY_ID = uuid.UUID("6f1c2a3e-0000-4000-8000-000000000002")


@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── FastAPI test client ─────────────────────────────────────────────

@pytest.fixture
async def app():
    """Create a fresh app instance with DB dependency overridden."""
    application = create_app()
    application.dependency_overrides[get_db] = _override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ── Database session (for direct DB operations in tests) ────────────

@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        yield session
        await session.commit()


@pytest.fixture
def cache() -> LeaveCacheVersions:
    return LeaveCacheVersions()


# ── Auth helpers ────────────────────────────────────────────────────

def create_access_token(
    employee_id: uuid.UUID,
    role: UserRole = UserRole.employee,
    expired: bool = False,
) -> str:
    """Generate a JWT access token for testing."""
    if expired:
        exp = datetime.now(timezone.utc) - timedelta(hours=1)
    else:
        exp = datetime.now(timezone.utc) + timedelta(hours=1)
    payload = {
        "sub": str(employee_id),
        "role": role.value,
        "type": "access",
        "exp": exp,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_headers_for(employee_id: uuid.UUID, role: UserRole = UserRole.employee) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(employee_id, role)}"}


def actor_for(employee: Employee, role: UserRole = UserRole.employee) -> Actor:
    return Actor.for_role(employee.id, role)


# ── Seed helpers ────────────────────────────────────────────────────

async def _seed_department(
    db: AsyncSession,
    *,
    name: str = "Engineering",
    code: str = "ENG",
    entity_id: uuid.UUID = ENTITY_ID,
) -> Department:
    dept = Department(id=uuid.uuid4(), entity_id=entity_id, name=name, code=code, is_active=True)
    db.add(dept)
    await db.flush()
    return dept


async def _seed_employee(
    db: AsyncSession,
    *,
    first_name: str = "Test",
    last_name: str = "Employee",
    employment_type: EmploymentType = EmploymentType.full_time,
    hours_per_week: Optional[Decimal] = None,
    start_date: date = date(2018, 1, 15),
    service_start_date: Optional[date] = None,
    department_id: Optional[uuid.UUID] = None,
    entity_id: uuid.UUID = ENTITY_ID,
    state: Optional[str] = "VIC",
    status: EmploymentStatus = EmploymentStatus.active,
    manager_id: Optional[uuid.UUID] = None,
) -> Employee:
    code = uuid.uuid4().hex[:6].upper()
    emp = Employee(
        id=uuid.uuid4(),
        employee_code=f"EMP-{code}",
        first_name=first_name,
        last_name=last_name,
        email=f"{first_name.lower()}.{code.lower()}@example.com",
        employment_type=employment_type,
        hours_per_week=hours_per_week,
        start_date=start_date,
        service_start_date=service_start_date,
        department_id=department_id,
        entity_id=entity_id,
        state=state,
        status=status,
        manager_id=manager_id,
    )
    db.add(emp)
    await db.flush()
    return emp


async def _seed_leave_type(
    db: AsyncSession,
    *,
    code: str = "AL",
    name: str = "Annual Leave",
    category: LeaveCategory = LeaveCategory.annual,
    is_paid: bool = True,
    entity_id: uuid.UUID = ENTITY_ID,
) -> LeaveType:
    lt = LeaveType(
        id=uuid.uuid4(),
        entity_id=entity_id,
        code=code,
        name=name,
        category=category,
        is_paid=is_paid,
        is_active=True,
    )
    db.add(lt)
    await db.flush()
    return lt


async def _seed_policy(
    db: AsyncSession,
    *,
    leave_type: LeaveCategory = LeaveCategory.annual,
    accrual_unit: AccrualUnit = AccrualUnit.days_per_year,
    accrual_rate: Decimal = Decimal("20"),
    min_service_years: Optional[Decimal] = None,
    allow_negative_balance: bool = False,
    is_active: bool = True,
    entity_id: uuid.UUID = ENTITY_ID,
) -> LeavePolicy:
    policy = LeavePolicy(
        id=uuid.uuid4(),
        entity_id=entity_id,
        name=f"{leave_type.value.replace('_', ' ').title()} Policy",
        leave_type=leave_type,
        accrual_unit=accrual_unit,
        accrual_rate=accrual_rate,
        standard_hours_per_day=Decimal("7.6"),
        hours_per_week_reference=Decimal("38"),
        min_service_years_before_accrual=min_service_years,
        allow_negative_balance=allow_negative_balance,
        is_active=is_active,
    )
    db.add(policy)
    await db.flush()
    return policy


async def _seed_balance(
    db: AsyncSession,
    employee_id: uuid.UUID,
    *,
    leave_type: LeaveCategory = LeaveCategory.annual,
    opening: Decimal = Decimal("76"),
) -> LeaveBalance:
    bal = LeaveBalance(
        id=uuid.uuid4(),
        employee_id=employee_id,
        leave_type=leave_type,
        opening_balance_hours=opening,
        accrued_hours=Decimal("0"),
        taken_hours=Decimal("0"),
        adjusted_hours=Decimal("0"),
        available_hours=opening,
        version=1,
    )
    db.add(bal)
    await db.flush()
    return bal


async def _seed_holiday(
    db: AsyncSession,
    day: date,
    *,
    name: str = "Public Holiday",
    entity_id: Optional[uuid.UUID] = None,
    state_region: Optional[str] = None,
    is_active: bool = True,
) -> PublicHoliday:
    holiday = PublicHoliday(
        id=uuid.uuid4(),
        name=name,
        date=day,
        entity_id=entity_id,
        state_region=state_region,
        is_paid=True,
        is_active=is_active,
    )
    db.add(holiday)
    await db.flush()
    return holiday


async def _seed_staffing_rule(
    db: AsyncSession,
    *,
    department_id: Optional[uuid.UUID] = None,
    max_concurrent_leave: Optional[int] = None,
    min_active_headcount: Optional[int] = None,
    entity_id: uuid.UUID = ENTITY_ID,
) -> StaffingRule:
    rule = StaffingRule(
        id=uuid.uuid4(),
        entity_id=entity_id,
        department_id=department_id,
        max_concurrent_leave=max_concurrent_leave,
        min_active_headcount=min_active_headcount,
        is_active=True,
    )
    db.add(rule)
    await db.flush()
    return rule


async def _seed_leave_world(db: AsyncSession, *, opening: Decimal = Decimal("76")) -> dict:
    """A department with an employee, their manager, an HR admin, an annual
    leave type + policy, and a funded annual balance for the employee."""
    dept = await _seed_department(db)
    manager = await _seed_employee(db, first_name="Morgan", last_name="Lead", department_id=dept.id)
    employee = await _seed_employee(
        db, first_name="Alex", last_name="Smith", department_id=dept.id, manager_id=manager.id,
    )
    hr = await _seed_employee(db, first_name="Harper", last_name="People")
    leave_type = await _seed_leave_type(db)
    policy = await _seed_policy(db)
    balance = await _seed_balance(db, employee.id, opening=opening)
    return {
        "department": dept,
        "manager": manager,
        "employee": employee,
        "hr": hr,
        "leave_type": leave_type,
        "policy": policy,
        "balance": balance,
    }
