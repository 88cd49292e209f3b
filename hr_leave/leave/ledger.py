"""Balance ledger — the only code that writes LeaveBalance.

Every movement is a single conditional UPDATE on the balance row plus one
journal row in ``leave_ledger_entries``. The journal's unique
``idempotency_key`` makes request-scoped movements happen at most once:
``deduct:{request_id}``, ``restore:{request_id}``,
``accrual:{employee}:{leave_type}:{period}``.

Balances are maintained incrementally:
    available = opening + accrued - taken + adjusted
and never recomputed from the journal.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from hr_leave.common.constants import LeaveCategory, LedgerEntryType
from hr_leave.common.exceptions import (
    InsufficientBalanceException,
    NotFoundException,
    ValidationException,
)
from hr_leave.core_hr.models import Employee
from hr_leave.leave.eligibility import is_eligible
from hr_leave.leave.models import LeaveBalance, LeaveLedgerEntry, LeavePolicy

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class LedgerPosting:
    """Result of a ledger movement.

    ``is_new`` is False when the idempotency key had already been used; the
    balance was not touched a second time.
    """

    balance_id: uuid.UUID
    entry_id: Optional[uuid.UUID]
    is_new: bool
    hours: Decimal
    available_hours: Optional[Decimal] = None


def deduct_key(request_id: uuid.UUID) -> str:
    return f"deduct:{request_id}"


def restore_key(request_id: uuid.UUID) -> str:
    return f"restore:{request_id}"


def accrual_key(employee_id: uuid.UUID, leave_type: LeaveCategory, period_key: str) -> str:
    return f"accrual:{employee_id}:{leave_type.value}:{period_key}"


def _dialect_insert(db: AsyncSession):
    """``INSERT … ON CONFLICT`` support differs per backend."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


async def get_active_policy(
    db: AsyncSession,
    entity_id: uuid.UUID,
    leave_type: LeaveCategory,
) -> Optional[LeavePolicy]:
    result = await db.execute(
        select(LeavePolicy)
        .where(
            LeavePolicy.entity_id == entity_id,
            LeavePolicy.leave_type == leave_type,
            LeavePolicy.is_active.is_(True),
        )
        .order_by(LeavePolicy.created_at)
        .limit(1)
    )
    return result.scalars().first()


class BalanceLedger:
    """Async ledger operations over LeaveBalance / LeaveLedgerEntry."""

    # ─────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_balance(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type: LeaveCategory,
    ) -> Optional[LeaveBalance]:
        result = await db.execute(
            select(LeaveBalance)
            .where(
                LeaveBalance.employee_id == employee_id,
                LeaveBalance.leave_type == leave_type,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def list_balances(
        db: AsyncSession,
        employee_id: uuid.UUID,
    ) -> Sequence[LeaveBalance]:
        result = await db.execute(
            select(LeaveBalance)
            .where(LeaveBalance.employee_id == employee_id)
            .order_by(LeaveBalance.leave_type)
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    @staticmethod
    async def get_entry(db: AsyncSession, idempotency_key: str) -> Optional[LeaveLedgerEntry]:
        result = await db.execute(
            select(LeaveLedgerEntry).where(LeaveLedgerEntry.idempotency_key == idempotency_key)
        )
        return result.scalars().first()

    @staticmethod
    async def deducted_hours_for_request(
        db: AsyncSession,
        request_id: uuid.UUID,
    ) -> Optional[Decimal]:
        """Hours taken by the request's approval, or None if it was never deducted."""
        entry = await BalanceLedger.get_entry(db, deduct_key(request_id))
        if entry is None:
            return None
        return -Decimal(entry.hours)

    # ─────────────────────────────────────────────────────────────────
    # Row creation
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _insert_zeroed(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type: LeaveCategory,
    ) -> None:
        insert = _dialect_insert(db)
        stmt = (
            insert(LeaveBalance)
            .values(
                id=uuid.uuid4(),
                employee_id=employee_id,
                leave_type=leave_type,
                opening_balance_hours=ZERO,
                accrued_hours=ZERO,
                taken_hours=ZERO,
                adjusted_hours=ZERO,
                available_hours=ZERO,
                version=1,
            )
            .on_conflict_do_nothing(index_elements=["employee_id", "leave_type"])
        )
        await db.execute(stmt)

    @staticmethod
    async def _balance_id(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type: LeaveCategory,
    ) -> uuid.UUID:
        """Id of the balance row, creating a zeroed one if absent."""
        await BalanceLedger._insert_zeroed(db, employee_id, leave_type)
        result = await db.execute(
            select(LeaveBalance.id).where(
                LeaveBalance.employee_id == employee_id,
                LeaveBalance.leave_type == leave_type,
            )
        )
        return result.scalar_one()

    @staticmethod
    async def ensure_leave_balances(
        db: AsyncSession,
        employee_id: uuid.UUID,
        *,
        as_of: Optional[date] = None,
    ) -> Sequence[LeaveBalance]:
        """Create missing zeroed balances for every active policy the employee
        is eligible for. Safe to call any number of times, concurrently."""
        employee = await db.get(Employee, employee_id)
        if employee is None:
            raise NotFoundException("Employee", employee_id)

        result = await db.execute(
            select(LeavePolicy).where(
                LeavePolicy.entity_id == employee.entity_id,
                LeavePolicy.is_active.is_(True),
            )
        )
        wanted: set[LeaveCategory] = set()
        for policy in result.scalars().all():
            if is_eligible(employee, policy, as_of).eligible:
                wanted.add(policy.leave_type)

        for leave_type in sorted(wanted, key=lambda c: c.value):
            await BalanceLedger._insert_zeroed(db, employee_id, leave_type)

        return await BalanceLedger.list_balances(db, employee_id)

    # ─────────────────────────────────────────────────────────────────
    # Journal
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _journal(
        db: AsyncSession,
        *,
        balance_id: uuid.UUID,
        employee_id: uuid.UUID,
        leave_type: LeaveCategory,
        entry_type: LedgerEntryType,
        hours: Decimal,
        request_id: Optional[uuid.UUID] = None,
        idempotency_key: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[uuid.UUID]:
        """Insert a journal row; None means the key was already used."""
        insert = _dialect_insert(db)
        stmt = (
            insert(LeaveLedgerEntry)
            .values(
                id=uuid.uuid4(),
                balance_id=balance_id,
                employee_id=employee_id,
                leave_type=leave_type,
                entry_type=entry_type,
                hours=hours,
                request_id=request_id,
                idempotency_key=idempotency_key,
                reason=reason,
            )
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
            .returning(LeaveLedgerEntry.id)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def _discard_entry(db: AsyncSession, entry_id: uuid.UUID) -> None:
        await db.execute(
            delete(LeaveLedgerEntry)
            .where(LeaveLedgerEntry.id == entry_id)
            .execution_options(synchronize_session=False)
        )

    # ─────────────────────────────────────────────────────────────────
    # Movements
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    def _require_positive(hours: Decimal) -> Decimal:
        hours = Decimal(hours)
        if hours <= 0:
            raise ValidationException({"hours": ["Hours must be greater than zero."]})
        return hours

    @staticmethod
    async def deduct(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type: LeaveCategory,
        hours: Decimal,
        *,
        request_id: Optional[uuid.UUID] = None,
        allow_negative: Optional[bool] = None,
        reason: Optional[str] = None,
    ) -> LedgerPosting:
        """available -= hours; taken += hours.

        Raises InsufficientBalanceException if ``available`` would go negative,
        unless the employee's active policy for the leave type sets
        ``allow_negative_balance``. With a ``request_id`` the deduction is
        applied at most once for that request.
        """
        hours = BalanceLedger._require_positive(hours)

        if allow_negative is None:
            employee = await db.get(Employee, employee_id)
            if employee is None:
                raise NotFoundException("Employee", employee_id)
            policy = await get_active_policy(db, employee.entity_id, leave_type)
            allow_negative = bool(policy and policy.allow_negative_balance)

        balance_id = await BalanceLedger._balance_id(db, employee_id, leave_type)
        entry_id = await BalanceLedger._journal(
            db,
            balance_id=balance_id,
            employee_id=employee_id,
            leave_type=leave_type,
            entry_type=LedgerEntryType.deduction,
            hours=-hours,
            request_id=request_id,
            idempotency_key=deduct_key(request_id) if request_id else None,
            reason=reason,
        )
        if entry_id is None:
            logger.info("Deduction for request %s already applied; skipping", request_id)
            return LedgerPosting(balance_id=balance_id, entry_id=None, is_new=False, hours=hours)

        stmt = (
            update(LeaveBalance)
            .where(LeaveBalance.id == balance_id)
            .values(
                available_hours=LeaveBalance.available_hours - hours,
                taken_hours=LeaveBalance.taken_hours + hours,
                version=LeaveBalance.version + 1,
                updated_at=func.now(),
            )
            .returning(LeaveBalance.available_hours)
            .execution_options(synchronize_session=False)
        )
        if not allow_negative:
            stmt = stmt.where(LeaveBalance.available_hours >= hours)

        available = (await db.execute(stmt)).scalar_one_or_none()
        if available is None:
            await BalanceLedger._discard_entry(db, entry_id)
            current = (
                await db.execute(
                    select(LeaveBalance.available_hours).where(LeaveBalance.id == balance_id)
                )
            ).scalar_one()
            logger.warning(
                "Insufficient %s balance for employee %s: available=%s requested=%s",
                leave_type.value, employee_id, current, hours,
            )
            raise InsufficientBalanceException(leave_type.value, current, hours)

        logger.info(
            "Deducted %sh %s from employee %s (request=%s, available=%s)",
            hours, leave_type.value, employee_id, request_id, available,
        )
        return LedgerPosting(
            balance_id=balance_id,
            entry_id=entry_id,
            is_new=True,
            hours=hours,
            available_hours=available,
        )

    @staticmethod
    async def restore(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type: LeaveCategory,
        hours: Decimal,
        request_id: uuid.UUID,
        *,
        reason: Optional[str] = None,
    ) -> bool:
        """Inverse of ``deduct`` for one request. Returns False if the
        request's hours were already restored."""
        hours = BalanceLedger._require_positive(hours)
        balance_id = await BalanceLedger._balance_id(db, employee_id, leave_type)

        entry_id = await BalanceLedger._journal(
            db,
            balance_id=balance_id,
            employee_id=employee_id,
            leave_type=leave_type,
            entry_type=LedgerEntryType.restoration,
            hours=hours,
            request_id=request_id,
            idempotency_key=restore_key(request_id),
            reason=reason,
        )
        if entry_id is None:
            logger.info("Restoration for request %s already applied; skipping", request_id)
            return False

        await db.execute(
            update(LeaveBalance)
            .where(LeaveBalance.id == balance_id)
            .values(
                available_hours=LeaveBalance.available_hours + hours,
                taken_hours=LeaveBalance.taken_hours - hours,
                version=LeaveBalance.version + 1,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "Restored %sh %s to employee %s (request=%s)",
            hours, leave_type.value, employee_id, request_id,
        )
        return True

    @staticmethod
    async def adjust(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type: LeaveCategory,
        delta_hours: Decimal,
        reason: str,
    ) -> LeaveBalance:
        """Administrative correction; always permitted, may go negative."""
        delta_hours = Decimal(delta_hours)
        if delta_hours == 0:
            raise ValidationException({"delta_hours": ["Adjustment must be non-zero."]})
        if not reason or not reason.strip():
            raise ValidationException({"reason": ["A reason is required for adjustments."]})
        if await db.get(Employee, employee_id) is None:
            raise NotFoundException("Employee", employee_id)

        balance_id = await BalanceLedger._balance_id(db, employee_id, leave_type)
        await BalanceLedger._journal(
            db,
            balance_id=balance_id,
            employee_id=employee_id,
            leave_type=leave_type,
            entry_type=LedgerEntryType.adjustment,
            hours=delta_hours,
            reason=reason.strip(),
        )
        await db.execute(
            update(LeaveBalance)
            .where(LeaveBalance.id == balance_id)
            .values(
                adjusted_hours=LeaveBalance.adjusted_hours + delta_hours,
                available_hours=LeaveBalance.available_hours + delta_hours,
                version=LeaveBalance.version + 1,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "Adjusted %s balance of employee %s by %sh: %s",
            leave_type.value, employee_id, delta_hours, reason,
        )
        result = await db.execute(
            select(LeaveBalance)
            .where(LeaveBalance.id == balance_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    @staticmethod
    async def accrue(
        db: AsyncSession,
        employee_id: uuid.UUID,
        leave_type: LeaveCategory,
        hours: Decimal,
        *,
        period_key: str,
    ) -> bool:
        """Credit accrued hours once per ``period_key`` (e.g. ``2026-10``)."""
        hours = BalanceLedger._require_positive(hours)
        balance_id = await BalanceLedger._balance_id(db, employee_id, leave_type)

        entry_id = await BalanceLedger._journal(
            db,
            balance_id=balance_id,
            employee_id=employee_id,
            leave_type=leave_type,
            entry_type=LedgerEntryType.accrual,
            hours=hours,
            idempotency_key=accrual_key(employee_id, leave_type, period_key),
            reason=f"Accrual {period_key}",
        )
        if entry_id is None:
            return False

        await db.execute(
            update(LeaveBalance)
            .where(LeaveBalance.id == balance_id)
            .values(
                accrued_hours=LeaveBalance.accrued_hours + hours,
                available_hours=LeaveBalance.available_hours + hours,
                version=LeaveBalance.version + 1,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "Accrued %sh %s for employee %s (%s)",
            hours, leave_type.value, employee_id, period_key,
        )
        return True

    @staticmethod
    async def reset_balances(db: AsyncSession, employee_id: uuid.UUID) -> int:
        """Administrative reset: delete the employee's balances and journal.

        The only path that removes a balance row. Returns rows deleted.
        """
        await db.execute(
            delete(LeaveLedgerEntry)
            .where(LeaveLedgerEntry.employee_id == employee_id)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(
            delete(LeaveBalance)
            .where(LeaveBalance.employee_id == employee_id)
            .execution_options(synchronize_session=False)
        )
        logger.warning("Reset %d leave balances for employee %s", result.rowcount, employee_id)
        return result.rowcount
