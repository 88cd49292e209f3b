"""Leave ORM models: LeaveType, LeavePolicy, LeaveBalance, LeaveLedgerEntry,
LeaveRequest, StaffingRule."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hr_leave.common.constants import (
    AccrualUnit,
    LeaveCategory,
    LeaveStatus,
    LedgerEntryType,
    PartialDayType,
)
from hr_leave.database import Base

if TYPE_CHECKING:
    from hr_leave.core_hr.models import Employee

# Ledger hours keep full precision; rounding happens only when presenting.
HOURS = sa.Numeric(14, 6)


class LeaveType(Base):
    """A requestable leave type; its category selects policy and balance row."""

    __tablename__ = "leave_types"
    __table_args__ = (
        sa.UniqueConstraint("entity_id", "code", name="uq_leave_type_entity_code"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, nullable=False)
    code: Mapped[str] = mapped_column(sa.String(20), nullable=False)
    name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    category: Mapped[LeaveCategory] = mapped_column(
        sa.Enum(LeaveCategory, name="leave_category"), nullable=False,
    )
    is_paid: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    # Relationships
    requests: Mapped[list[LeaveRequest]] = relationship(back_populates="leave_type")


class LeavePolicy(Base):
    """Organisation-level accrual policy for one leave category."""

    __tablename__ = "leave_policies"

    id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.String(150), nullable=False)
    leave_type: Mapped[LeaveCategory] = mapped_column(
        sa.Enum(LeaveCategory, name="leave_category"), nullable=False,
    )
    accrual_unit: Mapped[AccrualUnit] = mapped_column(
        sa.Enum(AccrualUnit, name="accrual_unit"),
        nullable=False,
        default=AccrualUnit.hours_per_year,
    )
    accrual_rate: Mapped[Decimal] = mapped_column(sa.Numeric(10, 4), default=Decimal("0"))
    standard_hours_per_day: Mapped[Decimal] = mapped_column(
        sa.Numeric(6, 2), default=Decimal("7.6")
    )
    hours_per_week_reference: Mapped[Decimal] = mapped_column(
        sa.Numeric(6, 2), default=Decimal("38")
    )
    min_service_years_before_accrual: Mapped[Optional[Decimal]] = mapped_column(
        sa.Numeric(5, 2)
    )
    allow_negative_balance: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )


class LeaveBalance(Base):
    """Ledger row. available = opening + accrued - taken + adjusted, kept
    incrementally by hr_leave.leave.ledger and never recomputed."""

    __tablename__ = "leave_balances"
    __table_args__ = (
        sa.UniqueConstraint(
            "employee_id", "leave_type", name="uq_leave_balance_employee_type"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, sa.ForeignKey("employees.id"), nullable=False
    )
    leave_type: Mapped[LeaveCategory] = mapped_column(
        sa.Enum(LeaveCategory, name="leave_category"), nullable=False,
    )
    opening_balance_hours: Mapped[Decimal] = mapped_column(HOURS, default=Decimal("0"))
    accrued_hours: Mapped[Decimal] = mapped_column(HOURS, default=Decimal("0"))
    taken_hours: Mapped[Decimal] = mapped_column(HOURS, default=Decimal("0"))
    adjusted_hours: Mapped[Decimal] = mapped_column(HOURS, default=Decimal("0"))
    available_hours: Mapped[Decimal] = mapped_column(HOURS, default=Decimal("0"))
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    # Relationships
    employee: Mapped[Employee] = relationship(
        back_populates="leave_balances"
    )
    entries: Mapped[list[LeaveLedgerEntry]] = relationship(back_populates="balance")


class LeaveLedgerEntry(Base):
    """Journal of ledger movements, keyed for idempotency and reconciliation."""

    __tablename__ = "leave_ledger_entries"
    __table_args__ = (
        sa.UniqueConstraint("idempotency_key", name="uq_ledger_idempotency_key"),
        sa.Index("ix_ledger_request", "request_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    balance_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, sa.ForeignKey("leave_balances.id", ondelete="CASCADE"), nullable=False
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, nullable=False)
    leave_type: Mapped[LeaveCategory] = mapped_column(
        sa.Enum(LeaveCategory, name="leave_category"), nullable=False,
    )
    entry_type: Mapped[LedgerEntryType] = mapped_column(
        sa.Enum(LedgerEntryType, name="ledger_entry_type"), nullable=False,
    )
    # Signed: negative for deductions
    hours: Mapped[Decimal] = mapped_column(HOURS, nullable=False)
    request_id: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid)
    idempotency_key: Mapped[Optional[str]] = mapped_column(sa.String(200))
    reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    # Relationships
    balance: Mapped[LeaveBalance] = relationship(back_populates="entries")


class LeaveRequest(Base):
    __tablename__ = "leave_requests"
    __table_args__ = (
        sa.CheckConstraint("end_date >= start_date", name="ck_leave_request_range"),
        sa.Index("ix_leave_requests_employee_dates", "employee_id", "start_date", "end_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, sa.ForeignKey("employees.id"), nullable=False
    )
    leave_type_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, sa.ForeignKey("leave_types.id"), nullable=False
    )
    start_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    end_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    partial_day_type: Mapped[PartialDayType] = mapped_column(
        sa.Enum(PartialDayType, name="partial_day_type"),
        nullable=False,
        default=PartialDayType.full,
    )
    status: Mapped[LeaveStatus] = mapped_column(
        sa.Enum(LeaveStatus, name="leave_status"),
        nullable=False,
        default=LeaveStatus.pending,
    )
    # Cached at submission, recomputed at approval
    chargeable_days: Mapped[Decimal] = mapped_column(sa.Numeric(6, 1), nullable=False)
    chargeable_hours: Mapped[Decimal] = mapped_column(HOURS, nullable=False)
    manager_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        sa.Uuid, sa.ForeignKey("employees.id")
    )
    reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    decision_reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid)
    decided_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    # Bumped by every status write; compare-and-set guard
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    # Relationships
    employee: Mapped[Employee] = relationship(
        back_populates="leave_requests", foreign_keys=[employee_id]
    )
    leave_type: Mapped[LeaveType] = relationship(back_populates="requests")


class StaffingRule(Base):
    """Department (or entity-wide) absence limits consulted by approvers."""

    __tablename__ = "staffing_rules"

    id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, nullable=False)
    department_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        sa.Uuid, sa.ForeignKey("departments.id")
    )
    max_concurrent_leave: Mapped[Optional[int]] = mapped_column(sa.Integer)
    min_active_headcount: Mapped[Optional[int]] = mapped_column(sa.Integer)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    notes: Mapped[Optional[str]] = mapped_column(sa.Text)
