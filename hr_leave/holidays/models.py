"""Public holiday ORM model."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from hr_leave.database import Base


class PublicHoliday(Base):
    """A public holiday; null entity/state scope means it applies everywhere."""

    __tablename__ = "public_holidays"
    __table_args__ = (
        sa.Index("ix_public_holidays_date", "date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(sa.String(150), nullable=False)
    date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid)
    state_region: Mapped[Optional[str]] = mapped_column(sa.String(50))
    is_paid: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(),
    )

    def __repr__(self) -> str:
        scope = self.state_region or "all regions"
        return f"<PublicHoliday {self.date.isoformat()} {self.name!r} ({scope})>"
