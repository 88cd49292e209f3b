"""Working-day resolution — weekends plus jurisdiction-specific public holidays.

The pure functions here take an already-resolved ``HolidaySet`` so they can be
called any number of times, concurrently, without touching the store. Only
``load_holiday_set`` talks to the database.
"""

from __future__ import annotations

import uuid
from datetime import date, timedelta
from typing import Iterable, Iterator, Optional, Protocol

from pydantic import BaseModel, ConfigDict
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from hr_leave.common.constants import WEEKEND_DAYS
from hr_leave.common.exceptions import InvalidDateRangeException
from hr_leave.holidays.models import PublicHoliday


class CalendarSubject(Protocol):
    """Anything with the two attributes holiday matching needs."""

    entity_id: Optional[uuid.UUID]
    state: Optional[str]


class HolidayEntry(BaseModel):
    """Immutable snapshot of one PublicHoliday row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: Optional[uuid.UUID] = None
    name: str
    date: date
    entity_id: Optional[uuid.UUID] = None
    state_region: Optional[str] = None
    is_paid: bool = True
    is_active: bool = True

    def applies_to(self, subject: CalendarSubject) -> bool:
        """Holiday applies if its entity and region scopes both match."""
        if not self.is_active:
            return False
        if self.entity_id is not None and self.entity_id != subject.entity_id:
            return False
        if self.state_region is not None:
            state = (subject.state or "").strip().casefold()
            if self.state_region.strip().casefold() != state:
                return False
        return True


class HolidaySet:
    """A frozen collection of holidays, indexed by date.

    Passing the same set to two chargeable-leave calculations guarantees they
    agree; a set loaded later reflects any holiday data edited since.
    """

    __slots__ = ("_by_date",)

    def __init__(self, holidays: Iterable[HolidayEntry | PublicHoliday] = ()) -> None:
        by_date: dict[date, list[HolidayEntry]] = {}
        for h in holidays:
            entry = h if isinstance(h, HolidayEntry) else HolidayEntry.model_validate(h)
            by_date.setdefault(entry.date, []).append(entry)
        self._by_date = {d: tuple(entries) for d, entries in by_date.items()}

    @classmethod
    def empty(cls) -> HolidaySet:
        return cls()

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_date.values())

    def __iter__(self) -> Iterator[HolidayEntry]:
        for entries in self._by_date.values():
            yield from entries

    def holiday_on(self, day: date, subject: CalendarSubject) -> Optional[HolidayEntry]:
        """Return the first active holiday on ``day`` that applies to the subject."""
        for entry in self._by_date.get(day, ()):
            if entry.applies_to(subject):
                return entry
        return None


# ── Pure calendar functions ─────────────────────────────────────────


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield each calendar day in [start, end]."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def is_weekend(day: date) -> bool:
    return day.weekday() in WEEKEND_DAYS


def is_working_day(
    day: date,
    subject: CalendarSubject,
    holidays: Optional[HolidaySet] = None,
) -> bool:
    """False on Saturday/Sunday and on any active holiday matching the subject."""
    if is_weekend(day):
        return False
    if holidays is not None and holidays.holiday_on(day, subject) is not None:
        return False
    return True


def count_working_days(
    start: date,
    end: date,
    subject: CalendarSubject,
    holidays: Optional[HolidaySet] = None,
) -> int:
    """Inclusive count of working days in [start, end]."""
    if end < start:
        raise InvalidDateRangeException(start, end)
    return sum(1 for d in iter_days(start, end) if is_working_day(d, subject, holidays))


# ── Store access ────────────────────────────────────────────────────


async def load_holiday_set(
    db: AsyncSession,
    subject: CalendarSubject,
    start: date,
    end: date,
) -> HolidaySet:
    """Fetch the active holidays in [start, end] that can apply to the subject."""
    if end < start:
        raise InvalidDateRangeException(start, end)

    query = select(PublicHoliday).where(
        PublicHoliday.is_active.is_(True),
        PublicHoliday.date >= start,
        PublicHoliday.date <= end,
    )
    if subject.entity_id is not None:
        query = query.where(
            or_(
                PublicHoliday.entity_id.is_(None),
                PublicHoliday.entity_id == subject.entity_id,
            )
        )
    else:
        query = query.where(PublicHoliday.entity_id.is_(None))

    result = await db.execute(query.order_by(PublicHoliday.date))
    # Region matching is case-insensitive, so it is left to HolidayEntry.applies_to
    return HolidaySet(result.scalars().all())
