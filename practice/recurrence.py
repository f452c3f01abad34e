from __future__ import annotations

import calendar
import datetime as dt
from dataclasses import dataclass
from typing import Iterator, Optional

NONE = 'none'
DAILY = 'daily'
WEEKLY = 'weekly'
MONTHLY = 'monthly'
YEARLY = 'yearly'

PATTERNS = (NONE, DAILY, WEEKLY, MONTHLY, YEARLY)


def add_months(base: dt.date, months: int) -> dt.date:
    """Shift ``base`` by ``months``, clamping the day to the target month's length."""
    month = base.month - 1 + months
    year = base.year + month // 12
    month = month % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return dt.date(year, month, min(base.day, last_day))


def add_years(base: dt.date, years: int) -> dt.date:
    return add_months(base, years * 12)


@dataclass(frozen=True)
class RecurrenceRule:
    pattern: str
    anchor: Optional[dt.date] = None

    def __post_init__(self):
        if self.pattern not in PATTERNS:
            raise ValueError(f"Unknown recurrence pattern: {self.pattern!r}")
        if self.pattern != NONE and self.anchor is None:
            raise ValueError(f"Recurrence pattern {self.pattern!r} needs an anchor date.")

    @property
    def is_recurring(self) -> bool:
        return self.pattern != NONE

    def occurrence(self, index: int) -> dt.date:
        """Return the index-th occurrence; index 0 is the anchor itself.

        Every occurrence is computed from the anchor, never from the previous
        occurrence, so a day clamped in a short month does not carry over.
        """
        if not self.is_recurring:
            raise ValueError('Non-recurring rules have no occurrences.')
        if index < 0:
            raise ValueError('Occurrence index cannot be negative.')
        if self.pattern == DAILY:
            return self.anchor + dt.timedelta(days=index)
        if self.pattern == WEEKLY:
            return self.anchor + dt.timedelta(weeks=index)
        if self.pattern == MONTHLY:
            return add_months(self.anchor, index)
        return add_years(self.anchor, index)

    def _first_index_on_or_after(self, day: dt.date) -> int:
        if day <= self.anchor:
            return 0
        if self.pattern == DAILY:
            return (day - self.anchor).days
        if self.pattern == WEEKLY:
            return -(-(day - self.anchor).days // 7)
        if self.pattern == MONTHLY:
            index = (day.year - self.anchor.year) * 12 + (day.month - self.anchor.month)
        else:
            index = day.year - self.anchor.year
        index = max(index - 1, 0)
        while self.occurrence(index) < day:
            index += 1
        return index

    def next_after(self, day: dt.date) -> Optional[dt.date]:
        """First occurrence strictly after ``day``."""
        if not self.is_recurring:
            return None
        return self.occurrence(self._first_index_on_or_after(day + dt.timedelta(days=1)))

    def iter_from(self, start: dt.date) -> Iterator[dt.date]:
        if not self.is_recurring:
            return
        index = self._first_index_on_or_after(start)
        while True:
            yield self.occurrence(index)
            index += 1

    def occurrences_between(self, start: dt.date, end: dt.date) -> list[dt.date]:
        """All occurrences within ``[start, end]``, ascending."""
        dates = []
        if end < start:
            return dates
        for occurrence in self.iter_from(start):
            if occurrence > end:
                break
            dates.append(occurrence)
        return dates
