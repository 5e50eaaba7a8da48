"""Inclusive whole-day UTC date-range filtering of normalized batches."""

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Iterable, Optional, TypeVar

from .models import LedgerRecord

R = TypeVar("R", bound=LedgerRecord)


@dataclass(frozen=True)
class TimeRange:
    """
    Requested date window, both bounds optional, as YYYY-MM-DD strings.

    start covers its whole day from 00:00:00 UTC, end its whole day to 23:59:59.999999 UTC.
    """

    start_date: Optional[str] = None
    end_date: Optional[str] = None

    def __post_init__(self) -> None:
        for bound in (self.start_date, self.end_date):
            if bound:
                date.fromisoformat(bound)  # raises ValueError on bad input
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError(f"start date {self.start_date} is after end date {self.end_date}")

    @property
    def start(self) -> Optional[datetime]:
        if not self.start_date:
            return None
        return datetime.combine(date.fromisoformat(self.start_date), time.min, tzinfo=timezone.utc)

    @property
    def end(self) -> Optional[datetime]:
        if not self.end_date:
            return None
        return datetime.combine(date.fromisoformat(self.end_date), time.max, tzinfo=timezone.utc)

    @property
    def is_open(self) -> bool:
        return not self.start_date and not self.end_date

    def contains(self, moment: datetime) -> bool:
        start, end = self.start, self.end
        if start is not None and moment < start:
            return False
        if end is not None and moment > end:
            return False
        return True


def filter_by_date_range(entries: Iterable[R], time_range: TimeRange) -> list[R]:
    """Keep entries whose timestamp falls inside time_range (open bounds match everything)."""
    if time_range.is_open:
        return list(entries)
    return [entry for entry in entries if time_range.contains(entry.timestamp)]
