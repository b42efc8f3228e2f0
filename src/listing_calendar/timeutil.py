from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from listing_calendar.errors import InvalidRangeError

_ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class DayRun:
    start: date
    end: date

    @property
    def days(self) -> int:
        return days_between(self.start, self.end) + 1


def parse_date_ymd(s: str) -> date:
    """Parse strict YYYY-MM-DD string into a date. Raises ValueError."""
    return datetime.strptime(s, "%Y-%m-%d").date()


def normalize_to_day(value: date | datetime | str) -> date:
    """Reduce a date, datetime or ISO-8601 string to its calendar day.

    The day is taken as written: an aware timestamp is never converted to
    another offset first, so ``2025-03-10T23:00:00Z`` stays on March 10.
    Raises ValueError for anything that is not a recognizable day.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("Date value must not be empty.")
        if len(text) == 10:
            return parse_date_ymd(text)
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError as exc:
            raise ValueError(f"Unrecognized date value: {value!r}") from exc
    raise ValueError(f"Unsupported date value type: {type(value).__name__}")


def days_between(start: date, end: date) -> int:
    return end.toordinal() - start.toordinal()


def is_adjacent(earlier: date, later: date) -> bool:
    return days_between(earlier, later) == 1


def expand_range(start: date, end: date) -> list[date]:
    """Every calendar day from start to end, both inclusive."""
    if end < start:
        raise InvalidRangeError(
            f"Invalid period: end date {end.isoformat()} is before start date {start.isoformat()}."
        )
    first = start.toordinal()
    return [date.fromordinal(first + offset) for offset in range(days_between(start, end) + 1)]


class DayRuns:
    """Contiguous runs over an ordered day sequence, recomputed on each iteration."""

    def __init__(self, sorted_days: Iterable[date]):
        self._days = tuple(sorted_days)

    def __iter__(self) -> Iterator[DayRun]:
        run_start: date | None = None
        run_end: date | None = None
        for day in self._days:
            if run_start is None:
                run_start = run_end = day
                continue
            if day == run_end:
                continue
            if is_adjacent(run_end, day):
                run_end = day
                continue
            yield DayRun(start=run_start, end=run_end)
            run_start = run_end = day

        if run_start is not None:
            yield DayRun(start=run_start, end=run_end)

    def __bool__(self) -> bool:
        return bool(self._days)


def merge_contiguous(sorted_days: Iterable[date]) -> DayRuns:
    return DayRuns(sorted_days)


def next_day(day: date) -> date:
    return day + _ONE_DAY


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Current UTC time as ISO-8601 with offset (matches models default_factory)."""
    return utc_now().isoformat()
