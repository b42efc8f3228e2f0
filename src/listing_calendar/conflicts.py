from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
import logging

from sqlmodel import Session, select

from listing_calendar.db import get_active_property
from listing_calendar.errors import NotFoundError
from listing_calendar.models import BlockedDate, ExternalCalendar, ExternalCalendarEvent
from listing_calendar.timeutil import expand_range, merge_contiguous

logger = logging.getLogger(__name__)

MANUAL_SOURCE = "manual"
# Owner key for manual rows; subscription ids are positive.
_MANUAL_OWNER = 0


@dataclass(frozen=True)
class ContestedRun:
    start: date
    end: date
    calendars: tuple[str, ...]

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


@dataclass(frozen=True)
class ConflictReport:
    contested_runs: list[ContestedRun]
    contested_days: int
    calendars_analyzed: int

    @property
    def has_conflicts(self) -> bool:
        return bool(self.contested_runs)


def analyze_conflicts(
    session: Session,
    property_id: int,
    calendar_ids: Sequence[int],
    *,
    include_manual: bool = False,
) -> ConflictReport:
    """Find days claimed by more than one of the selected feeds.

    Works from the event snapshot each feed stored at its last successful
    sync; nothing is fetched. Read-only.
    """
    wanted = list(dict.fromkeys(calendar_ids))
    if not wanted:
        raise ValueError("At least one external calendar id is required.")

    get_active_property(session, property_id)
    subscriptions = session.exec(
        select(ExternalCalendar)
        .where(ExternalCalendar.property_id == property_id)
        .where(ExternalCalendar.id.in_(wanted))
    ).all()
    found = {subscription.id: subscription for subscription in subscriptions}
    missing = [calendar_id for calendar_id in wanted if calendar_id not in found]
    if missing:
        raise NotFoundError(
            "External calendar(s) not found for this property: " + ", ".join(str(item) for item in missing)
        )

    owners_by_day: dict[date, set[int]] = {}
    events = session.exec(
        select(ExternalCalendarEvent)
        .where(ExternalCalendarEvent.property_id == property_id)
        .where(ExternalCalendarEvent.subscription_id.in_(wanted))
    ).all()
    for event in events:
        for day in expand_range(event.start_date, event.end_date):
            owners_by_day.setdefault(day, set()).add(event.subscription_id)

    if include_manual:
        manual_days = session.exec(
            select(BlockedDate.blocked_date)
            .where(BlockedDate.property_id == property_id)
            .where(BlockedDate.source_calendar_id.is_(None))
        ).all()
        for day in manual_days:
            owners_by_day.setdefault(day, set()).add(_MANUAL_OWNER)

    names = {subscription_id: subscription.calendar_name for subscription_id, subscription in found.items()}
    names[_MANUAL_OWNER] = MANUAL_SOURCE
    runs = _contested_runs(owners_by_day, names)
    contested_days = sum(run.days for run in runs)
    logger.info(
        "conflicts_analyzed property_id=%s calendars=%s contested_days=%s runs=%s",
        property_id,
        len(wanted),
        contested_days,
        len(runs),
    )
    return ConflictReport(
        contested_runs=runs,
        contested_days=contested_days,
        calendars_analyzed=len(wanted),
    )


def _contested_runs(owners_by_day: dict[date, set[int]], names: dict[int, str]) -> list[ContestedRun]:
    days_by_owners: dict[frozenset[int], list[date]] = {}
    for day, owners in owners_by_day.items():
        if len(owners) > 1:
            days_by_owners.setdefault(frozenset(owners), []).append(day)

    runs: list[ContestedRun] = []
    for owners, days in days_by_owners.items():
        # Same-named feeds keep one entry each.
        calendars = tuple(sorted(names[owner] for owner in owners))
        for run in merge_contiguous(sorted(days)):
            runs.append(ContestedRun(start=run.start, end=run.end, calendars=calendars))
    return sorted(runs, key=lambda run: (run.start, run.calendars))
