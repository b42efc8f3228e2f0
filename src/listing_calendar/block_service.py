from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime
import logging

from sqlmodel import Session, select

from listing_calendar.blocked_dates import delete_by_dates, list_active, upsert_blocked_date
from listing_calendar.db import get_active_property, property_lock, unit_of_work
from listing_calendar.export_service import FeedPublisher, get_export_artifact, regenerate_export
from listing_calendar.models import BlockedDate, ExportArtifact, ExternalCalendar
from listing_calendar.timeutil import expand_range, normalize_to_day

logger = logging.getLogger(__name__)

DayInput = date | datetime | str


@dataclass(frozen=True)
class BlockResult:
    blocked_days: list[date]
    export_url: str | None


@dataclass(frozen=True)
class UnblockResult:
    removed_count: int
    export_url: str | None


@dataclass(frozen=True)
class CalendarView:
    blocked: list[BlockedDate]
    subscriptions: list[ExternalCalendar]
    export: ExportArtifact | None


def block_period(
    session: Session,
    property_id: int,
    start_date: DayInput,
    end_date: DayInput,
    reason: str | None = None,
    *,
    publisher: FeedPublisher,
    timezone_name: str = "UTC",
) -> BlockResult:
    """Block every day of [start_date, end_date] as a manual period.

    The first day is flagged as check-in and the last as check-out. Blocking
    a day that is already blocked overwrites its row.
    """
    start = normalize_to_day(start_date)
    end = normalize_to_day(end_date)
    days = expand_range(start, end)
    clean_reason = reason.strip() if reason and reason.strip() else None

    get_active_property(session, property_id)
    with property_lock(property_id), unit_of_work(session):
        for day in days:
            upsert_blocked_date(
                session,
                property_id,
                day,
                reason=clean_reason,
                is_check_in=day == days[0],
                is_check_out=day == days[-1],
                source_calendar_id=None,
            )
        artifact = regenerate_export(session, property_id, publisher=publisher, timezone_name=timezone_name)
        export_url = artifact.url if artifact is not None else None

    logger.info(
        "period_blocked property_id=%s start=%s end=%s days=%s",
        property_id,
        start.isoformat(),
        end.isoformat(),
        len(days),
    )
    return BlockResult(blocked_days=days, export_url=export_url)


def unblock_dates(
    session: Session,
    property_id: int,
    dates: Iterable[DayInput],
    *,
    publisher: FeedPublisher,
    timezone_name: str = "UTC",
) -> UnblockResult:
    days = [normalize_to_day(value) for value in dates]
    if not days:
        raise ValueError("At least one date is required to unblock.")

    get_active_property(session, property_id)
    with property_lock(property_id), unit_of_work(session):
        removed = delete_by_dates(session, property_id, days)
        artifact = regenerate_export(session, property_id, publisher=publisher, timezone_name=timezone_name)
        export_url = artifact.url if artifact is not None else None

    logger.info(
        "dates_unblocked property_id=%s requested=%s removed=%s",
        property_id,
        len(set(days)),
        removed,
    )
    return UnblockResult(removed_count=removed, export_url=export_url)


def list_calendar(session: Session, property_id: int, from_date: DayInput | None = None) -> CalendarView:
    get_active_property(session, property_id)
    cutoff = normalize_to_day(from_date) if from_date is not None else None
    subscriptions = session.exec(
        select(ExternalCalendar)
        .where(ExternalCalendar.property_id == property_id)
        .order_by(ExternalCalendar.id)
    ).all()
    return CalendarView(
        blocked=list_active(session, property_id, from_date=cutoff),
        subscriptions=list(subscriptions),
        export=get_export_artifact(session, property_id),
    )
