from __future__ import annotations

from collections.abc import Iterable
from datetime import date

from sqlmodel import Session, select

from listing_calendar.models import BlockedDate
from listing_calendar.timeutil import DayRun, merge_contiguous


def get_blocked_date(session: Session, property_id: int, day: date) -> BlockedDate | None:
    return session.exec(
        select(BlockedDate)
        .where(BlockedDate.property_id == property_id)
        .where(BlockedDate.blocked_date == day)
    ).first()


def upsert_blocked_date(
    session: Session,
    property_id: int,
    day: date,
    *,
    reason: str | None = None,
    is_check_in: bool = False,
    is_check_out: bool = False,
    source_calendar_id: int | None = None,
    event_uid: str | None = None,
) -> BlockedDate:
    """Write one blocked day; an existing (property, day) row is overwritten in place."""
    row = get_blocked_date(session, property_id, day)
    if row is None:
        row = BlockedDate(property_id=property_id, blocked_date=day)

    row.reason = reason
    row.is_check_in = is_check_in
    row.is_check_out = is_check_out
    row.source_calendar_id = source_calendar_id
    row.event_uid = event_uid
    session.add(row)
    # Flush per row so a second write to the same day in this unit of work finds it.
    session.flush()
    return row


def delete_by_dates(session: Session, property_id: int, days: Iterable[date]) -> int:
    wanted = set(days)
    if not wanted:
        return 0

    rows = session.exec(
        select(BlockedDate)
        .where(BlockedDate.property_id == property_id)
        .where(BlockedDate.blocked_date.in_(sorted(wanted)))
    ).all()
    for row in rows:
        session.delete(row)
    session.flush()
    return len(rows)


def delete_by_source(session: Session, property_id: int, source_calendar_id: int) -> int:
    rows = session.exec(
        select(BlockedDate)
        .where(BlockedDate.property_id == property_id)
        .where(BlockedDate.source_calendar_id == source_calendar_id)
    ).all()
    for row in rows:
        session.delete(row)
    session.flush()
    return len(rows)


def detach_source(session: Session, property_id: int, source_calendar_id: int) -> int:
    """Turn a subscription's rows into manual-equivalent rows."""
    rows = session.exec(
        select(BlockedDate)
        .where(BlockedDate.property_id == property_id)
        .where(BlockedDate.source_calendar_id == source_calendar_id)
    ).all()
    for row in rows:
        row.source_calendar_id = None
        session.add(row)
    session.flush()
    return len(rows)


def list_active(session: Session, property_id: int, from_date: date | None = None) -> list[BlockedDate]:
    query = select(BlockedDate).where(BlockedDate.property_id == property_id)
    if from_date is not None:
        query = query.where(BlockedDate.blocked_date >= from_date)
    return list(session.exec(query.order_by(BlockedDate.blocked_date)).all())


def list_runs_from(session: Session, property_id: int, cutoff: date) -> list[DayRun]:
    rows = list_active(session, property_id, from_date=cutoff)
    return list(merge_contiguous(row.blocked_date for row in rows))


def nearest_run(session: Session, property_id: int, cutoff: date) -> DayRun | None:
    rows = list_active(session, property_id, from_date=cutoff)
    for run in merge_contiguous(row.blocked_date for row in rows):
        return run
    return None
