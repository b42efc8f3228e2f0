from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone as _utc_tz
import logging
import time

from sqlalchemy import delete
from sqlmodel import Session, select

from listing_calendar.blocked_dates import delete_by_source, get_blocked_date, upsert_blocked_date
from listing_calendar.connectors.ics_feed import FeedConnector, FeedEvent
from listing_calendar.db import get_active_property, property_lock, unit_of_work
from listing_calendar.errors import FeedSyncError, InvalidRangeError
from listing_calendar.export_service import FeedPublisher, regenerate_export
from listing_calendar.models import BlockedDate, ExternalCalendar, ExternalCalendarEvent, Property
from listing_calendar.sync_runner import (
    FeedFetchJob,
    FleetSyncOutcome,
    PropertySyncOutcome,
    SleepFn,
    fetch_feeds,
)
from listing_calendar.timeutil import expand_range

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncReport:
    property_id: int
    synced_count: int
    total_events: int
    export_url: str | None
    errors: list[FeedSyncError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class _DayClaim:
    reason: str
    event_uid: str


@dataclass(frozen=True)
class _PreparedFeed:
    subscription: ExternalCalendar
    events: list[FeedEvent]
    claims: dict[date, _DayClaim]


def sync_all(
    session: Session,
    property_id: int,
    *,
    connector: FeedConnector,
    publisher: FeedPublisher,
    retries: int = 0,
    backoff_sec: int = 0,
    parallel: bool = False,
    sleep_fn: SleepFn = time.sleep,
    timezone_name: str = "UTC",
) -> SyncReport:
    """Refresh the days of every enabled feed of one property.

    Each feed that fetches and parses cleanly has its previous days replaced
    by the current ones. A failing feed keeps its previous days and gets its
    error recorded. All writes and the export regeneration share one unit of
    work.
    """
    get_active_property(session, property_id)
    subscriptions = session.exec(
        select(ExternalCalendar)
        .where(ExternalCalendar.property_id == property_id)
        .where(ExternalCalendar.is_enabled == True)  # noqa: E712
        .order_by(ExternalCalendar.id)
    ).all()
    logger.info(
        "feed_sync_started property_id=%s subscriptions=%s",
        property_id,
        len(subscriptions),
    )

    jobs = [
        FeedFetchJob(
            subscription_id=subscription.id,
            calendar_name=subscription.calendar_name,
            feed_url=subscription.feed_url,
        )
        for subscription in subscriptions
    ]
    outcomes = fetch_feeds(
        jobs,
        connector=connector,
        retries=retries,
        backoff_sec=backoff_sec,
        sleep_fn=sleep_fn,
        parallel=parallel,
    )

    by_id = {subscription.id: subscription for subscription in subscriptions}
    prepared: list[_PreparedFeed] = []
    errors: list[FeedSyncError] = []
    for outcome in outcomes:
        subscription = by_id[outcome.job.subscription_id]
        if not outcome.success or outcome.result is None:
            errors.append(_feed_error(subscription, outcome.reason or "sync failed"))
            continue
        try:
            claims = _claims_for_events(outcome.result.events)
        except InvalidRangeError as exc:
            errors.append(_feed_error(subscription, str(exc)))
            continue
        prepared.append(_PreparedFeed(subscription=subscription, events=outcome.result.events, claims=claims))

    synced_at = datetime.now(_utc_tz.utc).isoformat()
    total_events = 0
    with property_lock(property_id), unit_of_work(session):
        for feed in prepared:
            _replace_feed_days(session, property_id, feed)
            feed.subscription.last_sync_at = synced_at
            feed.subscription.last_sync_error = None
            feed.subscription.total_events = len(feed.events)
            session.add(feed.subscription)
            total_events += len(feed.events)
            logger.info(
                "feed_sync_completed property_id=%s subscription_id=%s events=%s days=%s",
                property_id,
                feed.subscription.id,
                len(feed.events),
                len(feed.claims),
            )

        for error in errors:
            subscription = by_id[error.subscription_id]
            subscription.last_sync_error = error.reason
            session.add(subscription)
            logger.error(
                "feed_sync_failed property_id=%s subscription_id=%s reason=%s",
                property_id,
                error.subscription_id,
                error.reason,
            )

        session.flush()
        artifact = regenerate_export(session, property_id, publisher=publisher, timezone_name=timezone_name)
        export_url = artifact.url if artifact is not None else None

    logger.info(
        "property_sync_completed property_id=%s synced=%s failed=%s total_events=%s",
        property_id,
        len(prepared),
        len(errors),
        total_events,
    )
    return SyncReport(
        property_id=property_id,
        synced_count=len(prepared),
        total_events=total_events,
        export_url=export_url,
        errors=errors,
    )


def sync_all_properties(
    session_factory: Callable[[], Session],
    **kwargs,
) -> FleetSyncOutcome:
    """Run sync_all for every active property that has an enabled feed.

    Each property gets its own session, so one property's failure never
    rolls back another's.
    """
    started_at = time.perf_counter()
    with session_factory() as session:
        property_ids = session.exec(
            select(Property.id)
            .join(ExternalCalendar, ExternalCalendar.property_id == Property.id)
            .where(Property.deleted_at.is_(None))
            .where(ExternalCalendar.is_enabled == True)  # noqa: E712
            .distinct()
            .order_by(Property.id)
        ).all()

    outcomes: list[PropertySyncOutcome] = []
    for property_id in property_ids:
        with session_factory() as session:
            try:
                report = sync_all(session, property_id, **kwargs)
            except Exception as exc:
                logger.error(
                    "property_sync_failed property_id=%s error_type=%s",
                    property_id,
                    exc.__class__.__name__,
                )
                outcomes.append(
                    PropertySyncOutcome(
                        property_id=property_id,
                        success=False,
                        reason=str(exc) or exc.__class__.__name__,
                    )
                )
                continue
        outcomes.append(
            PropertySyncOutcome(
                property_id=property_id,
                success=report.synced_count > 0 or not report.errors,
                synced_count=report.synced_count,
                failed_count=len(report.errors),
                total_events=report.total_events,
                reason="; ".join(str(error) for error in report.errors) or None,
            )
        )

    return FleetSyncOutcome(properties=outcomes, elapsed_sec=time.perf_counter() - started_at)


def _claims_for_events(events: list[FeedEvent]) -> dict[date, _DayClaim]:
    claims: dict[date, _DayClaim] = {}
    for event in events:
        for day in expand_range(event.start_date, event.end_date):
            claims[day] = _DayClaim(reason=event.summary, event_uid=event.uid)
    return claims


def _replace_feed_days(session: Session, property_id: int, feed: _PreparedFeed) -> None:
    subscription_id = feed.subscription.id
    previous_days = set(
        session.exec(
            select(BlockedDate.blocked_date)
            .where(BlockedDate.property_id == property_id)
            .where(BlockedDate.source_calendar_id == subscription_id)
        ).all()
    )
    delete_by_source(session, property_id, subscription_id)
    for day in sorted(feed.claims):
        claim = feed.claims[day]
        upsert_blocked_date(
            session,
            property_id,
            day,
            reason=claim.reason,
            source_calendar_id=subscription_id,
            event_uid=claim.event_uid,
        )

    session.execute(
        delete(ExternalCalendarEvent).where(ExternalCalendarEvent.subscription_id == subscription_id)
    )
    for event in feed.events:
        session.add(
            ExternalCalendarEvent(
                subscription_id=subscription_id,
                property_id=property_id,
                event_uid=event.uid,
                start_date=event.start_date,
                end_date=event.end_date,
                summary=event.summary,
            )
        )

    dropped = sorted(previous_days - feed.claims.keys())
    if dropped:
        _reclaim_days(session, property_id, subscription_id, dropped)


def _reclaim_days(session: Session, property_id: int, released_by: int, days: list[date]) -> None:
    """Give days a feed no longer claims to another feed whose snapshot still does.

    Each BlockedDate row records one source, so a day shared by two feeds is
    stored under whichever was applied last.
    """
    snapshot = session.exec(
        select(ExternalCalendarEvent)
        .where(ExternalCalendarEvent.property_id == property_id)
        .where(ExternalCalendarEvent.subscription_id != released_by)
        .where(ExternalCalendarEvent.start_date <= days[-1])
        .where(ExternalCalendarEvent.end_date >= days[0])
        .order_by(ExternalCalendarEvent.subscription_id, ExternalCalendarEvent.start_date)
    ).all()
    reclaimed = 0
    for day in days:
        event = next((item for item in snapshot if item.start_date <= day <= item.end_date), None)
        if event is None or get_blocked_date(session, property_id, day) is not None:
            continue
        upsert_blocked_date(
            session,
            property_id,
            day,
            reason=event.summary,
            source_calendar_id=event.subscription_id,
            event_uid=event.event_uid,
        )
        reclaimed += 1
    if reclaimed:
        logger.info(
            "feed_days_reclaimed property_id=%s released_by=%s days=%s",
            property_id,
            released_by,
            reclaimed,
        )


def _feed_error(subscription: ExternalCalendar, reason: str) -> FeedSyncError:
    return FeedSyncError(
        subscription_id=subscription.id,
        calendar_name=subscription.calendar_name,
        reason=reason,
    )
