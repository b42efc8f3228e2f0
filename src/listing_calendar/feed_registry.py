from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import delete
from sqlmodel import Session, select

from listing_calendar.blocked_dates import delete_by_source, detach_source
from listing_calendar.connectors.ics_feed import FeedConnector, FeedConnectorError, normalize_feed_url, redact_url
from listing_calendar.db import get_active_property, property_lock, unit_of_work
from listing_calendar.errors import InvalidFeedError, NotFoundError
from listing_calendar.export_service import FeedPublisher, regenerate_export
from listing_calendar.models import ExternalCalendar, ExternalCalendarEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionResult:
    subscription_id: int
    feed_url: str
    events_count: int


@dataclass(frozen=True)
class RemovalResult:
    subscription_id: int
    removed_dates: int
    detached_dates: int
    export_url: str | None


def add_subscription(
    session: Session,
    property_id: int,
    name: str,
    feed_url: str,
    *,
    connector: FeedConnector,
) -> SubscriptionResult:
    """Validate a feed by fetching it once, then persist the subscription.

    Nothing is written when the feed cannot be fetched or parsed. A feed
    without events is a valid subscription.
    """
    calendar_name = name.strip()
    if not calendar_name:
        raise ValueError("Calendar name must not be empty.")
    try:
        url = normalize_feed_url(feed_url)
    except ValueError as exc:
        raise InvalidFeedError(feed_url, str(exc)) from exc

    get_active_property(session, property_id)
    try:
        result = connector.fetch_events(url)
    except FeedConnectorError as exc:
        logger.warning(
            "feed_validation_failed property_id=%s url=%s error_type=%s",
            property_id,
            redact_url(url),
            exc.__class__.__name__,
        )
        raise InvalidFeedError(url, str(exc)) from exc

    with unit_of_work(session):
        subscription = ExternalCalendar(
            property_id=property_id,
            calendar_name=calendar_name,
            feed_url=url,
            total_events=result.events_count,
        )
        session.add(subscription)
        session.flush()
        subscription_id = subscription.id

    logger.info(
        "feed_subscription_added property_id=%s subscription_id=%s events=%s",
        property_id,
        subscription_id,
        result.events_count,
    )
    return SubscriptionResult(
        subscription_id=subscription_id,
        feed_url=url,
        events_count=result.events_count,
    )


def list_subscriptions(session: Session, property_id: int, *, enabled_only: bool = False) -> list[ExternalCalendar]:
    get_active_property(session, property_id)
    query = select(ExternalCalendar).where(ExternalCalendar.property_id == property_id)
    if enabled_only:
        query = query.where(ExternalCalendar.is_enabled == True)  # noqa: E712
    return list(session.exec(query.order_by(ExternalCalendar.id)).all())


def get_subscription(session: Session, subscription_id: int, *, property_id: int | None = None) -> ExternalCalendar:
    subscription = session.get(ExternalCalendar, subscription_id)
    if subscription is None or (property_id is not None and subscription.property_id != property_id):
        raise NotFoundError(f"External calendar {subscription_id} not found.")
    return subscription


def toggle_subscription(
    session: Session,
    subscription_id: int,
    enabled: bool,
    *,
    property_id: int | None = None,
) -> ExternalCalendar:
    """Enable or disable a feed. Its synced days are left as they are."""
    subscription = get_subscription(session, subscription_id, property_id=property_id)
    with unit_of_work(session):
        subscription.is_enabled = enabled
        session.add(subscription)
    session.refresh(subscription)

    logger.info(
        "feed_subscription_toggled subscription_id=%s enabled=%s",
        subscription_id,
        enabled,
    )
    return subscription


def remove_subscription(
    session: Session,
    property_id: int,
    subscription_id: int,
    also_remove_dates: bool,
    *,
    publisher: FeedPublisher,
    timezone_name: str = "UTC",
) -> RemovalResult:
    """Delete a subscription and its event snapshot.

    With also_remove_dates the days it synced are deleted too; otherwise they
    stay blocked as manual days.
    """
    get_active_property(session, property_id)
    subscription = get_subscription(session, subscription_id, property_id=property_id)

    removed = 0
    detached = 0
    with property_lock(property_id), unit_of_work(session):
        if also_remove_dates:
            removed = delete_by_source(session, property_id, subscription_id)
        else:
            detached = detach_source(session, property_id, subscription_id)
        session.execute(
            delete(ExternalCalendarEvent).where(ExternalCalendarEvent.subscription_id == subscription_id)
        )
        session.delete(subscription)
        session.flush()
        artifact = regenerate_export(session, property_id, publisher=publisher, timezone_name=timezone_name)
        export_url = artifact.url if artifact is not None else None

    logger.info(
        "feed_subscription_removed property_id=%s subscription_id=%s removed_dates=%s detached_dates=%s",
        property_id,
        subscription_id,
        removed,
        detached,
    )
    return RemovalResult(
        subscription_id=subscription_id,
        removed_dates=removed,
        detached_dates=detached,
        export_url=export_url,
    )
