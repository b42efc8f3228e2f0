from __future__ import annotations

from datetime import date

import pytest
from sqlmodel import Session, SQLModel, create_engine, select

from listing_calendar.block_service import block_period
from listing_calendar.blocked_dates import list_active
from listing_calendar.connectors.ics_feed import FeedEvent, FeedFetchResult, UnreachableError
from listing_calendar.errors import NotFoundError
from listing_calendar.export_service import LocalFeedPublisher
from listing_calendar.models import ExportArtifact, ExternalCalendar, ExternalCalendarEvent, Property
from listing_calendar.sync_service import sync_all, sync_all_properties


def _create_engine(tmp_path):
    db_path = tmp_path / "sync_service.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    return engine


def _seed_property(session: Session, number: str = "A-101") -> Property:
    prop = Property(property_number=number)
    session.add(prop)
    session.commit()
    session.refresh(prop)
    return prop


def _seed_feed(session: Session, prop: Property, name: str, url: str, *, enabled: bool = True) -> ExternalCalendar:
    feed = ExternalCalendar(property_id=prop.id, calendar_name=name, feed_url=url, is_enabled=enabled)
    session.add(feed)
    session.commit()
    session.refresh(feed)
    return feed


def _event(uid: str, start: date, end: date, summary: str = "Reserved") -> FeedEvent:
    return FeedEvent(uid=uid, start_date=start, end_date=end, summary=summary)


class FakeConnector:
    """Serves events per URL; a URL mapped to an exception fails."""

    def __init__(self, responses: dict[str, list[FeedEvent] | Exception]):
        self.responses = responses
        self.calls: list[str] = []

    def fetch_events(self, url: str) -> FeedFetchResult:
        self.calls.append(url)
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return FeedFetchResult(events=list(response))


def test_sync_all_replaces_only_the_feeds_own_days(tmp_path) -> None:
    engine = _create_engine(tmp_path)
    publisher = LocalFeedPublisher(export_dir=tmp_path / "ics")

    with Session(engine) as session:
        prop = _seed_property(session)
        feed_a = _seed_feed(session, prop, "Airbnb", "https://a.example/cal.ics")
        feed_b = _seed_feed(session, prop, "Booking", "https://b.example/cal.ics")
        block_period(session, prop.id, "2025-04-20", "2025-04-21", "Owner stay", publisher=publisher)

        connector = FakeConnector(
            {
                "https://a.example/cal.ics": [_event("a-1", date(2025, 4, 1), date(2025, 4, 3))],
                "https://b.example/cal.ics": [_event("b-1", date(2025, 4, 10), date(2025, 4, 11))],
            }
        )
        first = sync_all(session, prop.id, connector=connector, publisher=publisher)
        assert first.success is True
        assert first.synced_count == 2
        assert first.total_events == 2

        connector.responses["https://a.example/cal.ics"] = [_event("a-2", date(2025, 5, 1), date(2025, 5, 1))]
        second = sync_all(session, prop.id, connector=connector, publisher=publisher)

        rows = list_active(session, prop.id)
        by_source: dict[int | None, list[date]] = {}
        for row in rows:
            by_source.setdefault(row.source_calendar_id, []).append(row.blocked_date)

        assert second.success is True
        assert by_source[feed_a.id] == [date(2025, 5, 1)]
        assert by_source[feed_b.id] == [date(2025, 4, 10), date(2025, 4, 11)]
        assert by_source[None] == [date(2025, 4, 20), date(2025, 4, 21)]
        assert all(not row.is_check_in and not row.is_check_out for row in rows if row.source_calendar_id)
        assert session.exec(select(ExportArtifact)).one().total_blocked_days == len(rows) == 5

        snapshot = session.exec(
            select(ExternalCalendarEvent).where(ExternalCalendarEvent.subscription_id == feed_a.id)
        ).all()
        assert [event.event_uid for event in snapshot] == ["a-2"]


def test_sync_all_tolerates_a_failing_feed(tmp_path) -> None:
    engine = _create_engine(tmp_path)
    publisher = LocalFeedPublisher(export_dir=tmp_path / "ics")

    with Session(engine) as session:
        prop = _seed_property(session)
        feed_a = _seed_feed(session, prop, "Airbnb", "https://a.example/cal.ics")
        feed_b = _seed_feed(session, prop, "Booking", "https://b.example/cal.ics")
        connector = FakeConnector(
            {
                "https://a.example/cal.ics": [_event("a-1", date(2025, 4, 1), date(2025, 4, 2))],
                "https://b.example/cal.ics": [_event("b-1", date(2025, 4, 10), date(2025, 4, 10))],
            }
        )
        sync_all(session, prop.id, connector=connector, publisher=publisher)

        connector.responses["https://a.example/cal.ics"] = UnreachableError("Feed request failed with HTTP 503.")
        connector.responses["https://b.example/cal.ics"] = [_event("b-2", date(2025, 4, 15), date(2025, 4, 15))]
        report = sync_all(session, prop.id, connector=connector, publisher=publisher)

        assert report.success is False
        assert report.synced_count == 1
        assert [(error.subscription_id, error.calendar_name) for error in report.errors] == [(feed_a.id, "Airbnb")]
        assert "HTTP 503" in report.errors[0].reason

        session.refresh(feed_a)
        session.refresh(feed_b)
        assert feed_a.last_sync_error == "Feed request failed with HTTP 503."
        assert feed_a.total_events == 1
        assert feed_b.last_sync_error is None
        assert feed_b.last_sync_at is not None

        days = {row.blocked_date: row.source_calendar_id for row in list_active(session, prop.id)}
        assert days == {
            date(2025, 4, 1): feed_a.id,
            date(2025, 4, 2): feed_a.id,
            date(2025, 4, 15): feed_b.id,
        }


def test_sync_all_skips_disabled_feeds(tmp_path) -> None:
    engine = _create_engine(tmp_path)
    publisher = LocalFeedPublisher(export_dir=tmp_path / "ics")

    with Session(engine) as session:
        prop = _seed_property(session)
        _seed_feed(session, prop, "Airbnb", "https://a.example/cal.ics", enabled=False)
        connector = FakeConnector({})

        report = sync_all(session, prop.id, connector=connector, publisher=publisher)

        assert connector.calls == []
        assert report.synced_count == 0
        assert report.success is True
        assert report.export_url is None


def test_sync_all_records_reason_and_event_uid_and_retries(tmp_path) -> None:
    engine = _create_engine(tmp_path)
    publisher = LocalFeedPublisher(export_dir=tmp_path / "ics")
    sleeps: list[float] = []

    class FlakyConnector:
        def __init__(self):
            self.calls = 0

        def fetch_events(self, url: str) -> FeedFetchResult:
            self.calls += 1
            if self.calls == 1:
                raise UnreachableError("Feed request timed out.")
            return FeedFetchResult(events=[_event("uid-9", date(2025, 6, 1), date(2025, 6, 1), "Guest: Lee")])

    with Session(engine) as session:
        prop = _seed_property(session)
        _seed_feed(session, prop, "Airbnb", "https://a.example/cal.ics")
        connector = FlakyConnector()

        report = sync_all(
            session,
            prop.id,
            connector=connector,
            publisher=publisher,
            retries=2,
            backoff_sec=3,
            sleep_fn=sleeps.append,
        )

        [row] = list_active(session, prop.id)
        assert report.success is True
        assert connector.calls == 2
        assert sleeps == [3.0]
        assert row.reason == "Guest: Lee"
        assert row.event_uid == "uid-9"
        assert report.export_url == "/ics/property_1_A-101.ics"


def test_sync_all_unknown_property_is_not_found(tmp_path) -> None:
    engine = _create_engine(tmp_path)

    with Session(engine) as session:
        with pytest.raises(NotFoundError):
            sync_all(
                session,
                42,
                connector=FakeConnector({}),
                publisher=LocalFeedPublisher(export_dir=tmp_path / "ics"),
            )


def test_sync_all_properties_isolates_properties_and_reports_exit_code(tmp_path) -> None:
    engine = _create_engine(tmp_path)
    publisher = LocalFeedPublisher(export_dir=tmp_path / "ics")

    with Session(engine) as session:
        healthy = _seed_property(session, "A-101")
        broken = _seed_property(session, "B-202")
        idle = _seed_property(session, "C-303")
        _seed_feed(session, healthy, "Airbnb", "https://a.example/cal.ics")
        _seed_feed(session, broken, "Booking", "https://b.example/cal.ics")
        _seed_feed(session, idle, "Vrbo", "https://c.example/cal.ics", enabled=False)
        healthy_id, broken_id = healthy.id, broken.id

    connector = FakeConnector(
        {
            "https://a.example/cal.ics": [_event("a-1", date(2025, 4, 1), date(2025, 4, 1))],
            "https://b.example/cal.ics": UnreachableError("Feed URL is unreachable."),
        }
    )
    outcome = sync_all_properties(lambda: Session(engine), connector=connector, publisher=publisher)

    assert [item.property_id for item in outcome.properties] == [healthy_id, broken_id]
    assert outcome.properties[0].success is True
    assert outcome.properties[1].success is False
    assert outcome.properties[1].failed_count == 1
    assert outcome.exit_code == 2

    with Session(engine) as session:
        assert [row.blocked_date for row in list_active(session, healthy_id)] == [date(2025, 4, 1)]
        assert list_active(session, broken_id) == []


def test_sync_all_properties_all_failing_exits_one(tmp_path) -> None:
    engine = _create_engine(tmp_path)

    with Session(engine) as session:
        prop = _seed_property(session)
        _seed_feed(session, prop, "Airbnb", "https://a.example/cal.ics")

    connector = FakeConnector({"https://a.example/cal.ics": UnreachableError("Feed URL is unreachable.")})
    outcome = sync_all_properties(
        lambda: Session(engine),
        connector=connector,
        publisher=LocalFeedPublisher(export_dir=tmp_path / "ics"),
    )

    assert outcome.exit_code == 1


def test_day_shared_with_a_failing_feed_stays_blocked(tmp_path) -> None:
    engine = _create_engine(tmp_path)
    publisher = LocalFeedPublisher(export_dir=tmp_path / "ics")

    with Session(engine) as session:
        prop = _seed_property(session)
        feed_a = _seed_feed(session, prop, "Airbnb", "https://a.example/cal.ics")
        _seed_feed(session, prop, "Booking", "https://b.example/cal.ics")
        feed_a_id = feed_a.id
        connector = FakeConnector(
            {
                "https://a.example/cal.ics": [_event("a-1", date(2025, 5, 5), date(2025, 5, 5), "Airbnb stay")],
                "https://b.example/cal.ics": [_event("b-1", date(2025, 5, 5), date(2025, 5, 6))],
            }
        )
        sync_all(session, prop.id, connector=connector, publisher=publisher)

        connector.responses["https://a.example/cal.ics"] = UnreachableError("Feed URL is unreachable.")
        connector.responses["https://b.example/cal.ics"] = []
        report = sync_all(session, prop.id, connector=connector, publisher=publisher)

        rows = list_active(session, prop.id)

    assert report.synced_count == 1
    assert [(row.blocked_date, row.source_calendar_id, row.event_uid) for row in rows] == [
        (date(2025, 5, 5), feed_a_id, "a-1")
    ]
    assert rows[0].reason == "Airbnb stay"
    assert "20250505" in (tmp_path / "ics" / "property_1_A-101.ics").read_text(encoding="utf-8")
