from __future__ import annotations

from datetime import date

import pytest
from sqlmodel import Session, SQLModel, create_engine

from listing_calendar.block_service import block_period
from listing_calendar.conflicts import ContestedRun, analyze_conflicts
from listing_calendar.connectors.ics_feed import FeedEvent, FeedFetchResult
from listing_calendar.errors import NotFoundError
from listing_calendar.export_service import LocalFeedPublisher
from listing_calendar.models import ExternalCalendar, Property
from listing_calendar.sync_service import sync_all


def _create_engine(tmp_path):
    db_path = tmp_path / "conflicts.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    return engine


class FakeConnector:
    def __init__(self, responses: dict[str, list[FeedEvent]]):
        self.responses = responses

    def fetch_events(self, url: str) -> FeedFetchResult:
        return FeedFetchResult(events=list(self.responses[url]))


def _event(uid: str, start: date, end: date) -> FeedEvent:
    return FeedEvent(uid=uid, start_date=start, end_date=end, summary="Reserved")


def _seed(session: Session, tmp_path, responses: dict[str, list[FeedEvent]]) -> tuple[Property, dict[str, int]]:
    prop = Property(property_number="A-101")
    session.add(prop)
    session.commit()
    session.refresh(prop)

    ids: dict[str, int] = {}
    for name, url in (("A", "https://a.example/cal.ics"), ("B", "https://b.example/cal.ics"), ("C", "https://c.example/cal.ics")):
        feed = ExternalCalendar(property_id=prop.id, calendar_name=name, feed_url=url)
        session.add(feed)
        session.commit()
        session.refresh(feed)
        ids[name] = feed.id

    sync_all(
        session,
        prop.id,
        connector=FakeConnector(responses),
        publisher=LocalFeedPublisher(export_dir=tmp_path / "ics"),
    )
    return prop, ids


def test_overlapping_feeds_produce_one_contested_run(tmp_path) -> None:
    engine = _create_engine(tmp_path)

    with Session(engine) as session:
        prop, ids = _seed(
            session,
            tmp_path,
            {
                "https://a.example/cal.ics": [_event("a", date(2025, 4, 1), date(2025, 4, 3))],
                "https://b.example/cal.ics": [_event("b", date(2025, 4, 2), date(2025, 4, 5))],
                "https://c.example/cal.ics": [],
            },
        )

        report = analyze_conflicts(session, prop.id, [ids["A"], ids["B"]])

    assert report.contested_runs == [ContestedRun(start=date(2025, 4, 2), end=date(2025, 4, 3), calendars=("A", "B"))]
    assert report.contested_days == 2
    assert report.calendars_analyzed == 2
    assert report.has_conflicts is True


def test_runs_split_when_owner_set_changes(tmp_path) -> None:
    engine = _create_engine(tmp_path)

    with Session(engine) as session:
        prop, ids = _seed(
            session,
            tmp_path,
            {
                "https://a.example/cal.ics": [_event("a", date(2025, 4, 1), date(2025, 4, 4))],
                "https://b.example/cal.ics": [_event("b", date(2025, 4, 1), date(2025, 4, 2))],
                "https://c.example/cal.ics": [_event("c", date(2025, 4, 3), date(2025, 4, 3))],
            },
        )

        report = analyze_conflicts(session, prop.id, [ids["C"], ids["A"], ids["B"]])

    assert report.contested_runs == [
        ContestedRun(start=date(2025, 4, 1), end=date(2025, 4, 2), calendars=("A", "B")),
        ContestedRun(start=date(2025, 4, 3), end=date(2025, 4, 3), calendars=("A", "C")),
    ]
    assert report.contested_days == 3
    assert report.calendars_analyzed == 3


def test_disjoint_feeds_have_no_conflicts(tmp_path) -> None:
    engine = _create_engine(tmp_path)

    with Session(engine) as session:
        prop, ids = _seed(
            session,
            tmp_path,
            {
                "https://a.example/cal.ics": [_event("a", date(2025, 4, 1), date(2025, 4, 1))],
                "https://b.example/cal.ics": [_event("b", date(2025, 4, 2), date(2025, 4, 2))],
                "https://c.example/cal.ics": [],
            },
        )

        report = analyze_conflicts(session, prop.id, [ids["A"], ids["B"]])

    assert report.contested_runs == []
    assert report.contested_days == 0
    assert report.has_conflicts is False


def test_manual_block_over_synced_day_is_contested_when_included(tmp_path) -> None:
    engine = _create_engine(tmp_path)
    publisher = LocalFeedPublisher(export_dir=tmp_path / "ics")

    with Session(engine) as session:
        prop, ids = _seed(
            session,
            tmp_path,
            {
                "https://a.example/cal.ics": [_event("a", date(2025, 4, 1), date(2025, 4, 2))],
                "https://b.example/cal.ics": [],
                "https://c.example/cal.ics": [],
            },
        )
        block_period(session, prop.id, "2025-04-02", "2025-04-02", "Owner stay", publisher=publisher)

        assert analyze_conflicts(session, prop.id, [ids["A"]]).contested_runs == []
        report = analyze_conflicts(session, prop.id, [ids["A"]], include_manual=True)

    assert report.contested_runs == [
        ContestedRun(start=date(2025, 4, 2), end=date(2025, 4, 2), calendars=("A", "manual"))
    ]


def test_unknown_or_foreign_calendar_ids_are_rejected(tmp_path) -> None:
    engine = _create_engine(tmp_path)

    with Session(engine) as session:
        prop, ids = _seed(
            session,
            tmp_path,
            {"https://a.example/cal.ics": [], "https://b.example/cal.ics": [], "https://c.example/cal.ics": []},
        )
        other = Property(property_number="B-202")
        session.add(other)
        session.commit()
        session.refresh(other)

        with pytest.raises(NotFoundError, match="999"):
            analyze_conflicts(session, prop.id, [ids["A"], 999])
        with pytest.raises(NotFoundError):
            analyze_conflicts(session, other.id, [ids["A"]])
        with pytest.raises(ValueError):
            analyze_conflicts(session, prop.id, [])


def test_feeds_sharing_a_name_are_still_separate_sources(tmp_path) -> None:
    engine = _create_engine(tmp_path)
    publisher = LocalFeedPublisher(export_dir=tmp_path / "ics")
    responses = {
        "https://a.example/cal.ics": [_event("a", date(2025, 4, 1), date(2025, 4, 3))],
        "https://b.example/cal.ics": [_event("b", date(2025, 4, 2), date(2025, 4, 5))],
        "https://m.example/cal.ics": [_event("m", date(2025, 4, 10), date(2025, 4, 10))],
    }

    with Session(engine) as session:
        prop = Property(property_number="A-101")
        session.add(prop)
        session.commit()
        session.refresh(prop)
        feeds = [
            ExternalCalendar(property_id=prop.id, calendar_name="Airbnb", feed_url="https://a.example/cal.ics"),
            ExternalCalendar(property_id=prop.id, calendar_name="Airbnb", feed_url="https://b.example/cal.ics"),
            ExternalCalendar(property_id=prop.id, calendar_name="manual", feed_url="https://m.example/cal.ics"),
        ]
        for feed in feeds:
            session.add(feed)
        session.commit()
        ids = [feed.id for feed in feeds]

        sync_all(session, prop.id, connector=FakeConnector(responses), publisher=publisher)
        block_period(session, prop.id, "2025-04-10", "2025-04-10", publisher=publisher)

        report = analyze_conflicts(session, prop.id, ids[:2])
        manual_report = analyze_conflicts(session, prop.id, [ids[2]], include_manual=True)

    assert report.contested_runs == [
        ContestedRun(start=date(2025, 4, 2), end=date(2025, 4, 3), calendars=("Airbnb", "Airbnb"))
    ]
    assert manual_report.contested_runs == [
        ContestedRun(start=date(2025, 4, 10), end=date(2025, 4, 10), calendars=("manual", "manual"))
    ]
