from __future__ import annotations

from datetime import date
import threading

import pytest
from sqlmodel import Session, SQLModel, create_engine, select

from listing_calendar.db import get_active_property, get_db_path, on_commit, on_rollback, property_lock, unit_of_work
from listing_calendar.errors import NotFoundError, TransactionError
from listing_calendar.models import BlockedDate, Property


def _create_engine(tmp_path):
    db_path = tmp_path / "db.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    return engine


def test_get_db_path_resolves_relative_env_against_cwd(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LCAL_DB_PATH", "data/cal.sqlite")

    assert get_db_path() == (tmp_path / "data" / "cal.sqlite").resolve()


def test_unit_of_work_wraps_store_failures_and_rolls_back(tmp_path) -> None:
    engine = _create_engine(tmp_path)

    with Session(engine) as session:
        prop = Property(property_number="A-101")
        session.add(prop)
        session.commit()
        session.refresh(prop)
        property_id = prop.id

        with pytest.raises(TransactionError) as exc_info:
            with unit_of_work(session):
                session.add(BlockedDate(property_id=property_id, blocked_date=date(2025, 4, 2)))
                session.add(BlockedDate(property_id=property_id, blocked_date=date(2025, 4, 1)))
                session.add(BlockedDate(property_id=property_id, blocked_date=date(2025, 4, 1)))
        assert exc_info.value.retryable is True

        assert session.exec(select(BlockedDate)).all() == []


def test_unit_of_work_reraises_domain_errors_after_rollback(tmp_path) -> None:
    engine = _create_engine(tmp_path)

    with Session(engine) as session:
        prop = Property(property_number="A-101")
        session.add(prop)
        session.commit()
        session.refresh(prop)
        property_id = prop.id

        with pytest.raises(ValueError, match="boom"):
            with unit_of_work(session):
                session.add(BlockedDate(property_id=property_id, blocked_date=date(2025, 4, 1)))
                session.flush()
                raise ValueError("boom")

        assert session.exec(select(BlockedDate)).all() == []


def test_get_active_property_skips_soft_deleted(tmp_path) -> None:
    engine = _create_engine(tmp_path)

    with Session(engine) as session:
        prop = Property(property_number="A-101", deleted_at="2025-01-01T00:00:00+00:00")
        session.add(prop)
        session.commit()
        session.refresh(prop)

        with pytest.raises(NotFoundError, match="not found"):
            get_active_property(session, prop.id)


def test_property_lock_is_reentrant_and_serializes_threads() -> None:
    events: list[str] = []
    entered = threading.Event()

    def _worker() -> None:
        entered.set()
        with property_lock(77):
            events.append("worker")

    with property_lock(77):
        with property_lock(77):
            thread = threading.Thread(target=_worker)
            thread.start()
            entered.wait(timeout=1)
            events.append("main")
    thread.join(timeout=1)

    assert events == ["main", "worker"]


def test_unit_of_work_runs_commit_or_rollback_hooks(tmp_path) -> None:
    engine = _create_engine(tmp_path)
    calls: list[str] = []

    with Session(engine) as session:
        with unit_of_work(session):
            on_commit(session, lambda: calls.append("committed"))
            on_rollback(session, lambda: calls.append("rolled back"))
        assert calls == ["committed"]

        with pytest.raises(ValueError):
            with unit_of_work(session):
                on_commit(session, lambda: calls.append("committed again"))
                on_rollback(session, lambda: calls.append("rolled back"))
                raise ValueError("boom")
        assert calls == ["committed", "rolled back"]

        with unit_of_work(session):
            pass
        assert calls == ["committed", "rolled back"]
