from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
import logging
import os
from pathlib import Path
import threading

from alembic import command
from alembic.config import Config
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, create_engine, select

from listing_calendar.errors import NotFoundError, TransactionError
from listing_calendar.models import Property, Settings

logger = logging.getLogger(__name__)

# /src/listing_calendar/db.py -> project root
PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_DATA_DIR = PROJECT_ROOT / ".data"
DEFAULT_DB_PATH = DEFAULT_DATA_DIR / "lcal.sqlite"

DEFAULT_SETTINGS: dict[str, str] = {
    "export_dir": str(DEFAULT_DATA_DIR / "ics"),
    "export_url_base": "/ics",
    "export_timezone": "UTC",
    "feed_timeout_sec": "15",
    "feed_retries": "2",
    "feed_backoff_sec": "5",
    "feed_lookback_days": "30",
    "feed_lookahead_days": "365",
    "sync_parallel": "true",
}


def get_db_path() -> Path:
    db_path_env = os.getenv("LCAL_DB_PATH")
    if not db_path_env:
        return DEFAULT_DB_PATH

    candidate = Path(db_path_env).expanduser()
    if candidate.is_absolute():
        return candidate
    return (Path.cwd() / candidate).resolve()


def ensure_db_directory() -> Path:
    db_path = get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return db_path


def get_database_url(*, ensure_directory: bool = False) -> str:
    db_path = ensure_db_directory() if ensure_directory else get_db_path()
    return f"sqlite:///{db_path}"


def get_engine(*, ensure_directory: bool = False):
    return create_engine(
        get_database_url(ensure_directory=ensure_directory),
        connect_args={"check_same_thread": False},
    )


def apply_migrations() -> None:
    ensure_db_directory()

    alembic_cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", get_database_url(ensure_directory=True))
    command.upgrade(alembic_cfg, "head")


def seed_defaults() -> None:
    engine = get_engine(ensure_directory=True)

    with Session(engine) as session:
        for key, value in DEFAULT_SETTINGS.items():
            existing = session.get(Settings, key)
            if existing is None:
                session.add(Settings(key=key, value=value))
        session.commit()


def initialize_database() -> Path:
    apply_migrations()
    seed_defaults()
    return get_db_path()


_property_locks: dict[int, threading.RLock] = {}
_property_locks_guard = threading.Lock()


@contextmanager
def property_lock(property_id: int) -> Iterator[None]:
    """Serialize mutations of one property within this process."""
    with _property_locks_guard:
        lock = _property_locks.setdefault(property_id, threading.RLock())
    with lock:
        yield


_ON_COMMIT_KEY = "listing_calendar.on_commit"
_ON_ROLLBACK_KEY = "listing_calendar.on_rollback"


def on_commit(session: Session, action: Callable[[], None]) -> None:
    """Run action once the enclosing unit_of_work has committed."""
    session.info.setdefault(_ON_COMMIT_KEY, []).append(action)


def on_rollback(session: Session, action: Callable[[], None]) -> None:
    """Run action if the enclosing unit_of_work rolls back instead."""
    session.info.setdefault(_ON_ROLLBACK_KEY, []).append(action)


def _run_hooks(session: Session, *, committed: bool) -> None:
    run_key, drop_key = (_ON_COMMIT_KEY, _ON_ROLLBACK_KEY) if committed else (_ON_ROLLBACK_KEY, _ON_COMMIT_KEY)
    session.info.pop(drop_key, None)
    for action in session.info.pop(run_key, []):
        action()


@contextmanager
def unit_of_work(session: Session) -> Iterator[Session]:
    """Commit everything written inside the block, or roll all of it back.

    Store failures surface as TransactionError; domain errors raised by the
    caller are re-raised unchanged after the rollback. Hooks registered with
    on_commit run only after a successful commit, on_rollback hooks only
    after a rollback.
    """
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        _run_hooks(session, committed=False)
        logger.error("unit_of_work_failed error_type=%s", exc.__class__.__name__)
        raise TransactionError("Storage failure; no changes were applied. Retry the operation.") from exc
    except Exception:
        session.rollback()
        _run_hooks(session, committed=False)
        raise
    _run_hooks(session, committed=True)


def get_active_property(session: Session, property_id: int) -> Property:
    prop = session.exec(
        select(Property)
        .where(Property.id == property_id)
        .where(Property.deleted_at.is_(None))
    ).first()
    if prop is None:
        raise NotFoundError(f"Property {property_id} not found.")
    return prop
