from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlmodel import Session, select

from listing_calendar.db import DEFAULT_SETTINGS
from listing_calendar.models import Settings

ALLOWED_SETTING_KEYS: set[str] = set(DEFAULT_SETTINGS)

_NON_NEGATIVE_INT_KEYS: set[str] = {"feed_retries", "feed_backoff_sec", "feed_lookback_days"}
_POSITIVE_INT_KEYS: set[str] = {"feed_lookahead_days"}
_POSITIVE_FLOAT_KEYS: set[str] = {"feed_timeout_sec"}
_BOOL_KEYS: set[str] = {"sync_parallel"}
_BOOL_VALUES: dict[str, bool] = {"true": True, "false": False}


@dataclass(frozen=True)
class RuntimeSettings:
    export_dir: Path
    export_url_base: str
    export_timezone: str
    feed_timeout_sec: float
    feed_retries: int
    feed_backoff_sec: int
    feed_lookback_days: int
    feed_lookahead_days: int
    sync_parallel: bool


def validate_setting(key: str, value: str) -> None:
    if key not in ALLOWED_SETTING_KEYS:
        allowed = ", ".join(sorted(ALLOWED_SETTING_KEYS))
        raise ValueError(f"Unknown setting key: {key}. Allowed keys: {allowed}.")

    if key == "export_timezone":
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Invalid timezone '{value}'. Expected a valid IANA timezone.") from exc
        return

    if key in {"export_dir", "export_url_base"}:
        if not value.strip():
            raise ValueError(f"Invalid value for {key}: must not be empty.")
        return

    if key in _NON_NEGATIVE_INT_KEYS:
        parsed = _parse_int(value, key)
        if parsed < 0:
            raise ValueError(f"Invalid value for {key}: must be an integer >= 0.")
        return

    if key in _POSITIVE_INT_KEYS:
        parsed = _parse_int(value, key)
        if parsed < 1:
            raise ValueError(f"Invalid value for {key}: must be an integer >= 1.")
        return

    if key in _POSITIVE_FLOAT_KEYS:
        parsed_float = _parse_float(value, key)
        if parsed_float <= 0:
            raise ValueError(f"Invalid value for {key}: must be a number > 0.")
        return

    if key in _BOOL_KEYS:
        if value.strip().lower() not in _BOOL_VALUES:
            raise ValueError(f"Invalid value for {key}: must be true or false.")
        return


def _parse_int(value: str, key: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid value for {key}: must be an integer.") from exc


def _parse_float(value: str, key: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid value for {key}: must be a float.") from exc


def list_settings(session: Session) -> list[Settings]:
    return session.exec(select(Settings).order_by(Settings.key)).all()


def upsert_setting(session: Session, key: str, value: str) -> Settings:
    validate_setting(key, value)

    setting = session.get(Settings, key)
    if setting is None:
        setting = Settings(key=key, value=value)
        session.add(setting)
    else:
        setting.value = value

    session.commit()
    session.refresh(setting)
    return setting


def load_runtime_settings(session: Session) -> RuntimeSettings:
    """Stored settings over defaults, parsed into their runtime types."""
    values = dict(DEFAULT_SETTINGS)
    for setting in list_settings(session):
        if setting.key in ALLOWED_SETTING_KEYS:
            values[setting.key] = setting.value

    return RuntimeSettings(
        export_dir=Path(values["export_dir"]).expanduser(),
        export_url_base=values["export_url_base"],
        export_timezone=values["export_timezone"],
        feed_timeout_sec=_parse_float(values["feed_timeout_sec"], "feed_timeout_sec"),
        feed_retries=_parse_int(values["feed_retries"], "feed_retries"),
        feed_backoff_sec=_parse_int(values["feed_backoff_sec"], "feed_backoff_sec"),
        feed_lookback_days=_parse_int(values["feed_lookback_days"], "feed_lookback_days"),
        feed_lookahead_days=_parse_int(values["feed_lookahead_days"], "feed_lookahead_days"),
        sync_parallel=_BOOL_VALUES.get(values["sync_parallel"].strip().lower(), True),
    )
