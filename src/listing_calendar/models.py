from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import CheckConstraint, Index, UniqueConstraint
from sqlmodel import Field, SQLModel


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Settings(SQLModel, table=True):
    __tablename__ = "settings"

    key: str = Field(primary_key=True)
    value: str


class Property(SQLModel, table=True):
    __tablename__ = "properties"

    id: int | None = Field(default=None, primary_key=True)
    property_number: str = Field(index=True, unique=True)
    deleted_at: str | None = None


class ExternalCalendar(SQLModel, table=True):
    __tablename__ = "property_external_calendars"

    id: int | None = Field(default=None, primary_key=True)
    property_id: int = Field(foreign_key="properties.id", index=True)
    calendar_name: str
    feed_url: str
    is_enabled: bool = Field(default=True)
    last_sync_at: str | None = None
    last_sync_error: str | None = None
    total_events: int = Field(default=0)
    created_at: str = Field(default_factory=_utc_now_iso)


class BlockedDate(SQLModel, table=True):
    __tablename__ = "property_calendar"
    __table_args__ = (
        UniqueConstraint("property_id", "blocked_date", name="uq_property_calendar_property_date"),
        Index("ix_property_calendar_source", "property_id", "source_calendar_id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    property_id: int = Field(foreign_key="properties.id")
    blocked_date: date
    reason: str | None = None
    is_check_in: bool = Field(default=False)
    is_check_out: bool = Field(default=False)
    source_calendar_id: int | None = Field(default=None, foreign_key="property_external_calendars.id")
    event_uid: str | None = None
    created_at: str = Field(default_factory=_utc_now_iso)

    @property
    def is_manual(self) -> bool:
        return self.source_calendar_id is None


class ExternalCalendarEvent(SQLModel, table=True):
    __tablename__ = "property_external_calendar_events"
    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="ck_external_events_end_not_before_start"),
    )

    id: int | None = Field(default=None, primary_key=True)
    subscription_id: int = Field(foreign_key="property_external_calendars.id", index=True)
    property_id: int = Field(foreign_key="properties.id", index=True)
    event_uid: str
    start_date: date
    end_date: date
    summary: str | None = None


class ExportArtifact(SQLModel, table=True):
    __tablename__ = "property_ics"

    id: int | None = Field(default=None, primary_key=True)
    property_id: int = Field(foreign_key="properties.id", unique=True)
    url: str
    filename: str
    file_path: str
    total_blocked_days: int
    updated_at: str = Field(default_factory=_utc_now_iso)
