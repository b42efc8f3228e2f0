from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
import logging
import os
from pathlib import Path
import re
import tempfile
from typing import Protocol

from sqlmodel import Session, select

from listing_calendar.blocked_dates import list_active
from listing_calendar.db import get_active_property, on_commit, on_rollback, property_lock
from listing_calendar.models import BlockedDate, ExportArtifact, Property
from listing_calendar.timeutil import is_adjacent, next_day

logger = logging.getLogger(__name__)

PRODID = "-//listing-calendar//Property Calendar//EN"
UID_DOMAIN = "listing-calendar"
DEFAULT_SUMMARY = "Blocked"
DEFAULT_DESCRIPTION = "This property is blocked for the selected dates"
_MAX_LINE_OCTETS = 75


@dataclass(frozen=True)
class PublishedFeed:
    url: str
    file_path: str


@dataclass(frozen=True)
class StagedFeed:
    url: str
    file_path: str
    staged_path: str


class FeedPublisher(Protocol):
    def stage(self, filename: str, content: str) -> StagedFeed: ...

    def promote(self, staged: StagedFeed) -> PublishedFeed: ...

    def discard(self, staged: StagedFeed) -> None: ...

    def remove(self, file_path: str) -> None: ...


@dataclass(frozen=True)
class LocalFeedPublisher:
    """Writes feeds into a directory served under url_base.

    stage writes a hidden temp file; promote renames it over the target.
    """

    export_dir: Path
    url_base: str = "/ics"

    def stage(self, filename: str, content: str) -> StagedFeed:
        self.export_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.export_dir, prefix=f".{filename}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return StagedFeed(
            url=f"{self.url_base.rstrip('/')}/{filename}",
            file_path=str(self.export_dir / filename),
            staged_path=tmp_name,
        )

    def promote(self, staged: StagedFeed) -> PublishedFeed:
        os.replace(staged.staged_path, staged.file_path)
        return PublishedFeed(url=staged.url, file_path=staged.file_path)

    def discard(self, staged: StagedFeed) -> None:
        Path(staged.staged_path).unlink(missing_ok=True)

    def remove(self, file_path: str) -> None:
        Path(file_path).unlink(missing_ok=True)


@dataclass(frozen=True)
class _FeedRun:
    start: date
    end: date
    reason: str | None


def export_filename(prop: Property) -> str:
    safe_number = re.sub(r"[^A-Za-z0-9_-]+", "-", prop.property_number).strip("-") or "property"
    return f"property_{prop.id}_{safe_number}.ics"


def group_runs_by_reason(rows: list[BlockedDate]) -> list[_FeedRun]:
    """Consecutive days sharing the same reason become one run."""
    runs: list[_FeedRun] = []
    for row in sorted(rows, key=lambda item: item.blocked_date):
        if runs and is_adjacent(runs[-1].end, row.blocked_date) and runs[-1].reason == row.reason:
            runs[-1] = _FeedRun(start=runs[-1].start, end=row.blocked_date, reason=row.reason)
            continue
        runs.append(_FeedRun(start=row.blocked_date, end=row.blocked_date, reason=row.reason))
    return runs


def build_feed_content(
    property_number: str,
    rows: list[BlockedDate],
    *,
    generated_at: datetime,
    timezone_name: str = "UTC",
) -> str:
    stamp = generated_at.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        f"X-WR-CALNAME:{_escape_ical_text(f'Property {property_number} - Blocked Dates')}",
        f"X-WR-TIMEZONE:{timezone_name}",
        "X-WR-CALDESC:Blocked dates for property rental",
    ]
    for run in group_runs_by_reason(rows):
        lines.extend(
            [
                "BEGIN:VEVENT",
                f"UID:{property_number}-{run.start:%Y%m%d}@{UID_DOMAIN}",
                f"DTSTAMP:{stamp}",
                f"DTSTART;VALUE=DATE:{run.start:%Y%m%d}",
                f"DTEND;VALUE=DATE:{next_day(run.end):%Y%m%d}",
                f"SUMMARY:{_escape_ical_text(run.reason or DEFAULT_SUMMARY)}",
                f"DESCRIPTION:{_escape_ical_text(run.reason or DEFAULT_DESCRIPTION)}",
                "STATUS:CONFIRMED",
                "TRANSP:OPAQUE",
                "END:VEVENT",
            ]
        )
    lines.append("END:VCALENDAR")
    return "".join(f"{_fold_line(line)}\r\n" for line in lines)


def get_export_artifact(session: Session, property_id: int) -> ExportArtifact | None:
    return session.exec(select(ExportArtifact).where(ExportArtifact.property_id == property_id)).first()


def regenerate_export(
    session: Session,
    property_id: int,
    *,
    publisher: FeedPublisher,
    now: datetime | None = None,
    timezone_name: str = "UTC",
) -> ExportArtifact | None:
    """Rebuild the outbound feed from the property's full blocked-day set.

    Runs inside the caller's unit of work and does not commit. The file is
    staged now and only swapped in (or removed) once that unit of work
    commits; a rollback discards it. Returns None (and drops any previous
    artifact) when the property has no blocked days.
    """
    prop = get_active_property(session, property_id)
    with property_lock(property_id):
        rows = list_active(session, property_id)
        artifact = get_export_artifact(session, property_id)

        if not rows:
            if artifact is not None:
                stale_path = artifact.file_path
                on_commit(session, lambda: publisher.remove(stale_path))
                session.delete(artifact)
                session.flush()
                logger.info("export_removed property_id=%s", property_id)
            return None

        generated_at = now or datetime.now(timezone.utc)
        content = build_feed_content(
            prop.property_number,
            rows,
            generated_at=generated_at,
            timezone_name=timezone_name,
        )
        filename = export_filename(prop)
        staged = publisher.stage(filename, content)
        on_rollback(session, lambda: publisher.discard(staged))
        on_commit(session, lambda: _promote(publisher, staged, property_id))

        if artifact is None:
            artifact = ExportArtifact(
                property_id=property_id,
                url=staged.url,
                filename=filename,
                file_path=staged.file_path,
                total_blocked_days=len(rows),
            )
        artifact.url = staged.url
        artifact.filename = filename
        artifact.file_path = staged.file_path
        artifact.total_blocked_days = len(rows)
        artifact.updated_at = generated_at.isoformat()
        session.add(artifact)
        session.flush()

    logger.info(
        "export_regenerated property_id=%s blocked_days=%s filename=%s",
        property_id,
        len(rows),
        filename,
    )
    return artifact


def _promote(publisher: FeedPublisher, staged: StagedFeed, property_id: int) -> None:
    try:
        publisher.promote(staged)
    except OSError:
        logger.error("export_promote_failed property_id=%s file_path=%s", property_id, staged.file_path)
        publisher.discard(staged)
        raise


def _escape_ical_text(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def _fold_line(line: str) -> str:
    encoded = line.encode("utf-8")
    if len(encoded) <= _MAX_LINE_OCTETS:
        return line

    parts: list[str] = []
    current = ""
    limit = _MAX_LINE_OCTETS
    for char in line:
        if len((current + char).encode("utf-8")) > limit:
            parts.append(current)
            current = char
            # Continuation lines start with a space that counts toward the limit.
            limit = _MAX_LINE_OCTETS - 1
            continue
        current += char
    parts.append(current)
    return "\r\n ".join(parts)
