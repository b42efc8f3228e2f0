from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse, urlunparse
from urllib.request import Request, urlopen

from dateutil.rrule import rrulestr

logger = logging.getLogger(__name__)

USER_AGENT = "listing-calendar feed sync/1.0"
DEFAULT_TIMEOUT_SEC = 15.0
_DEFAULT_SUMMARY = "Booked"
_ALLOWED_SCHEMES = {"http", "https"}


class FeedConnectorError(RuntimeError):
    """Raised when a calendar feed cannot be fetched or understood."""


class UnreachableError(FeedConnectorError):
    """Network failure, HTTP error status or timeout while fetching a feed."""


class MalformedFeedError(FeedConnectorError):
    """The feed was fetched but is not a usable iCalendar document."""


@dataclass(frozen=True)
class FeedEvent:
    uid: str
    start_date: date
    end_date: date  # inclusive last blocked day
    summary: str
    description: str | None = None


@dataclass(frozen=True)
class FeedFetchResult:
    events: list[FeedEvent]

    @property
    def events_count(self) -> int:
        return len(self.events)


class FeedConnector(Protocol):
    def fetch_events(self, url: str) -> FeedFetchResult: ...


def normalize_feed_url(url: str) -> str:
    """Trim a feed URL and rewrite webcal:// to https://. Raises ValueError."""
    value = url.strip()
    if not value:
        raise ValueError("Feed URL must not be empty.")
    parsed = urlparse(value)
    scheme = parsed.scheme.lower()
    if scheme == "webcal":
        parsed = parsed._replace(scheme="https")
        scheme = "https"
    if scheme not in _ALLOWED_SCHEMES or not parsed.netloc:
        raise ValueError("Feed URL must be an absolute http(s):// or webcal:// URL.")
    return urlunparse(parsed)


def redact_url(url: str) -> str:
    """Feed URL without query string or credentials, safe for logs and errors."""
    parsed = urlparse(url)
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return urlunparse((parsed.scheme, host, parsed.path, "", "", ""))


@dataclass(frozen=True)
class IcsFeedConnector:
    timeout_sec: float = DEFAULT_TIMEOUT_SEC
    lookback_days: int = 30
    lookahead_days: int = 365
    today_fn: Callable[[], date] = date.today

    def fetch_events(self, url: str) -> FeedFetchResult:
        payload = self._request(url)
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            text = payload.decode("latin-1")

        today = self.today_fn()
        events = parse_ics_events(
            text,
            window_start=today - timedelta(days=self.lookback_days),
            window_end=today + timedelta(days=self.lookahead_days),
        )
        logger.info("feed_fetched url=%s events=%s", redact_url(url), len(events))
        return FeedFetchResult(events=events)

    def _request(self, url: str) -> bytes:
        request = Request(
            url,
            method="GET",
            headers={
                "User-Agent": USER_AGENT,
                "Accept": "text/calendar, text/plain;q=0.9, */*;q=0.5",
            },
        )
        safe_url = redact_url(url)
        try:
            with urlopen(request, timeout=self.timeout_sec) as response:
                return response.read()
        except HTTPError as exc:
            logger.warning("feed_http_error url=%s status=%s", safe_url, exc.code)
            raise UnreachableError(f"Feed request failed with HTTP {exc.code}.") from None
        except URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                raise UnreachableError("Feed request timed out.") from None
            raise UnreachableError("Feed URL is unreachable.") from None
        except TimeoutError:
            raise UnreachableError("Feed request timed out.") from None


def parse_ics_events(
    calendar_data: str,
    *,
    window_start: date,
    window_end: date,
) -> list[FeedEvent]:
    """Parse VEVENTs into inclusive day ranges.

    Recurring events are expanded only inside [window_start, window_end]; an
    event whose RRULE cannot be read is skipped with a warning. Raises
    MalformedFeedError when the payload is not an iCalendar document or an
    event's range cannot be read.
    """
    lines = _unfold_ical_lines(calendar_data)
    if not lines or lines[0].strip().upper() != "BEGIN:VCALENDAR":
        raise MalformedFeedError("Feed is not an iCalendar document.")

    events_by_uid: dict[str, FeedEvent] = {}
    # RECURRENCE-ID overrides may precede their master; applied after all masters.
    overrides: dict[str, FeedEvent] = {}
    in_event = False
    current_lines: list[str] = []

    for line in lines:
        upper = line.strip().upper()
        if upper == "BEGIN:VEVENT":
            in_event = True
            current_lines = []
            continue
        if upper == "END:VEVENT":
            if not in_event:
                raise MalformedFeedError("Feed contains END:VEVENT without BEGIN:VEVENT.")
            instances, is_override = _parse_event_instances(
                current_lines, window_start=window_start, window_end=window_end
            )
            target = overrides if is_override else events_by_uid
            for event in instances:
                target[event.uid] = event
            in_event = False
            current_lines = []
            continue
        if in_event:
            current_lines.append(line)

    if in_event:
        raise MalformedFeedError("Feed ends inside an unterminated VEVENT.")

    events_by_uid.update(overrides)
    return sorted(events_by_uid.values(), key=lambda event: (event.start_date, event.uid))


_FieldValue = tuple[dict[str, str], str]


def _unfold_ical_lines(calendar_data: str) -> list[str]:
    raw_lines = calendar_data.lstrip("\ufeff").replace("\r\n", "\n").replace("\r", "\n").split("\n")
    unfolded: list[str] = []
    for line in raw_lines:
        if not line:
            continue
        if line[0] in {" ", "\t"} and unfolded:
            unfolded[-1] += line[1:]
        else:
            unfolded.append(line)
    return unfolded


def _parse_event_fields(lines: list[str]) -> dict[str, list[_FieldValue]]:
    values: dict[str, list[_FieldValue]] = {}
    for line in lines:
        if ":" not in line:
            continue
        raw_name, raw_value = line.split(":", maxsplit=1)
        parts = raw_name.split(";")
        name = parts[0].upper()
        params: dict[str, str] = {}
        for item in parts[1:]:
            if "=" not in item:
                continue
            key, value = item.split("=", maxsplit=1)
            params[key.upper()] = value.strip('"')
        values.setdefault(name, []).append((params, raw_value))
    return values


def _first_field(values: dict[str, list[_FieldValue]], name: str) -> _FieldValue | None:
    options = values.get(name.upper())
    if not options:
        return None
    return options[0]


def _all_fields(values: dict[str, list[_FieldValue]], name: str) -> list[_FieldValue]:
    return values.get(name.upper(), [])


def _parse_event_instances(
    lines: list[str],
    *,
    window_start: date,
    window_end: date,
) -> tuple[list[FeedEvent], bool]:
    """Instances of one VEVENT inside the window, and whether it overrides a recurrence."""
    values = _parse_event_fields(lines)

    dtstart_field = _first_field(values, "DTSTART")
    if dtstart_field is None:
        return [], False
    start_day, _ = _parse_ical_day(dtstart_field)
    end_day = _resolve_end_day(values, start_day=start_day)
    if end_day < start_day:
        raise MalformedFeedError(
            f"Event ends before it starts ({start_day.isoformat()} > {end_day.isoformat()})."
        )

    uid_field = _first_field(values, "UID")
    uid = (uid_field[1] if uid_field else "").strip()
    if not uid:
        uid = f"anon-{start_day:%Y%m%d}-{end_day:%Y%m%d}"

    summary_field = _first_field(values, "SUMMARY")
    summary_raw = summary_field[1].strip() if summary_field else ""
    summary = _decode_ical_text(summary_raw) if summary_raw else _DEFAULT_SUMMARY
    description_field = _first_field(values, "DESCRIPTION")
    description_raw = description_field[1].strip() if description_field else ""
    description = _decode_ical_text(description_raw) if description_raw else None

    recurrence_id_field = _first_field(values, "RECURRENCE-ID")
    if recurrence_id_field is not None:
        recurrence_day, _ = _parse_ical_day(recurrence_id_field)
        uid = f"{uid};{recurrence_day:%Y%m%d}"

    rrule_field = _first_field(values, "RRULE")
    single = [FeedEvent(uid=uid, start_date=start_day, end_date=end_day, summary=summary, description=description)]
    if recurrence_id_field is not None:
        return single, True
    if rrule_field is None:
        return single, False

    span = timedelta(days=(end_day - start_day).days)
    excluded_days = {
        day
        for field in _all_fields(values, "EXDATE")
        for day in _parse_ical_day_list(field)
    }
    try:
        rule = rrulestr(_floating_rule(rrule_field[1].strip()), dtstart=datetime.combine(start_day, time.min))
        occurrence_starts = rule.between(
            datetime.combine(window_start, time.min) - span,
            datetime.combine(window_end, time.min),
            inc=True,
        )
    except (ValueError, TypeError):
        logger.warning("feed_rrule_parse_failed uid=%s", uid)
        return [], False

    instances: list[FeedEvent] = []
    for occurrence in occurrence_starts:
        occurrence_day = occurrence.date()
        if occurrence_day in excluded_days:
            continue
        instances.append(
            FeedEvent(
                uid=f"{uid};{occurrence_day:%Y%m%d}",
                start_date=occurrence_day,
                end_date=occurrence_day + span,
                summary=summary,
                description=description,
            )
        )
    return instances, False


def _floating_rule(rule_text: str) -> str:
    """Drop the UTC marker from UNTIL so it compares with a floating all-day DTSTART."""
    parts = []
    for part in rule_text.split(";"):
        if part.upper().startswith("UNTIL="):
            part = part.rstrip("Zz")
        parts.append(part)
    return ";".join(parts)


def _resolve_end_day(values: dict[str, list[_FieldValue]], *, start_day: date) -> date:
    dtend_field = _first_field(values, "DTEND")
    if dtend_field is not None:
        end_day, end_is_date = _parse_ical_day(dtend_field)
        # DTEND is exclusive: a VALUE=DATE end or a midnight end frees that day.
        if (end_is_date or _is_midnight(dtend_field)) and end_day > start_day:
            return end_day - timedelta(days=1)
        return end_day

    duration_field = _first_field(values, "DURATION")
    if duration_field is not None:
        days = _parse_duration_days(duration_field[1].strip())
        if days > 0:
            return start_day + timedelta(days=days - 1)

    return start_day


def _parse_duration_days(value: str) -> int:
    upper = value.upper().lstrip("+")
    if not upper.startswith("P"):
        raise MalformedFeedError(f"Unsupported DURATION value: {value}")
    body = upper[1:].split("T", maxsplit=1)[0]
    days = 0
    number = ""
    for char in body:
        if char.isdigit():
            number += char
            continue
        if char == "W" and number:
            days += int(number) * 7
        elif char == "D" and number:
            days += int(number)
        number = ""
    return days


def _parse_ical_day(field: _FieldValue) -> tuple[date, bool]:
    """Calendar day as written in the field, and whether it was a date-only value."""
    params, raw_value = field
    value = raw_value.strip()
    if not value:
        raise MalformedFeedError("Event has an empty date value.")

    is_date = params.get("VALUE", "").upper() == "DATE" or "T" not in value
    try:
        return datetime.strptime(value[:8], "%Y%m%d").date(), is_date
    except ValueError:
        raise MalformedFeedError(f"Unsupported iCal date value: {value}") from None


def _parse_ical_day_list(field: _FieldValue) -> list[date]:
    params, raw_value = field
    return [_parse_ical_day((params, chunk))[0] for chunk in raw_value.split(",") if chunk.strip()]


def _is_midnight(field: _FieldValue) -> bool:
    value = field[1].strip().rstrip("Z")
    if "T" not in value:
        return False
    return value.split("T", maxsplit=1)[1].ljust(6, "0")[:6] == "000000"


def _decode_ical_text(raw: str) -> str:
    value = raw.replace("\\n", "\n").replace("\\N", "\n")
    value = value.replace("\\,", ",").replace("\\;", ";")
    value = value.replace("\\\\", "\\")
    return value
