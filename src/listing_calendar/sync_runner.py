from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from collections.abc import Callable, Sequence
from dataclasses import dataclass
import logging
import time

from listing_calendar.connectors.ics_feed import (
    FeedConnector,
    FeedConnectorError,
    FeedFetchResult,
    MalformedFeedError,
)

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], None]
MAX_FETCH_WORKERS = 4


@dataclass(frozen=True)
class FeedFetchJob:
    subscription_id: int
    calendar_name: str
    feed_url: str


@dataclass(frozen=True)
class FeedFetchOutcome:
    job: FeedFetchJob
    success: bool
    attempts: int
    result: FeedFetchResult | None = None
    reason: str | None = None
    elapsed_sec: float = 0.0


@dataclass(frozen=True)
class PropertySyncOutcome:
    property_id: int
    success: bool
    synced_count: int = 0
    failed_count: int = 0
    total_events: int = 0
    reason: str | None = None


@dataclass(frozen=True)
class FleetSyncOutcome:
    properties: list[PropertySyncOutcome]
    elapsed_sec: float = 0.0

    @property
    def exit_code(self) -> int:
        if all(item.success and item.failed_count == 0 for item in self.properties):
            return 0
        if any(item.success for item in self.properties):
            return 2
        return 1


def fetch_feeds(
    jobs: Sequence[FeedFetchJob],
    *,
    connector: FeedConnector,
    retries: int = 0,
    backoff_sec: int = 0,
    sleep_fn: SleepFn = time.sleep,
    parallel: bool = False,
) -> list[FeedFetchOutcome]:
    """Fetch every feed, retrying network failures with exponential backoff.

    Outcomes come back in job order. No database access happens here, so
    workers never share a session.
    """
    if retries < 0:
        raise ValueError("--retries must be >= 0.")
    if backoff_sec < 0:
        raise ValueError("--backoff-sec must be >= 0.")
    if not jobs:
        return []

    if parallel and len(jobs) > 1:
        workers = min(MAX_FETCH_WORKERS, len(jobs))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lcal-feed") as pool:
            futures = [
                pool.submit(
                    _fetch_one,
                    job=job,
                    connector=connector,
                    retries=retries,
                    backoff_sec=backoff_sec,
                    sleep_fn=sleep_fn,
                )
                for job in jobs
            ]
            return [future.result() for future in futures]

    return [
        _fetch_one(
            job=job,
            connector=connector,
            retries=retries,
            backoff_sec=backoff_sec,
            sleep_fn=sleep_fn,
        )
        for job in jobs
    ]


def _fetch_one(
    *,
    job: FeedFetchJob,
    connector: FeedConnector,
    retries: int,
    backoff_sec: int,
    sleep_fn: SleepFn,
) -> FeedFetchOutcome:
    started_at = time.perf_counter()
    last_error: Exception | None = None
    attempts = 0
    for attempt in range(retries + 1):
        attempts = attempt + 1
        try:
            result = connector.fetch_events(job.feed_url)
            return FeedFetchOutcome(
                job=job,
                success=True,
                attempts=attempts,
                result=result,
                elapsed_sec=time.perf_counter() - started_at,
            )
        except Exception as exc:
            last_error = exc
            logger.warning(
                "feed_fetch_attempt_failed subscription_id=%s attempt=%s retries=%s error_type=%s",
                job.subscription_id,
                attempts,
                retries,
                exc.__class__.__name__,
            )
            # A feed that parsed badly will parse badly again.
            if isinstance(exc, MalformedFeedError) or attempt == retries:
                break
            delay_sec = backoff_sec * (2**attempt)
            logger.info(
                "feed_fetch_retrying subscription_id=%s next_attempt=%s backoff_sec=%s",
                job.subscription_id,
                attempt + 2,
                delay_sec,
            )
            sleep_fn(float(delay_sec))

    assert last_error is not None
    return FeedFetchOutcome(
        job=job,
        success=False,
        attempts=attempts,
        reason=_sanitize_reason(last_error),
        elapsed_sec=time.perf_counter() - started_at,
    )


def _sanitize_reason(error: Exception) -> str:
    if isinstance(error, FeedConnectorError):
        return str(error) or "feed connector unavailable"
    if isinstance(error, ValueError):
        return "feed validation failed"
    return f"unexpected {error.__class__.__name__}"
