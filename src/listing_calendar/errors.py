from __future__ import annotations


class AvailabilityError(Exception):
    """Base class for availability core failures surfaced to callers."""


class InvalidRangeError(AvailabilityError, ValueError):
    """Raised when a requested period ends before it starts."""


class InvalidFeedError(AvailabilityError, ValueError):
    """Raised when a feed URL fails validation at subscription time."""

    def __init__(self, feed_url: str, reason: str):
        super().__init__(f"Invalid calendar feed: {reason}")
        self.feed_url = feed_url
        self.reason = reason


class FeedSyncError(AvailabilityError):
    """Per-subscription sync failure. Reported, never raised by sync_all."""

    def __init__(self, subscription_id: int, calendar_name: str, reason: str):
        super().__init__(f"{calendar_name}: {reason}")
        self.subscription_id = subscription_id
        self.calendar_name = calendar_name
        self.reason = reason


class NotFoundError(AvailabilityError, LookupError):
    """Raised when a property or subscription is missing or out of scope."""


class TransactionError(AvailabilityError):
    """Raised after rollback when the store fails mid unit of work."""

    retryable = True
