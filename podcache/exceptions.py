"""
Exception classes for podcache.

Exception Hierarchy:
    PodcacheError (base)
        FetchError - a network fetch failed (carries a FetchErrorKind)
            FetchCancelledError - the caller withdrew before completion
            ExhaustedRetriesError - every attempt of every profile failed
        FeedDecodeError - the remote payload is not a usable feed
        StorageError - a durable store read/write failed
        MigrationError - the legacy cache source cannot be enumerated
        UnknownShowError - no feed URL is registered for a collection key
        RefreshError - a refresh failed and stale cached data was served
"""
from enum import Enum
from typing import Optional


class FetchErrorKind(Enum):
    """Classification of a single failed fetch attempt."""
    TIMEOUT = "timeout"
    CONNECTION_FAILED = "connection_failed"
    DNS_FAILURE = "dns_failure"
    HTTP_STATUS = "http_status"
    CANCELLED = "cancelled"
    OTHER = "other"


class PodcacheError(Exception):
    """Base exception for all podcache errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class FetchError(PodcacheError):
    """
    A fetch attempt failed.

    Attributes:
        kind: Classification used by the retry coordinator
        status_code: HTTP status for kind == HTTP_STATUS, else None
        url: The resource that was requested
    """

    def __init__(
        self,
        kind: FetchErrorKind,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.kind = kind
        self.url = url
        self.status_code = status_code

    @property
    def is_retryable(self) -> bool:
        """
        Transient failures worth another attempt.

        Timeouts, connection and DNS failures, HTTP 5xx and HTTP 429.
        Everything else (4xx, cancellation, unclassified) is terminal.
        """
        if self.kind in (
            FetchErrorKind.TIMEOUT,
            FetchErrorKind.CONNECTION_FAILED,
            FetchErrorKind.DNS_FAILURE,
        ):
            return True
        if self.kind == FetchErrorKind.HTTP_STATUS and self.status_code is not None:
            return self.status_code == 429 or 500 <= self.status_code < 600
        return False


class FetchCancelledError(FetchError):
    """Raised when a fetch, a backoff sleep or a coalesced wait is cancelled."""

    def __init__(self, message: str = "Fetch cancelled", url: Optional[str] = None):
        super().__init__(FetchErrorKind.CANCELLED, message, url=url)


class ExhaustedRetriesError(FetchError):
    """Every attempt on every fallback profile failed with a retryable error."""

    def __init__(self, last_error: FetchError, attempts: int):
        super().__init__(
            last_error.kind,
            f"Gave up after {attempts} attempts: {last_error.message}",
            url=last_error.url,
            status_code=last_error.status_code,
            details={"attempts": attempts},
        )
        self.last_error = last_error
        self.attempts = attempts


class FeedDecodeError(PodcacheError):
    """The fetched payload could not be decoded into episodes."""
    pass


class StorageError(PodcacheError):
    """A durable store operation failed."""
    pass


class MigrationError(PodcacheError):
    """The legacy cache representation exists but cannot be enumerated."""
    pass


class UnknownShowError(PodcacheError):
    """No feed URL is known for the requested collection key."""
    pass


class RefreshError(PodcacheError):
    """
    A refresh failed but cached data was served instead.

    Attributes:
        key: Collection key whose refresh failed
        cause: The underlying error (FetchError, FeedDecodeError, ...)
    """

    def __init__(self, key: str, cause: Exception):
        super().__init__(
            f"Refresh failed for {key}, serving cached data: {cause}",
            details={"key": key},
        )
        self.key = key
        self.cause = cause
