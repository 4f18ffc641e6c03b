"""
Network layer: single-attempt fetcher, retry coordinator, cancellation.
"""
from .cancellation import CancellationToken, NEVER_CANCELLED
from .fetcher import (
    CacheMode,
    ClientConfig,
    FeedFetcher,
    FeedResponse,
    NetworkStatus,
    classify_exception,
)
from .retry import RetryCoordinator, RetryPolicy, build_retry_policy

__all__ = [
    # Cancellation
    "CancellationToken",
    "NEVER_CANCELLED",
    # Fetcher
    "CacheMode",
    "ClientConfig",
    "FeedFetcher",
    "FeedResponse",
    "NetworkStatus",
    "classify_exception",
    # Retry
    "RetryCoordinator",
    "RetryPolicy",
    "build_retry_policy",
]
