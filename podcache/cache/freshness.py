"""
Freshness policy: decide whether a cached entry can be served as-is.
"""
from datetime import datetime
from typing import Optional

from .core import CacheEntry, Freshness


# Reference values (seconds); the manager takes its values from settings
DEFAULT_MIN_TTL_SECONDS = 3600
DEFAULT_MAX_AGE_SECONDS = 2 * 60 * 60


def classify(
    entry: Optional[CacheEntry],
    now: datetime,
    min_ttl_seconds: float = DEFAULT_MIN_TTL_SECONDS,
) -> Freshness:
    """
    Classify a cache entry.

    Args:
        entry: Cached entry, or None if nothing is cached
        now: Current time
        min_ttl_seconds: Age below which the entry is fresh

    Returns:
        MISSING if no entry, FRESH if younger than the TTL, else STALE
    """
    if entry is None:
        return Freshness.MISSING
    if entry.age_seconds(now) < min_ttl_seconds:
        return Freshness.FRESH
    return Freshness.STALE


def is_expired(
    entry: CacheEntry,
    now: datetime,
    max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
) -> bool:
    """True once an entry is past the prune horizon and should be dropped."""
    return entry.age_seconds(now) >= max_age_seconds
