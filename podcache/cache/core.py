"""
Core cache data structures.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from podcache.feeds.models import Episode, format_date, parse_date


class CacheState(Enum):
    """Lifecycle state recorded on an entry."""
    FRESH = "fresh"
    STALE = "stale"
    MIGRATING = "migrating"   # Written by the legacy migrator, never refreshed yet


class Freshness(Enum):
    """Result of classifying an entry against the minimum TTL."""
    MISSING = "missing"
    FRESH = "fresh"
    STALE = "stale"


class CacheSource(Enum):
    """Where the items of a CacheResult came from."""
    FRESH = "fresh"         # Within TTL, served from cache
    STALE = "stale"         # Refresh failed, served stale cache
    UPSTREAM = "upstream"   # Fetched (or revalidated) from the feed
    NONE = "none"           # Nothing cached and nothing fetched


@dataclass
class CacheEntry:
    """
    Cached episodes of one show.

    Only the cache manager and the legacy migrator construct or replace
    entries; callers receive copies of `items`.
    """
    key: str
    items: List[Episode]
    fetched_at: datetime
    source_modified_hint: Optional[str] = None
    state: CacheState = CacheState.FRESH

    def age_seconds(self, now: datetime) -> float:
        """Seconds between fetch and `now`."""
        return (now - self.fetched_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "items": [item.to_dict() for item in self.items],
            "fetched_at": format_date(self.fetched_at),
            "source_modified_hint": self.source_modified_hint,
            "state": self.state.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        fetched_at = parse_date(data.get("fetched_at"))
        if fetched_at is None:
            raise KeyError("Cache entry is missing 'fetched_at'")
        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=timezone.utc)
        return cls(
            key=data["key"],
            items=[Episode.from_dict(item) for item in data.get("items", [])],
            fetched_at=fetched_at,
            source_modified_hint=data.get("source_modified_hint"),
            state=CacheState(data.get("state", CacheState.FRESH.value)),
        )


@dataclass
class Changeset:
    """
    Difference between two versions of a show's episode list.

    An episode id appears in at most one of the three lists.
    """
    added: List[Episode] = field(default_factory=list)
    removed: List[Episode] = field(default_factory=list)
    updated: List[Episode] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.updated)

    def summary(self) -> str:
        return f"+{len(self.added)} -{len(self.removed)} ~{len(self.updated)}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "added": [item.id for item in self.added],
            "removed": [item.id for item in self.removed],
            "updated": [item.id for item in self.updated],
        }


@dataclass
class CacheResult:
    """
    Outcome of CacheManager.get().

    `error` is set when a refresh failed; `items` then holds the stale cache
    (or nothing). `warnings` carries non-fatal problems such as a failed
    durable write on an otherwise successful refresh.
    """
    items: List[Episode]
    changeset: Optional[Changeset] = None
    error: Optional[Exception] = None
    warnings: List[str] = field(default_factory=list)
    source: CacheSource = CacheSource.FRESH
    fetched_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class CacheStats:
    """Snapshot of the in-memory index."""
    total_keys: int
    fresh_count: int
    stale_count: int
    total_items: int = 0
    approx_size_bytes: int = 0
    in_flight: List[str] = field(default_factory=list)
    counters: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalKeys": self.total_keys,
            "freshCount": self.fresh_count,
            "staleCount": self.stale_count,
            "totalItems": self.total_items,
            "approxSizeBytes": self.approx_size_bytes,
            "inFlight": self.in_flight,
            "counters": self.counters,
        }
