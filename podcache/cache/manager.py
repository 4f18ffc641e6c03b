"""
Main cache orchestration: freshness, coalesced refreshes, reconciliation and
persistence of each show's episode list.
"""
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from config.settings import settings
from podcache.exceptions import FeedDecodeError, PodcacheError, RefreshError, StorageError
from podcache.feeds.models import Episode
from podcache.feeds.parser import parse_feed
from podcache.network.cancellation import CancellationToken, NEVER_CANCELLED
from podcache.network.fetcher import FeedFetcher
from podcache.network.retry import RetryCoordinator, RetryPolicy, build_retry_policy
from podcache.stores import DurableStore

from .coalescer import RequestCoalescer
from .core import CacheEntry, CacheResult, CacheSource, CacheState, CacheStats, Changeset, Freshness
from .freshness import classify, is_expired
from .reconciler import merge
from .storage import CacheStorage, encode_entry

logger = logging.getLogger("cache.manager")

# Added to the retry budget when deriving how long callers wait on a refresh
COALESCE_MARGIN_SECONDS = 10.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _RefreshOutcome:
    """Shared result of one coalesced refresh."""
    entry: CacheEntry
    changeset: Changeset
    warnings: List[str] = field(default_factory=list)


class CacheManager:
    """
    Main cache orchestration with:
    - Freshness policy on an in-memory index lazily loaded from the store
    - Request coalescing so each show has at most one refresh in flight
    - Retries with backoff and fallback profiles for every refresh
    - Diff-based reconciliation that keeps user-local episode state
    - Stale-while-error: failed refreshes fall back to cached episodes

    All reads and writes of the in-memory index, and the durable writes that
    mirror them, happen under a single lock.
    """

    def __init__(
        self,
        store: DurableStore,
        url_resolver: Callable[[str], str],
        coordinator: Optional[RetryCoordinator] = None,
        policy: Optional[RetryPolicy] = None,
        min_ttl_seconds: Optional[float] = None,
        max_age_seconds: Optional[float] = None,
        strict_persistence: Optional[bool] = None,
        refresh_workers: Optional[int] = None,
        coalesce_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
        decoder: Callable[[bytes, str], List[Episode]] = parse_feed,
    ):
        """
        Initialize the cache manager.

        Args:
            store: Durable store mirroring the in-memory index
            url_resolver: Maps a collection key to its feed URL
            coordinator: Retry coordinator (default wraps a new FeedFetcher)
            policy: Retry policy (default built from settings)
            min_ttl_seconds: Freshness TTL
            max_age_seconds: Prune horizon used by prune_expired()
            strict_persistence: Only update the index after a successful write
            refresh_workers: Refreshes running at once across all shows
            coalesce_timeout: Max seconds a caller waits on a refresh
                (default covers the policy's whole retry chain)
            clock: Returns the current time (timezone-aware)
            decoder: Turns a feed body into episodes
        """
        self._storage = CacheStorage(store)
        self._resolve_url = url_resolver
        self._coordinator = coordinator or RetryCoordinator(FeedFetcher())
        self._policy = policy or build_retry_policy()
        self.min_ttl_seconds = (
            min_ttl_seconds if min_ttl_seconds is not None else settings.cache_min_ttl_seconds
        )
        self.max_age_seconds = (
            max_age_seconds if max_age_seconds is not None else settings.cache_max_age_seconds
        )
        self.strict_persistence = (
            strict_persistence if strict_persistence is not None
            else settings.cache_strict_persistence
        )
        self._clock = clock
        self._decode = decoder

        self._index: Dict[str, CacheEntry] = {}
        self._index_lock = threading.RLock()
        # Bumped by invalidate/clear_all so in-flight refreshes don't resurrect entries
        self._generations: Dict[str, int] = {}
        self._epoch = 0

        budget = self._policy.max_total_duration
        if coalesce_timeout is None:
            coalesce_timeout = settings.coalesce_timeout_seconds
        if coalesce_timeout is None:
            coalesce_timeout = budget + COALESCE_MARGIN_SECONDS
        elif coalesce_timeout < budget:
            logger.warning(
                f"Coalesce timeout {coalesce_timeout:.0f}s is shorter than the retry "
                f"budget of {budget:.0f}s; callers may give up before retries run out"
            )
        self.coalesce_timeout = coalesce_timeout

        self._coalescer = RequestCoalescer(
            timeout=coalesce_timeout,
            max_workers=refresh_workers or settings.refresh_workers,
        )

        # Stats tracking
        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "refreshes": 0,
            "refresh_failures": 0,
        }

    @property
    def storage(self) -> CacheStorage:
        """Entry-level view of the durable store backing this manager."""
        return self._storage

    # =========================================================================
    # Public interface
    # =========================================================================

    def get(
        self,
        key: str,
        force_refresh: bool = False,
        cancel_token: CancellationToken = NEVER_CANCELLED,
    ) -> CacheResult:
        """
        Get a show's episodes from cache or from its feed.

        Args:
            key: Collection key (show id)
            force_refresh: Refresh even if the cached entry is fresh
            cancel_token: Withdraws this caller's interest when cancelled

        Returns:
            CacheResult. On refresh failure `error` is set and `items` holds
            the stale cache (or is empty if nothing was cached).
        """
        now = self._clock()
        with self._index_lock:
            entry = self._lookup(key)
            freshness = classify(entry, now, self.min_ttl_seconds)

            if freshness == Freshness.FRESH and not force_refresh:
                logger.debug(f"CACHE HIT (fresh): {key} [age={entry.age_seconds(now):.1f}s]")
                self._stats["hits_fresh"] += 1
                return CacheResult(
                    items=list(entry.items),
                    source=CacheSource.FRESH,
                    fetched_at=entry.fetched_at,
                )

            if freshness == Freshness.STALE and entry.state == CacheState.FRESH:
                entry.state = CacheState.STALE

        if force_refresh:
            logger.info(f"FORCE REFRESH: {key}")
        elif freshness == Freshness.MISSING:
            logger.info(f"CACHE MISS: {key}")
        else:
            logger.info(f"CACHE STALE: {key} [age={entry.age_seconds(now):.1f}s]")

        try:
            outcome = self._coalescer.get_or_fetch(
                key,
                lambda token: self._refresh(key, token),
                cancel_token=cancel_token,
            )
        except (PodcacheError, TimeoutError) as e:
            return self._fallback(key, e)

        return CacheResult(
            items=list(outcome.entry.items),
            changeset=outcome.changeset,
            warnings=list(outcome.warnings),
            source=CacheSource.UPSTREAM,
            fetched_at=outcome.entry.fetched_at,
        )

    def get_cached(self, key: str) -> Optional[List[Episode]]:
        """Cached episodes if fresh, else None. Never touches the network."""
        with self._index_lock:
            entry = self._lookup(key)
            if classify(entry, self._clock(), self.min_ttl_seconds) != Freshness.FRESH:
                return None
            return list(entry.items)

    def has_fresh_cache(self, key: str) -> bool:
        return self.get_cached(key) is not None

    def update_episode(
        self,
        key: str,
        episode_id: str,
        played: Optional[bool] = None,
        playback_position: Optional[float] = None,
        local_file_url: Optional[str] = None,
    ) -> Optional[Episode]:
        """
        Change user-local state of one cached episode and persist it.

        Returns:
            The updated episode, or None if the show or episode is not cached

        Raises:
            StorageError: The durable write failed (the index keeps the change)
        """
        changes: Dict[str, Any] = {}
        if played is not None:
            changes["played"] = played
        if playback_position is not None:
            changes["playback_position"] = playback_position
        if local_file_url is not None:
            changes["local_file_url"] = local_file_url

        with self._index_lock:
            entry = self._lookup(key)
            if entry is None:
                return None
            for position, item in enumerate(entry.items):
                if item.id == episode_id:
                    # Replace rather than mutate; callers hold copies of the list
                    updated = replace(item, **changes)
                    entry.items[position] = updated
                    break
            else:
                return None
            self._storage.save_entry(entry)
        logger.debug(f"Updated episode {episode_id} of {key}: {changes}")
        return updated

    def invalidate(self, key: str) -> bool:
        """
        Remove a show's cached entry from memory and the durable store.

        Returns:
            True if an entry was found and removed
        """
        with self._index_lock:
            existed = self._index.pop(key, None) is not None
            existed = self._storage.has_entry(key) or existed
            self._generations[key] = self._generations.get(key, 0) + 1
            self._storage.delete_entry(key)
        if existed:
            logger.info(f"Invalidated cache: {key}")
        return existed

    def clear_all(self) -> int:
        """
        Clear all cache entries.

        Returns:
            Number of entries cleared
        """
        with self._index_lock:
            keys = list(self._index.keys())
            self._index.clear()
            self._epoch += 1
            count = self._storage.clear(extra_keys=keys)
        logger.info(f"Cleared {count} cache entries")
        return count

    def prune_expired(self, max_age_seconds: Optional[float] = None) -> int:
        """
        Drop entries older than the prune horizon.

        Returns:
            Number of entries removed
        """
        horizon = max_age_seconds if max_age_seconds is not None else self.max_age_seconds
        now = self._clock()
        removed = 0
        with self._index_lock:
            for key in set(self._index) | set(self._storage.keys()):
                entry = self._lookup(key)
                if entry is not None and is_expired(entry, now, horizon):
                    self._index.pop(key, None)
                    self._generations[key] = self._generations.get(key, 0) + 1
                    self._storage.delete_entry(key)
                    removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} old cache entries")
        return removed

    def stats(self) -> CacheStats:
        """Freshness counts over the in-memory index, computed now."""
        now = self._clock()
        with self._index_lock:
            entries = list(self._index.values())
            fresh = sum(
                1 for entry in entries
                if classify(entry, now, self.min_ttl_seconds) == Freshness.FRESH
            )
            return CacheStats(
                total_keys=len(entries),
                fresh_count=fresh,
                stale_count=len(entries) - fresh,
                total_items=sum(len(entry.items) for entry in entries),
                approx_size_bytes=sum(len(encode_entry(entry)) for entry in entries),
                in_flight=self._coalescer.get_stats()["active_keys"],
                counters=dict(self._stats),
            )

    def import_entry(self, entry: CacheEntry) -> bool:
        """
        Store an entry produced outside a refresh, such as a migrated one.

        An existing entry with the same or a newer fetch time wins.

        Returns:
            True if the entry was written

        Raises:
            StorageError: The durable write failed (the index is unchanged)
        """
        with self._index_lock:
            current = self._lookup(entry.key)
            if current is not None and current.fetched_at >= entry.fetched_at:
                return False
            self._storage.save_entry(entry)
            self._index[entry.key] = entry
        return True

    def shutdown(self) -> None:
        """Cancel running refreshes and stop the worker pools."""
        self._coalescer.shutdown(wait=True)
        self._coordinator.close()

    # =========================================================================
    # Internals
    # =========================================================================

    def _lookup(self, key: str) -> Optional[CacheEntry]:
        """In-memory entry, lazily loaded from the store. Caller holds the lock."""
        entry = self._index.get(key)
        if entry is None:
            entry = self._storage.load_entry(key)
            if entry is not None:
                self._index[key] = entry
                logger.debug(f"Loaded {key} from durable store ({len(entry.items)} episodes)")
        return entry

    def _generation(self, key: str):
        return (self._epoch, self._generations.get(key, 0))

    def _refresh(self, key: str, cancel_token: CancellationToken) -> _RefreshOutcome:
        """Fetch, reconcile and commit one show. Runs on a refresh worker."""
        url = self._resolve_url(key)
        with self._index_lock:
            previous = self._lookup(key)
            generation = self._generation(key)
        validator = previous.source_modified_hint if previous is not None else None

        response = self._coordinator.fetch_with_retry(
            url, self._policy, validator=validator, cancel_token=cancel_token
        )
        fetched = None if response.not_modified else self._decode(response.content, key)

        with self._index_lock:
            current = self._lookup(key)
            if response.not_modified:
                if current is None:
                    raise FeedDecodeError(f"{url} reported no changes but {key} is not cached")
                merged, changeset = list(current.items), Changeset()
            else:
                merged, changeset = merge(current.items if current else [], fetched)

            now = self._clock()
            fetched_at = max(now, current.fetched_at) if current else now
            entry = CacheEntry(
                key=key,
                items=merged,
                fetched_at=fetched_at,
                source_modified_hint=response.modified_hint
                or (current.source_modified_hint if current else None),
                state=CacheState.FRESH,
            )
            self._stats["refreshes"] += 1

            if self._generation(key) != generation:
                logger.info(f"Discarding refresh of {key}: invalidated while in flight")
                return _RefreshOutcome(entry=entry, changeset=changeset)

            warnings = self._commit(entry)

        logger.info(f"Refreshed {key}: {len(merged)} episodes ({changeset.summary()})")
        return _RefreshOutcome(entry=entry, changeset=changeset, warnings=warnings)

    def _commit(self, entry: CacheEntry) -> List[str]:
        """Persist and index an entry. Caller holds the lock."""
        if self.strict_persistence:
            self._storage.save_entry(entry)
            self._index[entry.key] = entry
            return []

        self._index[entry.key] = entry
        try:
            self._storage.save_entry(entry)
        except StorageError as e:
            logger.error(f"Episode cache for {entry.key} not persisted: {e}")
            return [f"Cache not persisted: {e}"]
        return []

    def _fallback(self, key: str, error: Exception) -> CacheResult:
        """Stale-while-error: cached episodes with the error, or just the error."""
        self._stats["refresh_failures"] += 1
        with self._index_lock:
            entry = self._index.get(key)

        if entry is not None:
            logger.warning(f"Using stale cache as fallback for {key}: {error}")
            self._stats["hits_stale"] += 1
            return CacheResult(
                items=list(entry.items),
                error=RefreshError(key, error),
                source=CacheSource.STALE,
                fetched_at=entry.fetched_at,
            )

        logger.error(f"No cached episodes for {key} and refresh failed: {error}")
        return CacheResult(items=[], error=error, source=CacheSource.NONE)
