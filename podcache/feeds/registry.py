"""
Registry of subscribed shows: collection key -> feed URL.

With a durable store the subscriptions are kept in one JSON blob so that
cached shows stay reachable after a restart.
"""
import json
import logging
import threading
from typing import Dict, List, Optional

from podcache.exceptions import StorageError, UnknownShowError
from podcache.stores import DurableStore

from .models import Show

logger = logging.getLogger("feeds.registry")

SHOWS_KEY = "shows:__index__"


class ShowRegistry:
    """
    Thread-safe map of show id to Show.

    `feed_url` is the resolver the cache manager uses to turn a collection
    key into the resource to fetch.
    """

    def __init__(self, shows: Optional[List[Show]] = None, store: Optional[DurableStore] = None):
        """
        Args:
            shows: Initial subscriptions (added to any persisted ones)
            store: Durable store the subscriptions are loaded from and saved to
        """
        self._store = store
        self._lock = threading.Lock()
        self._shows: Dict[str, Show] = self._load()
        for show in shows or []:
            self._shows[show.id] = show
        if shows:
            self._save()

    def _load(self) -> Dict[str, Show]:
        if self._store is None:
            return {}
        data = self._store.load(SHOWS_KEY)
        if not data:
            return {}
        try:
            shows = [Show.from_dict(item) for item in json.loads(data.decode("utf-8"))]
        except (UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Show registry is corrupt, starting empty: {e}")
            return {}
        logger.info(f"Loaded {len(shows)} subscribed shows")
        return {show.id: show for show in shows}

    def _save(self) -> None:
        """Persist the subscriptions. Caller holds the lock. Raises StorageError."""
        if self._store is None:
            return
        payload = [show.to_dict() for show in self._shows.values()]
        self._store.save(SHOWS_KEY, json.dumps(payload, ensure_ascii=False).encode("utf-8"))

    def register(self, show_id: str, feed_url: str, title: Optional[str] = None) -> Show:
        show = Show(id=show_id, feed_url=feed_url, title=title)
        with self._lock:
            previous = self._shows.get(show_id)
            self._shows[show_id] = show
            try:
                self._save()
            except StorageError:
                self._restore(show_id, previous)
                raise
        return show

    def unregister(self, show_id: str) -> bool:
        with self._lock:
            previous = self._shows.pop(show_id, None)
            if previous is None:
                return False
            try:
                self._save()
            except StorageError:
                self._restore(show_id, previous)
                raise
        return True

    def _restore(self, show_id: str, previous: Optional[Show]) -> None:
        if previous is None:
            self._shows.pop(show_id, None)
        else:
            self._shows[show_id] = previous

    def get(self, show_id: str) -> Optional[Show]:
        with self._lock:
            return self._shows.get(show_id)

    def feed_url(self, show_id: str) -> str:
        """Raises UnknownShowError for unregistered shows."""
        show = self.get(show_id)
        if show is None:
            raise UnknownShowError(f"No feed registered for show {show_id}")
        return show.feed_url

    def all(self) -> List[Show]:
        with self._lock:
            return list(self._shows.values())
