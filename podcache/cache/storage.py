"""
Current persisted representation of cache entries.

Each show's entry is one JSON blob under "episodes:<key>". The set of
persisted keys is kept in a separate index blob so that clearing the cache
works on stores that cannot enumerate their keys.
"""
import json
import logging
import threading
from typing import List, Optional

from podcache.stores import DurableStore

from .core import CacheEntry

logger = logging.getLogger("cache.storage")

ENTRY_PREFIX = "episodes:"
INDEX_KEY = "episodes:__index__"
FORMAT_VERSION = 2


def encode_entry(entry: CacheEntry) -> bytes:
    payload = {"version": FORMAT_VERSION}
    payload.update(entry.to_dict())
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


def decode_entry(data: bytes) -> CacheEntry:
    """
    Decode a persisted entry.

    Raises:
        ValueError: Malformed JSON, missing fields or unknown version
    """
    try:
        payload = json.loads(data.decode("utf-8"))
        version = payload.get("version")
        if version != FORMAT_VERSION:
            raise ValueError(f"Unsupported cache format version: {version}")
        return CacheEntry.from_dict(payload)
    except (UnicodeDecodeError, KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"Malformed cache entry: {e}") from e


class CacheStorage:
    """Entry-level access to a DurableStore."""

    def __init__(self, store: DurableStore):
        self.store = store
        self._index_lock = threading.Lock()

    @staticmethod
    def entry_key(key: str) -> str:
        return f"{ENTRY_PREFIX}{key}"

    def keys(self) -> List[str]:
        """Persisted collection keys."""
        data = self.store.load(INDEX_KEY)
        if not data:
            return []
        try:
            keys = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            logger.error(f"Cache key index is corrupt, ignoring it: {e}")
            return []
        return [str(k) for k in keys] if isinstance(keys, list) else []

    def _write_index(self, keys: List[str]) -> None:
        if keys:
            self.store.save(INDEX_KEY, json.dumps(sorted(set(keys))).encode("utf-8"))
        else:
            self.store.delete(INDEX_KEY)

    def load_entry(self, key: str) -> Optional[CacheEntry]:
        """Load one entry; undecodable entries are logged and treated as absent."""
        data = self.store.load(self.entry_key(key))
        if data is None:
            return None
        try:
            return decode_entry(data)
        except ValueError as e:
            logger.warning(f"Discarding undecodable cache entry {key}: {e}")
            return None

    def save_entry(self, entry: CacheEntry) -> None:
        """Persist one entry. Raises StorageError."""
        self.store.save(self.entry_key(entry.key), encode_entry(entry))
        with self._index_lock:
            keys = self.keys()
            if entry.key not in keys:
                keys.append(entry.key)
                self._write_index(keys)

    def import_entry(self, entry: CacheEntry) -> bool:
        """Save unless a persisted entry is at least as recent. Raises StorageError."""
        current = self.load_entry(entry.key)
        if current is not None and current.fetched_at >= entry.fetched_at:
            return False
        self.save_entry(entry)
        return True

    def delete_entry(self, key: str) -> None:
        """Remove one entry; idempotent. Raises StorageError."""
        self.store.delete(self.entry_key(key))
        with self._index_lock:
            keys = self.keys()
            if key in keys:
                keys.remove(key)
                self._write_index(keys)

    def has_entry(self, key: str) -> bool:
        return self.store.exists(self.entry_key(key))

    def clear(self, extra_keys: Optional[List[str]] = None) -> int:
        """
        Remove every indexed entry plus `extra_keys`.

        Returns:
            Number of keys removed
        """
        with self._index_lock:
            keys = set(self.keys()) | set(extra_keys or [])
            for key in keys:
                self.store.delete(self.entry_key(key))
            self.store.delete(INDEX_KEY)
        return len(keys)
