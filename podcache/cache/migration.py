"""
One-time migration of the legacy episode cache.

The legacy representation is a single blob under "episodeCacheData": a JSON
object mapping show id to

    {
        "episodes": "<base64 of a JSON list of episodes>",
        "timestamp": 1718000000.0,    # seconds since the Unix epoch
        "lastModified": "W/\"abc\""   # optional
    }

Episodes inside the base64 payload use the legacy camelCase field names and
reference-date offsets for dates (see Episode.from_dict).
"""
import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from podcache.exceptions import MigrationError
from podcache.feeds.models import Episode
from podcache.stores import DurableStore

from .core import CacheEntry, CacheState
from .manager import CacheManager
from .storage import CacheStorage

logger = logging.getLogger("cache.migration")

LEGACY_CACHE_KEY = "episodeCacheData"


def decode_legacy_entry(key: str, data: Any) -> CacheEntry:
    """
    Decode one legacy entry.

    Raises:
        ValueError: The entry is malformed
    """
    if not isinstance(data, dict):
        raise ValueError(f"expected an object, got {type(data).__name__}")

    timestamp = data.get("timestamp")
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        raise ValueError("missing or non-numeric timestamp")

    try:
        raw = base64.b64decode(data["episodes"], validate=True)
        items = json.loads(raw.decode("utf-8"))
    except KeyError:
        raise ValueError("missing episodes payload")
    except (binascii.Error, TypeError, UnicodeDecodeError) as e:
        raise ValueError(f"episodes payload is not valid base64: {e}") from e
    if not isinstance(items, list):
        raise ValueError("episodes payload is not a list")

    try:
        episodes = [Episode.from_dict(item) for item in items]
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"undecodable episode: {e}") from e

    try:
        fetched_at = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OverflowError, OSError) as e:
        raise ValueError(f"timestamp out of range: {timestamp}") from e

    hint = data.get("lastModified")
    return CacheEntry(
        key=key,
        items=episodes,
        fetched_at=fetched_at,
        source_modified_hint=str(hint) if hint is not None else None,
        state=CacheState.MIGRATING,
    )


class LegacyMigrator:
    """
    Moves legacy cache entries into the current storage representation.

    Safe to call on every startup: once the legacy blob is gone it is a no-op.

    Entries are written through `target.import_entry`. Pass the running
    CacheManager so migrated entries land in its in-memory index too; a bare
    CacheStorage only writes the durable store.
    """

    def __init__(
        self,
        legacy_store: Optional[DurableStore],
        target: Union[CacheStorage, CacheManager],
        legacy_key: str = LEGACY_CACHE_KEY,
    ):
        self.legacy_store = legacy_store
        self.target = target
        self.legacy_key = legacy_key

    def migrate_if_needed(self) -> int:
        """
        Migrate the legacy cache if present.

        Returns:
            Number of entries written to the current store

        Raises:
            MigrationError: The legacy blob exists but is not a keyed map
            StorageError: Writing to the current store failed
        """
        if self.legacy_store is None or not self.legacy_store.exists(self.legacy_key):
            return 0

        logger.info("Migrating legacy episode cache...")
        legacy = self._load_legacy()

        migrated = 0
        skipped = 0
        for key, data in legacy.items():
            try:
                entry = decode_legacy_entry(str(key), data)
            except ValueError as e:
                logger.warning(f"Skipping legacy cache entry {key}: {e}")
                skipped += 1
                continue

            if not self.target.import_entry(entry):
                logger.debug(f"Keeping newer current entry for {key}")
                continue
            migrated += 1

        # Every entry has been attempted
        self.legacy_store.delete(self.legacy_key)
        logger.info(f"Migrated {migrated} legacy cache entries ({skipped} skipped)")
        return migrated

    def _load_legacy(self) -> Dict[str, Any]:
        data = self.legacy_store.load(self.legacy_key)
        if data is None:
            raise MigrationError(f"Legacy cache {self.legacy_key} could not be read")
        try:
            legacy = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise MigrationError(f"Legacy cache is not valid JSON: {e}") from e
        if not isinstance(legacy, dict):
            raise MigrationError(
                f"Legacy cache is not a keyed map (got {type(legacy).__name__})"
            )
        return legacy
