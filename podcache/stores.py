"""
Durable key -> bytes stores.

The cache only relies on the DurableStore protocol (single-key atomic
save/load/delete/exists). Three backends are provided:
- MemoryStore: process-local dict (tests, ephemeral runs)
- FileStore: one file per key in a directory
- SQLStore: SQLAlchemy table (default, SQLite)
"""
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol
from urllib.parse import quote, unquote

from sqlalchemy.exc import SQLAlchemyError

from config.settings import Settings, settings as default_settings
from podcache import crud
from podcache.db import create_db_engine, create_session_factory, init_db
from podcache.exceptions import StorageError
from podcache.utils.helpers import safe_lower

logger = logging.getLogger("storage")


class DurableStore(Protocol):
    """
    Interface for durable blob storage.

    Implementations:
    - MemoryStore
    - FileStore
    - SQLStore
    """

    def save(self, key: str, value: bytes) -> None:
        """Store `value` under `key` atomically. Raises StorageError."""
        ...

    def load(self, key: str) -> Optional[bytes]:
        """Return the stored bytes, or None if the key is absent."""
        ...

    def delete(self, key: str) -> None:
        """Remove `key`; absent keys are ignored. Raises StorageError."""
        ...

    def exists(self, key: str) -> bool:
        ...


class MemoryStore:
    """Thread-safe in-process store."""

    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self._data: Dict[str, bytes] = dict(initial or {})
        self._lock = threading.Lock()

    def save(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def load(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def keys(self):
        with self._lock:
            return sorted(self._data)


class FileStore:
    """
    One file per key under `directory`.

    Writes go to a temporary file in the same directory and are moved into
    place with os.replace, so readers never see a partial value.
    """

    SUFFIX = ".blob"

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / (quote(key, safe="") + self.SUFFIX)

    def save(self, key: str, value: bytes) -> None:
        path = self._path(key)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(value)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            logger.error(f"Failed to save {key}: {e}")
            raise StorageError(f"Failed to save {key}: {e}", details={"path": str(path)}) from e
        logger.debug(f"Saved {key} ({len(value)} bytes)")

    def load(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error(f"Failed to load {key}: {e}")
            return None

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def keys(self):
        return sorted(
            unquote(path.name[: -len(self.SUFFIX)])
            for path in self.directory.glob("*" + self.SUFFIX)
        )


class SQLStore:
    """SQLAlchemy-backed store; one row per key in `cache_blobs`."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._engine = create_db_engine(database_url)
        init_db(self._engine)
        self._session_factory = create_session_factory(self._engine)

    def save(self, key: str, value: bytes) -> None:
        with self._session_factory() as db:
            try:
                crud.upsert_blob(db, key, value)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Failed to save {key}: {e}")
                raise StorageError(f"Failed to save {key}: {e}") from e

    def load(self, key: str) -> Optional[bytes]:
        with self._session_factory() as db:
            try:
                blob = crud.get_blob(db, key)
            except SQLAlchemyError as e:
                logger.error(f"Failed to load {key}: {e}")
                return None
            return bytes(blob.value) if blob is not None else None

    def delete(self, key: str) -> None:
        with self._session_factory() as db:
            try:
                crud.delete_blob(db, key)
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"Failed to delete {key}: {e}") from e

    def exists(self, key: str) -> bool:
        with self._session_factory() as db:
            return crud.blob_exists(db, key)

    def keys(self):
        with self._session_factory() as db:
            return crud.list_keys(db)

    def dispose(self) -> None:
        self._engine.dispose()


def create_store(cfg: Optional[Settings] = None) -> DurableStore:
    """Build the store selected by `storage_backend`."""
    cfg = cfg or default_settings
    backend = safe_lower(cfg.storage_backend)
    if backend == "memory":
        return MemoryStore()
    if backend == "file":
        return FileStore(cfg.cache_directory)
    if backend == "sqlite":
        return SQLStore(cfg.database_url)
    raise ValueError(f"Unknown storage backend: {cfg.storage_backend}")


def create_legacy_store(cfg: Optional[Settings] = None) -> Optional[DurableStore]:
    """File store over the legacy cache directory, if one is configured."""
    cfg = cfg or default_settings
    if cfg.legacy_cache_directory is None:
        return None
    return FileStore(cfg.legacy_cache_directory)
