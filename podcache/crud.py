"""
CRUD operations (Create, Read, Update, Delete)
Query functions for persisted cache blobs
"""
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from podcache.models import CacheBlob


def get_blob(db: Session, key: str) -> Optional[CacheBlob]:
    """
    Get a blob row by key
    """
    return db.query(CacheBlob).filter(CacheBlob.key == key).first()


def blob_exists(db: Session, key: str) -> bool:
    """
    Check whether a key is stored
    """
    return db.query(CacheBlob.key).filter(CacheBlob.key == key).first() is not None


def upsert_blob(db: Session, key: str, value: bytes) -> CacheBlob:
    """
    Insert or replace the value stored under key
    """
    blob = get_blob(db, key)
    if blob is None:
        blob = CacheBlob(key=key, value=value)
        db.add(blob)
    else:
        blob.value = value
        blob.updated_at = datetime.now(timezone.utc)
    db.commit()
    return blob


def delete_blob(db: Session, key: str) -> bool:
    """
    Delete a key; returns False if it was not stored
    """
    blob = get_blob(db, key)
    if blob is None:
        return False
    db.delete(blob)
    db.commit()
    return True


def list_keys(db: Session, prefix: str = "") -> List[str]:
    """
    All stored keys starting with prefix, sorted
    """
    query = db.query(CacheBlob.key)
    if prefix:
        query = query.filter(CacheBlob.key.startswith(prefix))
    return [row.key for row in query.order_by(CacheBlob.key).all()]
