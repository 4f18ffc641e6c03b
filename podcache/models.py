"""
Database models for the durable cache store
SQLAlchemy ORM model for key -> blob rows
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, LargeBinary, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheBlob(Base):
    """
    One persisted value - an encoded cache entry or the key index
    """
    __tablename__ = "cache_blobs"

    key = Column(String, primary_key=True)
    value = Column(LargeBinary, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<CacheBlob(key='{self.key}', size={len(self.value or b'')})>"
