"""
Pydantic schemas for API request/response models
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# ===== EPISODE SCHEMAS =====

class EpisodeOut(BaseModel):
    """Episode with its user-local state"""
    id: str
    title: str
    description: Optional[str] = None
    audio_url: Optional[str] = None
    artwork_url: Optional[str] = None
    published_date: Optional[datetime] = None
    duration: Optional[float] = None
    podcast_id: Optional[str] = None
    played: bool = False
    playback_position: float = 0.0
    local_file_url: Optional[str] = None


class ChangesetOut(BaseModel):
    """Episode ids grouped by how they changed"""
    added: List[str] = []
    removed: List[str] = []
    updated: List[str] = []


class EpisodeList(BaseModel):
    """Episodes of one show with cache metadata"""
    show_id: str
    count: int
    source: str
    fetched_at: Optional[datetime] = None
    episodes: List[EpisodeOut]
    changeset: Optional[ChangesetOut] = None
    error: Optional[str] = None
    warnings: List[str] = []


class EpisodeUpdate(BaseModel):
    """User-local state changes for one episode"""
    played: Optional[bool] = None
    playback_position: Optional[float] = Field(default=None, ge=0)
    local_file_url: Optional[str] = None


# ===== SHOW SCHEMAS =====

class ShowCreate(BaseModel):
    """Subscribe to a show"""
    id: str = Field(min_length=1)
    feed_url: str = Field(min_length=1)
    title: Optional[str] = None


class ShowOut(ShowCreate):
    """Subscribed show"""
    added_at: datetime


# ===== CACHE SCHEMAS =====

class CacheStatsOut(BaseModel):
    """Snapshot of the episode cache"""
    totalKeys: int
    freshCount: int
    staleCount: int
    totalItems: int
    approxSizeBytes: int
    inFlight: List[str]
    counters: Dict[str, int]


class MigrationResult(BaseModel):
    migrated: int
