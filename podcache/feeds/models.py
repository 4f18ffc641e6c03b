"""
Data models for shows and their episodes.

Episodes carry two kinds of fields:
- content fields, which come from the remote feed and are compared on refresh
- user-local fields (played, playback position, local file), which only the
  user changes and which must survive every refresh
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple


# The legacy encoder wrote dates as seconds since 2001-01-01 UTC
APPLE_REFERENCE_DATE = datetime(2001, 1, 1, tzinfo=timezone.utc)

CONTENT_FIELDS = (
    "title",
    "description",
    "audio_url",
    "artwork_url",
    "published_date",
    "duration",
    "podcast_id",
)
USER_FIELDS = ("played", "playback_position", "local_file_url")


def parse_date(value: Any) -> Optional[datetime]:
    """Parse an ISO string, a datetime or a legacy reference-date offset."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return APPLE_REFERENCE_DATE + timedelta(seconds=value)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def format_date(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Episode:
    """A single episode of a show, identified by `id` within its show."""
    id: str
    title: str
    description: Optional[str] = None
    audio_url: Optional[str] = None
    artwork_url: Optional[str] = None
    published_date: Optional[datetime] = None
    duration: Optional[float] = None  # seconds
    podcast_id: Optional[str] = None

    # User-local state
    played: bool = False
    playback_position: float = 0.0
    local_file_url: Optional[str] = None

    @property
    def content(self) -> Tuple[Any, ...]:
        """Comparable content fields, ignoring user-local state."""
        return tuple(getattr(self, name) for name in CONTENT_FIELDS)

    @property
    def user_state(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in USER_FIELDS}

    def with_user_state_from(self, other: "Episode") -> "Episode":
        """Copy of this episode carrying `other`'s user-local fields."""
        return replace(self, **other.user_state)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "audio_url": self.audio_url,
            "artwork_url": self.artwork_url,
            "published_date": format_date(self.published_date),
            "duration": self.duration,
            "podcast_id": self.podcast_id,
            "played": self.played,
            "playback_position": self.playback_position,
            "local_file_url": self.local_file_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Episode":
        """Create from dictionary. Accepts both current and legacy key names."""
        if "id" not in data:
            raise KeyError("Episode is missing 'id'")
        duration = data.get("duration")
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            description=data.get("description"),
            audio_url=data.get("audio_url", data.get("audioURL")),
            artwork_url=data.get("artwork_url", data.get("artworkURL")),
            published_date=parse_date(data.get("published_date", data.get("publishedDate"))),
            duration=float(duration) if duration is not None else None,
            podcast_id=data.get("podcast_id", data.get("podcastID")),
            played=bool(data.get("played", False)),
            playback_position=float(
                data.get("playback_position", data.get("playbackPosition", 0.0)) or 0.0
            ),
            local_file_url=data.get("local_file_url", data.get("localFileURL")),
        )


@dataclass
class Show:
    """A subscribed show: the collection key and where its feed lives."""
    id: str
    feed_url: str
    title: Optional[str] = None
    added_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "feed_url": self.feed_url,
            "title": self.title,
            "added_at": format_date(self.added_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Show":
        added_at = parse_date(data.get("added_at"))
        return cls(
            id=str(data["id"]),
            feed_url=str(data["feed_url"]),
            title=data.get("title"),
            added_at=added_at or datetime.now(timezone.utc),
        )
