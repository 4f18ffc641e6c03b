"""
Decode RSS 2.0 and Atom documents into Episode lists.
"""
import logging
import xml.etree.ElementTree as ET
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import List, Optional

from podcache.exceptions import FeedDecodeError
from podcache.feeds.models import Episode
from podcache.utils.helpers import safe_strip

logger = logging.getLogger("feeds.parser")

ITUNES_NS = "http://www.itunes.com/dtds/podcast-1.0.dtd"
ATOM_NS = "http://www.w3.org/2005/Atom"
CONTENT_NS = "http://purl.org/rss/1.0/modules/content/"


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _text(element: Optional[ET.Element], path: str) -> Optional[str]:
    if element is None:
        return None
    found = element.find(path)
    if found is None:
        return None
    value = safe_strip(found.text)
    return value or None


def parse_duration(value: Optional[str]) -> Optional[float]:
    """
    Parse an itunes:duration value.

    Accepts "HH:MM:SS", "MM:SS" or plain seconds. Returns None if unparseable.
    """
    value = safe_strip(value)
    if not value:
        return None
    try:
        seconds = 0.0
        for part in value.split(":"):
            seconds = seconds * 60 + float(part)
        return seconds
    except ValueError:
        return None


def _parse_rfc822(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_feed(content: bytes, podcast_id: Optional[str] = None) -> List[Episode]:
    """
    Decode a feed document.

    Args:
        content: Raw response body
        podcast_id: Collection key stamped onto every episode

    Returns:
        Episodes in document order

    Raises:
        FeedDecodeError: Empty body, malformed XML or not an RSS/Atom document
    """
    if not content or not content.strip():
        raise FeedDecodeError("Empty response")

    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise FeedDecodeError(f"Invalid RSS/XML format: {e}") from e

    kind = _local_name(root.tag)
    if kind == "rss":
        episodes = _parse_rss(root, podcast_id)
    elif kind == "feed":
        episodes = _parse_atom(root, podcast_id)
    else:
        raise FeedDecodeError(f"Unsupported feed document <{kind}>")

    logger.debug(f"Decoded {len(episodes)} episodes ({kind})")
    return episodes


def _parse_rss(root: ET.Element, podcast_id: Optional[str]) -> List[Episode]:
    channel = root.find("channel")
    if channel is None:
        raise FeedDecodeError("RSS document has no <channel>")

    channel_image = channel.find(f"{{{ITUNES_NS}}}image")
    default_artwork = (
        channel_image.get("href") if channel_image is not None else _text(channel, "image/url")
    )

    episodes = []
    for item in channel.findall("item"):
        enclosure = item.find("enclosure")
        audio_url = enclosure.get("url") if enclosure is not None else None
        link = _text(item, "link")
        title = _text(item, "title")

        identity = _text(item, "guid") or audio_url or link or title
        if not identity:
            logger.warning("Skipping feed item without any identity")
            continue

        image = item.find(f"{{{ITUNES_NS}}}image")
        description = (
            _text(item, "description")
            or _text(item, f"{{{ITUNES_NS}}}summary")
            or _text(item, f"{{{CONTENT_NS}}}encoded")
        )
        episodes.append(Episode(
            id=identity,
            title=title or "",
            description=description,
            audio_url=audio_url,
            artwork_url=image.get("href") if image is not None else default_artwork,
            published_date=_parse_rfc822(_text(item, "pubDate")),
            duration=parse_duration(_text(item, f"{{{ITUNES_NS}}}duration")),
            podcast_id=podcast_id,
        ))
    return episodes


def _parse_atom(root: ET.Element, podcast_id: Optional[str]) -> List[Episode]:
    default_artwork = _text(root, f"{{{ATOM_NS}}}logo") or _text(root, f"{{{ATOM_NS}}}icon")

    episodes = []
    for entry in root.findall(f"{{{ATOM_NS}}}entry"):
        audio_url = None
        alternate = None
        for link in entry.findall(f"{{{ATOM_NS}}}link"):
            rel = link.get("rel", "alternate")
            if rel == "enclosure" and audio_url is None:
                audio_url = link.get("href")
            elif rel == "alternate" and alternate is None:
                alternate = link.get("href")

        title = _text(entry, f"{{{ATOM_NS}}}title")
        identity = _text(entry, f"{{{ATOM_NS}}}id") or audio_url or alternate or title
        if not identity:
            logger.warning("Skipping feed entry without any identity")
            continue

        published = _text(entry, f"{{{ATOM_NS}}}published") or _text(entry, f"{{{ATOM_NS}}}updated")
        episodes.append(Episode(
            id=identity,
            title=title or "",
            description=_text(entry, f"{{{ATOM_NS}}}summary") or _text(entry, f"{{{ATOM_NS}}}content"),
            audio_url=audio_url,
            artwork_url=default_artwork,
            published_date=_parse_iso(published),
            duration=parse_duration(_text(entry, f"{{{ITUNES_NS}}}duration")),
            podcast_id=podcast_id,
        ))
    return episodes
