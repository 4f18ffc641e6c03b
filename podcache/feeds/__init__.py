"""
Show and episode models, feed decoding and the show registry.
"""
from .models import Episode, Show, CONTENT_FIELDS, USER_FIELDS
from .parser import parse_feed, parse_duration
from .registry import ShowRegistry

__all__ = [
    "Episode",
    "Show",
    "CONTENT_FIELDS",
    "USER_FIELDS",
    "parse_feed",
    "parse_duration",
    "ShowRegistry",
]
