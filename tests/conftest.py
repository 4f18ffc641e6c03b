"""Test configuration and fixtures"""
import threading
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import pytest

from podcache.cache import CacheManager
from podcache.exceptions import FetchError, FetchErrorKind
from podcache.feeds import ShowRegistry
from podcache.network import ClientConfig, FeedResponse, RetryCoordinator, RetryPolicy
from podcache.network.cancellation import NEVER_CANCELLED
from podcache.stores import MemoryStore


FEED_URL = "https://feeds.example.com/show-a.xml"


def rss(*items: Tuple[str, str], extra: str = "") -> bytes:
    """Minimal RSS document with one <item> per (guid, title)."""
    body = "".join(
        f"<item><guid>{guid}</guid><title>{title}</title>"
        f'<enclosure url="https://cdn.example.com/{guid}.mp3" type="audio/mpeg"/>'
        f"</item>"
        for guid, title in items
    )
    return (
        '<?xml version="1.0"?><rss version="2.0"><channel><title>Show A</title>'
        f"{extra}{body}</channel></rss>"
    ).encode("utf-8")


def ok(content: bytes, etag: Optional[str] = None, status_code: int = 200) -> FeedResponse:
    return FeedResponse(url=FEED_URL, content=content, status_code=status_code, etag=etag)


def timeout_error() -> FetchError:
    return FetchError(FetchErrorKind.TIMEOUT, "timed out", url=FEED_URL)


def connection_error() -> FetchError:
    return FetchError(FetchErrorKind.CONNECTION_FAILED, "connection refused", url=FEED_URL)


def http_error(code: int) -> FetchError:
    return FetchError(FetchErrorKind.HTTP_STATUS, f"HTTP {code}", url=FEED_URL, status_code=code)


class ScriptedFetcher:
    """
    Stands in for FeedFetcher.

    Replays `script` in order (responses are returned, exceptions raised,
    callables invoked with the cancellation token); once the script is used
    up every call gets `default`.
    """

    def __init__(self, script=None, default=None):
        self.script = list(script or [])
        self.default = default
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self._lock = threading.Lock()

    def fetch(self, url, config, validator=None, cancel_token=NEVER_CANCELLED):
        with self._lock:
            self.calls.append((url, config.name, validator))
            outcome = self.script.pop(0) if self.script else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(cancel_token)
        return outcome

    @property
    def profiles(self) -> List[str]:
        return [name for _, name, _ in self.calls]


class FakeClock:
    """Manually advanced, timezone-aware clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class SleepRecorder:
    """Backoff sleeper that records delays instead of sleeping."""

    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, delay, cancel_token) -> bool:
        self.delays.append(delay)
        return cancel_token.is_cancelled


@pytest.fixture
def two_profile_policy():
    return RetryPolicy(
        max_attempts=3,
        base_delay=1.0,
        backoff_multiplier=2.0,
        fallback_profiles=[
            ClientConfig(name="primary", timeout=30.0),
            ClientConfig(name="fallback", timeout=60.0),
        ],
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def registry():
    reg = ShowRegistry()
    reg.register("show-A", FEED_URL, title="Show A")
    reg.register("show-B", "https://feeds.example.com/show-b.xml", title="Show B")
    return reg


@pytest.fixture
def make_manager(store, registry, clock, two_profile_policy):
    """Factory for CacheManagers backed by a ScriptedFetcher."""
    managers = []

    def factory(fetcher, **kwargs) -> CacheManager:
        kwargs.setdefault("store", store)
        kwargs.setdefault("url_resolver", registry.feed_url)
        kwargs.setdefault("policy", two_profile_policy)
        kwargs.setdefault("min_ttl_seconds", 3600)
        kwargs.setdefault("max_age_seconds", 7200)
        kwargs.setdefault("strict_persistence", False)
        kwargs.setdefault("coalesce_timeout", 10.0)
        manager = CacheManager(
            coordinator=RetryCoordinator(fetcher, sleep=SleepRecorder()),
            clock=clock,
            **kwargs,
        )
        managers.append(manager)
        return manager

    yield factory

    for manager in managers:
        manager.shutdown()
