"""
Unit tests for request coalescing, cancellation tokens and the show registry.
"""
import threading
import time

import pytest

from podcache.cache import RequestCoalescer
from podcache.exceptions import FetchCancelledError, StorageError, UnknownShowError
from podcache.feeds import ShowRegistry
from podcache.feeds.registry import SHOWS_KEY
from podcache.network.cancellation import NEVER_CANCELLED, CancellationToken
from podcache.stores import MemoryStore


@pytest.fixture
def coalescer():
    c = RequestCoalescer(timeout=5.0, max_workers=2)
    yield c
    c.shutdown()


def test_single_request_returns_result(coalescer):
    assert coalescer.get_or_fetch("k", lambda token: 42) == 42
    assert not coalescer.is_in_flight("k")
    assert coalescer.active_requests == 0


def test_errors_propagate_to_caller(coalescer):
    def boom(token):
        raise ValueError("broken feed")

    with pytest.raises(ValueError):
        coalescer.get_or_fetch("k", boom)
    assert not coalescer.is_in_flight("k")


def test_concurrent_callers_share_one_call(coalescer):
    calls = []
    release = threading.Event()

    def slow(token):
        calls.append(1)
        release.wait(5)
        return object()

    results = []
    threads = [
        threading.Thread(target=lambda: results.append(coalescer.get_or_fetch("k", slow)))
        for _ in range(5)
    ]
    for thread in threads:
        thread.start()
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        in_flight = coalescer._in_flight.get("k")
        if in_flight is not None and in_flight.waiter_count == 5:
            break
        time.sleep(0.005)
    assert coalescer.get_stats()["active_keys"] == ["k"]
    release.set()
    for thread in threads:
        thread.join(5)

    assert len(calls) == 1
    assert len(results) == 5
    assert all(result is results[0] for result in results)


def test_timeout_withdraws_caller():
    coalescer = RequestCoalescer(timeout=0.05, max_workers=1)
    release = threading.Event()
    try:
        with pytest.raises(TimeoutError):
            coalescer.get_or_fetch("k", lambda token: release.wait(5))
    finally:
        release.set()
        coalescer.shutdown()


def test_already_cancelled_caller_never_starts_fetch(coalescer):
    token = CancellationToken()
    token.cancel()
    calls = []
    with pytest.raises(FetchCancelledError):
        coalescer.get_or_fetch("k", lambda t: calls.append(1), cancel_token=token)
    assert calls == []


# =============================================================================
# CancellationToken
# =============================================================================

def test_token_callbacks_run_once():
    token = CancellationToken()
    calls = []
    token.on_cancel(lambda: calls.append("a"))
    unregister = token.on_cancel(lambda: calls.append("b"))
    unregister()

    token.cancel()
    token.cancel()

    assert calls == ["a"]
    assert token.is_cancelled
    assert token.wait(10) is True


def test_callback_registered_after_cancel_runs_immediately():
    token = CancellationToken()
    token.cancel()
    calls = []
    token.on_cancel(lambda: calls.append(1))
    assert calls == [1]


def test_never_cancelled_token():
    assert not NEVER_CANCELLED.is_cancelled
    with pytest.raises(RuntimeError):
        NEVER_CANCELLED.cancel()


# =============================================================================
# ShowRegistry
# =============================================================================

def test_registry_resolves_feed_urls():
    registry = ShowRegistry()
    registry.register("show-A", "https://feeds.example.com/a.xml", title="A")

    assert registry.feed_url("show-A") == "https://feeds.example.com/a.xml"
    assert [show.id for show in registry.all()] == ["show-A"]
    assert registry.unregister("show-A") is True
    assert registry.unregister("show-A") is False
    with pytest.raises(UnknownShowError):
        registry.feed_url("show-A")


def test_registry_persists_subscriptions(store):
    registry = ShowRegistry(store=store)
    registry.register("show-A", "https://feeds.example.com/a.xml", title="A")
    registry.register("show-B", "https://feeds.example.com/b.xml")
    registry.unregister("show-B")

    restarted = ShowRegistry(store=store)

    assert [show.id for show in restarted.all()] == ["show-A"]
    assert restarted.get("show-A").title == "A"
    assert restarted.feed_url("show-A") == "https://feeds.example.com/a.xml"


def test_corrupt_registry_blob_starts_empty(store):
    store.save(SHOWS_KEY, b"{not json")
    assert ShowRegistry(store=store).all() == []


def test_registry_write_failure_keeps_previous_state():
    class ReadOnlyStore(MemoryStore):
        def save(self, key, value):
            raise StorageError("read-only")

    registry = ShowRegistry(store=ReadOnlyStore())
    with pytest.raises(StorageError):
        registry.register("show-A", "https://feeds.example.com/a.xml")
    assert registry.get("show-A") is None
