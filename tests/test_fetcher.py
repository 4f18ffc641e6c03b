"""
Unit tests for the single-attempt feed fetcher.

The requests session is mocked, except in the cancellation tests that talk
to a throwaway server on 127.0.0.1.
"""
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import Mock

import pytest
import requests
from urllib3.exceptions import MaxRetryError, NameResolutionError

from podcache.exceptions import FetchCancelledError, FetchError, FetchErrorKind
from podcache.network import CacheMode, ClientConfig, FeedFetcher, NetworkStatus
from podcache.network.cancellation import CancellationToken
from podcache.network.fetcher import classify_exception

from conftest import FEED_URL


def make_response(status_code=200, chunks=(b"<rss/>",), headers=None):
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    response.iter_content = Mock(return_value=iter(chunks))
    return response


def make_session(response=None, error=None):
    session = Mock(spec=requests.Session)
    if error is not None:
        session.get.side_effect = error
    else:
        session.get.return_value = response
    return session


# =============================================================================
# Headers
# =============================================================================

def test_headers_identify_client():
    headers = ClientConfig(name="primary", user_agent="PodCache/1.0").build_headers()
    assert headers["User-Agent"] == "PodCache/1.0"
    assert "application/rss+xml" in headers["Accept"]
    assert "If-None-Match" not in headers
    assert "Cache-Control" not in headers


def test_etag_validator_uses_if_none_match():
    headers = ClientConfig(name="primary").build_headers('W/"abc"')
    assert headers["If-None-Match"] == 'W/"abc"'


def test_date_validator_uses_if_modified_since():
    headers = ClientConfig(name="primary").build_headers("Sat, 01 Jun 2024 10:00:00 GMT")
    assert headers["If-Modified-Since"] == "Sat, 01 Jun 2024 10:00:00 GMT"


def test_no_cache_profile_drops_validators():
    config = ClientConfig(name="fallback", cache_mode=CacheMode.NO_CACHE)
    headers = config.build_headers('"abc"')
    assert headers["Cache-Control"] == "no-cache"
    assert "If-None-Match" not in headers


def test_extra_headers_override_defaults():
    config = ClientConfig(name="primary", headers={"Accept": "*/*", "X-Client": "test"})
    headers = config.build_headers()
    assert headers["Accept"] == "*/*"
    assert headers["X-Client"] == "test"


# =============================================================================
# fetch
# =============================================================================

def test_fetch_returns_body_and_validators():
    response = make_response(
        chunks=(b"<rss>", b"</rss>"),
        headers={"ETag": '"v2"', "Last-Modified": "Sat, 01 Jun 2024 10:00:00 GMT"},
    )
    session = make_session(response)

    result = FeedFetcher(session=session).fetch(FEED_URL, ClientConfig(name="primary", timeout=12.0))

    assert result.content == b"<rss></rss>"
    assert result.etag == '"v2"'
    assert result.modified_hint == '"v2"'
    assert not result.not_modified
    _, kwargs = session.get.call_args
    assert kwargs["timeout"] == 12.0
    assert kwargs["stream"] is True
    response.close.assert_called()


def test_fetch_not_modified():
    session = make_session(make_response(status_code=304, chunks=()))
    result = FeedFetcher(session=session).fetch(FEED_URL, ClientConfig(name="primary"), validator='"v1"')

    assert result.not_modified
    assert result.content == b""
    _, kwargs = session.get.call_args
    assert kwargs["headers"]["If-None-Match"] == '"v1"'


@pytest.mark.parametrize("code", [403, 404, 500, 503])
def test_fetch_http_status_error(code):
    session = make_session(make_response(status_code=code))
    with pytest.raises(FetchError) as exc_info:
        FeedFetcher(session=session).fetch(FEED_URL, ClientConfig(name="primary"))
    assert exc_info.value.kind == FetchErrorKind.HTTP_STATUS
    assert exc_info.value.status_code == code


def test_fetch_timeout():
    session = make_session(error=requests.Timeout("read timed out"))
    with pytest.raises(FetchError) as exc_info:
        FeedFetcher(session=session).fetch(FEED_URL, ClientConfig(name="primary"))
    assert exc_info.value.kind == FetchErrorKind.TIMEOUT
    assert exc_info.value.is_retryable


def test_fetch_connection_failed():
    session = make_session(error=requests.ConnectionError("connection refused"))
    with pytest.raises(FetchError) as exc_info:
        FeedFetcher(session=session).fetch(FEED_URL, ClientConfig(name="primary"))
    assert exc_info.value.kind == FetchErrorKind.CONNECTION_FAILED


def test_classify_dns_failure():
    reason = NameResolutionError("feeds.example.com", None, socket.gaierror(-2, "Name or service not known"))
    error = requests.ConnectionError(MaxRetryError(None, FEED_URL, reason=reason))
    assert classify_exception(error) == FetchErrorKind.DNS_FAILURE


def test_classify_other():
    assert classify_exception(requests.exceptions.InvalidURL("bad")) == FetchErrorKind.OTHER


def test_cancelled_before_request():
    token = CancellationToken()
    token.cancel()
    session = make_session(make_response())
    with pytest.raises(FetchCancelledError):
        FeedFetcher(session=session).fetch(FEED_URL, ClientConfig(name="primary"), cancel_token=token)
    session.get.assert_not_called()


def test_cancelled_while_reading_body():
    token = CancellationToken()

    def chunks():
        yield b"<rss>"
        token.cancel()
        yield b"<channel/>"
        yield b"</rss>"

    response = make_response(chunks=chunks())
    with pytest.raises(FetchCancelledError):
        FeedFetcher(session=make_session(response)).fetch(
            FEED_URL, ClientConfig(name="primary"), cancel_token=token
        )
    response.close.assert_called()


# =============================================================================
# Connectivity permissions
# =============================================================================

def test_cellular_disallowed_fails_without_io():
    session = make_session(make_response())
    fetcher = FeedFetcher(session=session, network_status=lambda: NetworkStatus(is_cellular=True))

    with pytest.raises(FetchError) as exc_info:
        fetcher.fetch(FEED_URL, ClientConfig(name="primary", allow_cellular=False))

    assert exc_info.value.kind == FetchErrorKind.CONNECTION_FAILED
    session.get.assert_not_called()


def test_constrained_allowed_by_permissive_profile():
    session = make_session(make_response())
    fetcher = FeedFetcher(session=session, network_status=lambda: NetworkStatus(is_constrained=True))

    result = fetcher.fetch(FEED_URL, ClientConfig(name="fallback", allow_constrained=True))

    assert result.content == b"<rss/>"


def test_cancel_closes_response_blocked_in_body_read():
    token = CancellationToken()
    closed = threading.Event()

    def chunks():
        yield b"<rss>"
        closed.wait(5)
        raise requests.exceptions.ChunkedEncodingError("connection closed")

    response = make_response(chunks=chunks())
    response.close.side_effect = closed.set
    timer = threading.Timer(0.1, token.cancel)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(FetchCancelledError):
            FeedFetcher(session=make_session(response)).fetch(
                FEED_URL, ClientConfig(name="primary"), cancel_token=token
            )
    finally:
        timer.cancel()

    assert time.monotonic() - started < 2.0


# =============================================================================
# Cancellation against a local server
# =============================================================================

class SlowHeadersHandler(BaseHTTPRequestHandler):
    """Holds back the response until the server's `release` event is set."""

    def do_GET(self):
        self.server.release.wait(5)
        body = b"<rss/>"
        self.send_response(200)
        self.send_header("Content-Type", "application/rss+xml")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def slow_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), SlowHeadersHandler)
    server.daemon_threads = True
    server.release = threading.Event()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.release.set()
    server.shutdown()
    server.server_close()


@pytest.fixture
def local_fetcher():
    session = requests.Session()
    session.trust_env = False  # no proxies for 127.0.0.1
    fetcher = FeedFetcher(session=session)
    yield fetcher
    fetcher.close()


def server_url(server) -> str:
    return f"http://127.0.0.1:{server.server_address[1]}/feed.xml"


def test_cancel_while_waiting_for_headers_returns_promptly(slow_server, local_fetcher):
    token = CancellationToken()
    timer = threading.Timer(0.2, token.cancel)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(FetchCancelledError) as exc_info:
            local_fetcher.fetch(
                server_url(slow_server), ClientConfig(name="primary", timeout=10), cancel_token=token
            )
    finally:
        timer.cancel()

    assert exc_info.value.kind == FetchErrorKind.CANCELLED
    assert time.monotonic() - started < 1.5


def test_request_pool_returns_response_when_not_cancelled(slow_server, local_fetcher):
    slow_server.release.set()
    result = local_fetcher.fetch(
        server_url(slow_server), ClientConfig(name="primary", timeout=10), cancel_token=CancellationToken()
    )
    assert result.content == b"<rss/>"
    assert result.status_code == 200
