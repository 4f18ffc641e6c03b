"""
Single-attempt feed fetcher.

Performs exactly one HTTP GET per call with the headers, timeout and
connectivity permissions of a ClientConfig profile, and turns every failure
into a classified FetchError. No caching and no retries happen here.
"""
import logging
import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, Optional

import requests
from urllib3.exceptions import NameResolutionError, ReadTimeoutError

from podcache.exceptions import FetchCancelledError, FetchError, FetchErrorKind
from podcache.network.cancellation import CancellationToken, NEVER_CANCELLED

logger = logging.getLogger("network.fetcher")

DEFAULT_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml"


class CacheMode(Enum):
    """How a profile treats HTTP caches between us and the origin."""
    DEFAULT = "default"      # Conditional requests with stored validators
    NO_CACHE = "no-cache"    # Force revalidation end to end, no validators


@dataclass(frozen=True)
class ClientConfig:
    """One client configuration profile used by the retry coordinator."""
    name: str
    timeout: float = 30.0
    user_agent: str = "PodCache/1.0"
    accept: str = DEFAULT_ACCEPT
    headers: Dict[str, str] = field(default_factory=dict)
    cache_mode: CacheMode = CacheMode.DEFAULT
    allow_cellular: bool = True
    allow_constrained: bool = True

    def build_headers(self, validator: Optional[str] = None) -> Dict[str, str]:
        """
        Outbound headers for one request.

        Args:
            validator: Stored modification hint (ETag or Last-Modified value)
        """
        headers = {
            "User-Agent": self.user_agent,
            "Accept": self.accept,
        }
        if self.cache_mode == CacheMode.NO_CACHE:
            headers["Cache-Control"] = "no-cache"
            headers["Pragma"] = "no-cache"
        elif validator:
            if validator.startswith(('"', "W/")):
                headers["If-None-Match"] = validator
            else:
                headers["If-Modified-Since"] = validator
        headers.update(self.headers)
        return headers


@dataclass(frozen=True)
class NetworkStatus:
    """Current network characteristics as reported by the platform."""
    is_cellular: bool = False
    is_constrained: bool = False


@dataclass
class FeedResponse:
    """Body and cache validators of a successful fetch."""
    url: str
    content: bytes
    status_code: int = 200
    etag: Optional[str] = None
    last_modified: Optional[str] = None

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304

    @property
    def modified_hint(self) -> Optional[str]:
        return self.etag or self.last_modified


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Walk causes, contexts, urllib3 `reason`s and wrapped args."""
    seen = set()
    stack = [exc]
    while stack:
        current = stack.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        nested = [current.__cause__, current.__context__, getattr(current, "reason", None)]
        nested.extend(current.args)
        stack.extend(n for n in nested if isinstance(n, BaseException))


def classify_exception(exc: requests.RequestException) -> FetchErrorKind:
    """Map a requests exception onto a FetchErrorKind."""
    if isinstance(exc, requests.Timeout):
        return FetchErrorKind.TIMEOUT
    if isinstance(exc, (requests.ConnectionError, requests.exceptions.ChunkedEncodingError)):
        for cause in _exception_chain(exc):
            if isinstance(cause, (NameResolutionError, socket.gaierror)):
                return FetchErrorKind.DNS_FAILURE
            if isinstance(cause, (ReadTimeoutError, socket.timeout)):
                return FetchErrorKind.TIMEOUT
        return FetchErrorKind.CONNECTION_FAILED
    return FetchErrorKind.OTHER


class FeedFetcher:
    """
    Performs one network attempt per `fetch` call.

    The blocking GET runs on a small request pool so the calling thread can
    return as soon as its cancellation token fires, even while the server has
    not sent its headers yet. Once headers arrive, cancelling closes the
    response underneath the body read.

    Usage:
        fetcher = FeedFetcher()
        response = fetcher.fetch(url, ClientConfig(name="primary"))
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        network_status: Optional[Callable[[], NetworkStatus]] = None,
        chunk_size: int = 64 * 1024,
        max_workers: int = 8,
    ):
        """
        Args:
            session: requests session to reuse connections (created if omitted)
            network_status: Probe for cellular/constrained networks
            chunk_size: Body read size; cancellation is checked between chunks
            max_workers: Requests that may wait on headers at once
        """
        self._session = session or requests.Session()
        self._network_status = network_status
        self._chunk_size = chunk_size
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="feed-fetch",
        )

    def close(self) -> None:
        """Stop the request pool. Abandoned requests finish in the background."""
        self._executor.shutdown(wait=False)

    def _check_connectivity(self, url: str, config: ClientConfig) -> None:
        if self._network_status is None:
            return
        status = self._network_status()
        if status.is_cellular and not config.allow_cellular:
            raise FetchError(
                FetchErrorKind.CONNECTION_FAILED,
                f"Profile '{config.name}' does not allow cellular access",
                url=url,
            )
        if status.is_constrained and not config.allow_constrained:
            raise FetchError(
                FetchErrorKind.CONNECTION_FAILED,
                f"Profile '{config.name}' does not allow constrained networks",
                url=url,
            )

    def _send(
        self,
        url: str,
        config: ClientConfig,
        validator: Optional[str],
        cancel_token: CancellationToken,
    ) -> requests.Response:
        """Issue the GET and wait for its headers or for cancellation."""
        kwargs = dict(headers=config.build_headers(validator), timeout=config.timeout, stream=True)
        try:
            if cancel_token is NEVER_CANCELLED:
                return self._session.get(url, **kwargs)

            future = self._executor.submit(self._session.get, url, **kwargs)
            settled = threading.Event()
            future.add_done_callback(lambda _: settled.set())
            unregister = cancel_token.on_cancel(settled.set)
            try:
                settled.wait()
            finally:
                unregister()

            if not future.done():
                logger.debug(f"Abandoning GET {url}: cancelled while waiting for headers")
                future.add_done_callback(_close_abandoned)
                raise FetchCancelledError(url=url)
            return future.result()
        except requests.RequestException as e:
            raise FetchError(classify_exception(e), f"Request failed: {e}", url=url) from e

    def fetch(
        self,
        url: str,
        config: ClientConfig,
        validator: Optional[str] = None,
        cancel_token: CancellationToken = NEVER_CANCELLED,
    ) -> FeedResponse:
        """
        Fetch a feed once.

        Args:
            url: Feed URL
            config: Client profile for this attempt
            validator: Modification hint for a conditional request
            cancel_token: Aborts the request while it waits for headers and
                closes the response while the body is read

        Returns:
            FeedResponse (status 304 responses have an empty body)

        Raises:
            FetchError: Classified failure (FetchCancelledError when cancelled)
        """
        cancel_token.raise_if_cancelled(url)
        self._check_connectivity(url, config)

        logger.debug(f"GET {url} [profile={config.name}, timeout={config.timeout}s]")
        response = self._send(url, config, validator, cancel_token)

        unregister = cancel_token.on_cancel(response.close)
        try:
            if response.status_code == 304:
                return FeedResponse(
                    url=url,
                    content=b"",
                    status_code=304,
                    etag=response.headers.get("ETag"),
                    last_modified=response.headers.get("Last-Modified"),
                )
            if response.status_code >= 400:
                raise FetchError(
                    FetchErrorKind.HTTP_STATUS,
                    f"HTTP {response.status_code} for {url}",
                    url=url,
                    status_code=response.status_code,
                )

            chunks = []
            for chunk in response.iter_content(chunk_size=self._chunk_size):
                if cancel_token.is_cancelled:
                    raise FetchCancelledError(url=url)
                chunks.append(chunk)
            content = b"".join(chunks)
        except requests.RequestException as e:
            if cancel_token.is_cancelled:
                raise FetchCancelledError(url=url) from e
            raise FetchError(classify_exception(e), f"Reading body failed: {e}", url=url) from e
        except (AttributeError, ValueError, OSError) as e:
            # Raised by a read on a response closed from the cancelling thread
            if cancel_token.is_cancelled:
                raise FetchCancelledError(url=url) from e
            raise
        finally:
            unregister()
            response.close()

        logger.debug(f"Fetched {len(content)} bytes from {url}")
        return FeedResponse(
            url=url,
            content=content,
            status_code=response.status_code,
            etag=response.headers.get("ETag"),
            last_modified=response.headers.get("Last-Modified"),
        )


def _close_abandoned(future: Future) -> None:
    """Release the connection of a request nobody waits for any more."""
    if not future.cancelled() and future.exception() is None:
        future.result().close()
