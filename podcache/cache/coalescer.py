"""
Request coalescing to prevent duplicate feed refreshes.

When multiple concurrent requests ask for the same show, only one refresh
runs and all requesters share its result (or its error).
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from podcache.exceptions import FetchCancelledError
from podcache.network.cancellation import CancellationToken, NEVER_CANCELLED

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress refresh."""
    token: CancellationToken = field(default_factory=CancellationToken)
    condition: threading.Condition = field(default_factory=threading.Condition)
    done: bool = False
    result: Optional[Any] = None
    error: Optional[Exception] = None
    started_at: float = field(default_factory=time.time)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same key share one refresh.

    Pattern:
    - First request for a key submits the fetch to the worker pool
    - Every request (including the first) waits on the shared InFlightRequest
    - When the fetch completes, all waiters receive the same result
    - Cancellation is reference counted: a caller that cancels only
      withdraws its own interest; the fetch itself is cancelled when the
      last interested caller withdraws

    Usage:
        coalescer = RequestCoalescer()
        result = coalescer.get_or_fetch(
            cache_key="show-42",
            fetch_fn=lambda token: refresh(token),
        )
    """

    def __init__(self, timeout: Optional[float] = 30.0, max_workers: int = 4):
        """
        Initialize the coalescer.

        Args:
            timeout: Max seconds a caller waits for an in-flight request
            max_workers: Refreshes running at once across all keys
        """
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._lock = threading.Lock()
        self._timeout = timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="cache-refresh",
        )

    def get_or_fetch(
        self,
        cache_key: str,
        fetch_fn: Callable[[CancellationToken], Any],
        cancel_token: CancellationToken = NEVER_CANCELLED,
    ) -> Any:
        """
        Either join an existing in-flight request or initiate a new one.

        Args:
            cache_key: Unique key for this request
            fetch_fn: Called with the shared cancellation token of the refresh
            cancel_token: This caller's own cancellation token

        Returns:
            The fetched data (shared among all concurrent callers)

        Raises:
            FetchCancelledError: This caller cancelled before completion
            TimeoutError: Waiting for the in-flight request timed out
            Exception: Any error from fetch_fn is propagated to every caller
        """
        cancel_token.raise_if_cancelled()

        with self._lock:
            in_flight = self._in_flight.get(cache_key)
            if in_flight is None:
                in_flight = InFlightRequest()
                self._in_flight[cache_key] = in_flight
                is_initiator = True
                logger.debug(f"Initiating fetch for {cache_key}")
            else:
                is_initiator = False
            in_flight.waiter_count += 1
            if not is_initiator:
                logger.debug(
                    f"Coalescing request for {cache_key} "
                    f"(waiters: {in_flight.waiter_count})"
                )

        if is_initiator:
            self._executor.submit(self._run, cache_key, in_flight, fetch_fn)

        return self._wait(cache_key, in_flight, cancel_token)

    def _run(
        self,
        cache_key: str,
        in_flight: InFlightRequest,
        fetch_fn: Callable[[CancellationToken], Any],
    ) -> None:
        try:
            in_flight.result = fetch_fn(in_flight.token)
        except Exception as e:
            in_flight.error = e
            logger.warning(f"Fetch failed for {cache_key}: {e}")
        finally:
            # Clean up first so later callers start a new fetch
            with self._lock:
                if self._in_flight.get(cache_key) is in_flight:
                    del self._in_flight[cache_key]
            # Signal completion to all waiters
            with in_flight.condition:
                in_flight.done = True
                in_flight.condition.notify_all()

    def _wait(
        self,
        cache_key: str,
        in_flight: InFlightRequest,
        cancel_token: CancellationToken,
    ) -> Any:
        def wake() -> None:
            with in_flight.condition:
                in_flight.condition.notify_all()

        unregister = cancel_token.on_cancel(wake)
        try:
            with in_flight.condition:
                in_flight.condition.wait_for(
                    lambda: in_flight.done or cancel_token.is_cancelled,
                    timeout=self._timeout,
                )
        finally:
            unregister()

        if in_flight.done:
            if in_flight.error:
                raise in_flight.error
            return in_flight.result

        self._withdraw(cache_key, in_flight)
        if cancel_token.is_cancelled:
            raise FetchCancelledError(f"Request for {cache_key} cancelled by caller")

        logger.error(f"Timeout waiting for coalesced request: {cache_key}")
        raise TimeoutError(f"Request for {cache_key} timed out after {self._timeout}s")

    def _withdraw(self, cache_key: str, in_flight: InFlightRequest) -> None:
        """Drop one caller's interest; cancel the fetch when nobody is left."""
        with self._lock:
            in_flight.waiter_count -= 1
            abandon = in_flight.waiter_count == 0 and not in_flight.done
            if abandon and self._in_flight.get(cache_key) is in_flight:
                del self._in_flight[cache_key]

        if abandon:
            logger.info(f"Last caller withdrew, cancelling fetch for {cache_key}")
            in_flight.token.cancel()

    def is_in_flight(self, cache_key: str) -> bool:
        with self._lock:
            return cache_key in self._in_flight

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
            }

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting refreshes; cancel and optionally wait for running ones."""
        with self._lock:
            pending = list(self._in_flight.values())
        for in_flight in pending:
            in_flight.token.cancel()
        self._executor.shutdown(wait=wait)
