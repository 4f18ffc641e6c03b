"""
Cooperative cancellation for fetches, backoff sleeps and coalesced waits.
"""
import threading
from typing import Callable, List

from podcache.exceptions import FetchCancelledError


class CancellationToken:
    """
    Thread-safe one-shot cancellation flag.

    Sleeping on the token (`wait`) returns early as soon as it is cancelled,
    so backoff delays never outlive a cancellation. Callbacks registered with
    `on_cancel` run once, on the thread that calls `cancel()`.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds. Returns True if cancelled."""
        return self._event.wait(timeout)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback; runs immediately if already cancelled.

        Returns:
            A function that unregisters the callback
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return unregister
        callback()
        return lambda: None

    def raise_if_cancelled(self, url=None) -> None:
        if self._event.is_set():
            raise FetchCancelledError(url=url)


# Never cancelled; used when the caller passes no token
class _NeverCancelled(CancellationToken):
    def cancel(self) -> None:
        raise RuntimeError("NEVER_CANCELLED cannot be cancelled")


NEVER_CANCELLED = _NeverCancelled()
