"""
Bounded retries with exponential backoff across escalating client profiles.

Each profile gets `max_attempts` tries. Transient failures back off and retry;
once a profile is exhausted the next (more permissive) profile takes over,
which recovers from failures that repeating an identical request cannot fix,
such as a misbehaving cache-aware proxy. A terminal failure stops everything.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import Settings, settings as default_settings
from podcache.exceptions import ExhaustedRetriesError, FetchCancelledError, FetchError
from podcache.network.cancellation import CancellationToken, NEVER_CANCELLED
from podcache.network.fetcher import CacheMode, ClientConfig, FeedFetcher, FeedResponse

logger = logging.getLogger("network.retry")


@dataclass
class RetryPolicy:
    """Retry budget and the ordered fallback profiles."""
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    fallback_profiles: List[ClientConfig] = field(
        default_factory=lambda: [ClientConfig(name="primary")]
    )

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if not self.fallback_profiles:
            raise ValueError("at least one fallback profile is required")

    def delay_for(self, attempt: int) -> float:
        """Backoff after a failed `attempt` (1-based)."""
        return self.base_delay * self.backoff_multiplier ** (attempt - 1)

    @property
    def max_total_attempts(self) -> int:
        return self.max_attempts * len(self.fallback_profiles)

    @property
    def max_total_duration(self) -> float:
        """Seconds a run may take when every attempt times out."""
        backoff = sum(self.delay_for(attempt) for attempt in range(1, self.max_attempts))
        return sum(
            self.max_attempts * profile.timeout + backoff
            for profile in self.fallback_profiles
        )


def build_retry_policy(cfg: Optional[Settings] = None) -> RetryPolicy:
    """
    Default policy: a strict primary profile, then a permissive fallback.

    The fallback uses a longer timeout, a browser user agent, bypasses
    intermediate caches and is allowed on cellular/constrained networks.
    """
    cfg = cfg or default_settings
    primary = ClientConfig(
        name="primary",
        timeout=cfg.request_timeout_seconds,
        user_agent=cfg.user_agent,
        cache_mode=CacheMode.DEFAULT,
        allow_cellular=False,
        allow_constrained=False,
    )
    fallback = ClientConfig(
        name="fallback",
        timeout=cfg.fallback_timeout_seconds,
        user_agent=cfg.fallback_user_agent,
        cache_mode=CacheMode.NO_CACHE,
        allow_cellular=True,
        allow_constrained=True,
    )
    return RetryPolicy(
        max_attempts=cfg.retry_max_attempts,
        base_delay=cfg.retry_base_delay_seconds,
        backoff_multiplier=cfg.retry_backoff_multiplier,
        fallback_profiles=[primary, fallback],
    )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, FetchError) and exc.is_retryable


def _cancellable_sleep(delay: float, cancel_token: CancellationToken) -> bool:
    return cancel_token.wait(delay)


class RetryCoordinator:
    """
    Wraps a FeedFetcher with the retry/backoff/fallback procedure.

    Each profile runs under its own tenacity Retrying loop; backoff sleeps go
    through the cancellation token so they end as soon as the caller cancels.

    Usage:
        coordinator = RetryCoordinator(FeedFetcher())
        response = coordinator.fetch_with_retry(url, build_retry_policy())
    """

    def __init__(
        self,
        fetcher: FeedFetcher,
        sleep: Optional[Callable[[float, CancellationToken], bool]] = None,
    ):
        """
        Args:
            fetcher: Single-attempt fetcher
            sleep: Backoff sleeper returning True if cancelled while sleeping
        """
        self._fetcher = fetcher
        self._sleep = sleep or _cancellable_sleep

    def _retrying(self, url: str, policy: RetryPolicy, profile: ClientConfig,
                  cancel_token: CancellationToken) -> Retrying:
        def sleep(delay: float) -> None:
            if self._sleep(delay, cancel_token):
                raise FetchCancelledError(url=url)

        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                f"Attempt {retry_state.attempt_number}/{policy.max_attempts} [{profile.name}] "
                f"failed for {url}: {retry_state.outcome.exception()}; "
                f"retrying in {retry_state.next_action.sleep:.1f}s"
            )

        return Retrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(multiplier=policy.base_delay, exp_base=policy.backoff_multiplier),
            retry=retry_if_exception(_is_retryable),
            sleep=sleep,
            before_sleep=log_retry,
            reraise=True,
        )

    def close(self) -> None:
        close = getattr(self._fetcher, "close", None)
        if close is not None:
            close()

    def fetch_with_retry(
        self,
        url: str,
        policy: RetryPolicy,
        validator: Optional[str] = None,
        cancel_token: CancellationToken = NEVER_CANCELLED,
    ) -> FeedResponse:
        """
        Fetch `url`, retrying transient failures.

        Returns:
            The first successful response

        Raises:
            FetchError: The first terminal error, unchanged
            FetchCancelledError: Cancelled during a fetch or a backoff sleep
            ExhaustedRetriesError: All profiles exhausted; wraps the last error
        """
        attempts = 0
        last_error: Optional[FetchError] = None

        def attempt(profile: ClientConfig) -> FeedResponse:
            nonlocal attempts
            cancel_token.raise_if_cancelled(url)
            attempts += 1
            return self._fetcher.fetch(url, profile, validator=validator, cancel_token=cancel_token)

        for profile_index, profile in enumerate(policy.fallback_profiles):
            if profile_index > 0:
                logger.warning(f"Escalating to profile '{profile.name}' for {url}")
            try:
                response = self._retrying(url, policy, profile, cancel_token)(attempt, profile)
            except FetchError as e:
                if not e.is_retryable:
                    logger.warning(f"Terminal error for {url}: {e} (no retry)")
                    raise
                logger.warning(f"Profile '{profile.name}' exhausted for {url}: {e}")
                last_error = e
                continue

            if attempts > 1:
                logger.info(f"Recovered {url} on attempt {attempts} [{profile.name}]")
            return response

        raise ExhaustedRetriesError(last_error, attempts)
