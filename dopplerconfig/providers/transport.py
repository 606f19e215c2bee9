"""Resilient HTTP transport for remote configuration sources.

Wraps an httpx.AsyncClient with:
- per-request timeout
- retries with exponential backoff (tenacity) on transport errors and
  retryable statuses
- a circuit breaker that rejects calls after repeated failures

The Doppler provider only sees the final response or exception; retry and
breaker state live here.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from dopplerconfig.errors import CircuitOpenError
from dopplerconfig.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_BREAKER_THRESHOLD = 5
DEFAULT_BREAKER_RESET = 30.0


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for idempotent requests.

    The n-th retry waits ``base_delay * 2 ** (n - 1)`` seconds, capped at
    ``max_delay``.
    """

    attempts: int = DEFAULT_RETRY_ATTEMPTS
    base_delay: float = DEFAULT_RETRY_DELAY
    max_delay: float = 30.0
    retry_on_status: tuple[int, ...] = (429, 500, 502, 503, 504)

    def should_retry(self, response: httpx.Response) -> bool:
        return response.status_code in self.retry_on_status


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    Opens after ``failure_threshold`` consecutive failures, stays open for
    ``reset_timeout`` seconds, then lets a single probe through (half-open).
    A successful probe closes the circuit; a failed one re-opens it.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_BREAKER_THRESHOLD,
        reset_timeout: float = DEFAULT_BREAKER_RESET,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        """Current state, promoting OPEN to HALF_OPEN once the reset timeout passed."""
        if (
            self._state == CircuitState.OPEN
            and self._clock() - self._opened_at >= self._reset_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False
        return self._state

    def allow(self) -> bool:
        """Return True if a request may be attempted now."""
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and not self._probe_in_flight:
            self._probe_in_flight = True
            return True
        return False

    def record_success(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._probe_in_flight = False

    def record_failure(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._open()
            return
        self._failures += 1
        if self._failures >= self._failure_threshold:
            self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._probe_in_flight = False
        logger.warning("circuit_breaker_opened", failures=self._failures)


class ResilientTransport:
    """HTTP transport with timeout, retries, and circuit breaking.

    Example:
        transport = ResilientTransport(timeout=10.0, retry=RetryPolicy(attempts=5))
        response = await transport.get("https://api.doppler.com/v3/...", headers=...)
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        retry: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the transport.

        Args:
            timeout: Request timeout in seconds
            retry: Retry policy (defaults to 3 attempts, 1s base delay)
            breaker: Circuit breaker (defaults to 5 failures / 30s reset)
            client: Pre-built httpx client, e.g. one using httpx.MockTransport
            sleep: Coroutine used to wait between attempts
        """
        self._retry = retry or RetryPolicy()
        self._breaker = breaker or CircuitBreaker()
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._sleep = sleep

    @property
    def circuit_state(self) -> CircuitState:
        """State of the underlying circuit breaker."""
        return self._breaker.state

    def _retrying(self) -> AsyncRetrying:
        policy = self._retry
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, policy.attempts)),
            wait=wait_exponential(multiplier=policy.base_delay, max=policy.max_delay),
            retry=(
                retry_if_exception_type(httpx.TransportError)
                | retry_if_result(policy.should_retry)
            ),
            sleep=self._sleep,
            before_sleep=_log_retry,
            # Hand back the last response, or re-raise the last transport error
            retry_error_callback=lambda state: state.outcome.result(),
        )

    async def get(
        self,
        url: str,
        *,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """Issue a GET request with retries.

        Raises:
            CircuitOpenError: If the breaker rejects the call
            httpx.HTTPError: If every attempt failed at the transport level
        """
        if not self._breaker.allow():
            raise CircuitOpenError("circuit breaker is open")

        try:
            response = await self._retrying()(
                self._client.get, url, params=params, headers=headers
            )
        except httpx.TransportError:
            self._breaker.record_failure()
            raise

        if response.status_code >= 500 or self._retry.should_retry(response):
            self._breaker.record_failure()
        else:
            self._breaker.record_success()
        return response

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


def _log_retry(state: RetryCallState) -> None:
    outcome = state.outcome
    assert outcome is not None
    url = state.args[0] if state.args else None
    if outcome.failed:
        logger.debug(
            "http_request_failed",
            url=url,
            attempt=state.attempt_number,
            error=str(outcome.exception()),
        )
    else:
        logger.debug(
            "http_request_retry",
            url=url,
            attempt=state.attempt_number,
            status_code=outcome.result().status_code,
        )
