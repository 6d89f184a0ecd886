"""
Retry, timeout and circuit breaking for calls to external services.

Every channel call goes through a ResilientCaller:

    caller = ResilientCaller.from_settings(settings, breaker=CircuitBreaker("shopify"))
    variants = await caller.call(client.lookup_by_keys, keys, cancel_token=token)

Transient failures are retried with exponential backoff and jitter, permanent
ones surface immediately, and an open circuit rejects without touching the
network.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from stocksync.core.enums import CircuitState
from stocksync.core.exceptions import (
    CircuitOpenError,
    OperationCancelledError,
    TransientExternalError,
)
from stocksync.core.utils import cancellable_sleep, is_cancelled

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """
    Per-client circuit breaker.

    closed -> open after `fail_max` consecutive failures inside
    `monitoring_window` seconds. open rejects calls until `reset_timeout`
    has elapsed, then half_open lets calls through; `half_open_successes`
    successes close it again and any failure re-opens it.
    """

    def __init__(
        self,
        name: str = "channel",
        fail_max: int = 5,
        reset_timeout: float = 60.0,
        monitoring_window: float = 60.0,
        half_open_successes: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.fail_max = fail_max
        self.reset_timeout = reset_timeout
        self.monitoring_window = monitoring_window
        self.half_open_successes = half_open_successes
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures: deque = deque()
        self._opened_at: Optional[float] = None
        self._half_open_success_count = 0

    @property
    def state(self) -> CircuitState:
        # open decays to half_open lazily, on observation
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
            self._state = CircuitState.HALF_OPEN
            self._half_open_success_count = 0
            logger.info(f"Circuit '{self.name}' half-open, testing recovery")
        return self._state

    @property
    def failure_count(self) -> int:
        self._prune()
        return len(self._failures)

    def before_call(self) -> None:
        """Raise CircuitOpenError when the circuit rejects calls."""
        if self.state == CircuitState.OPEN:
            retry_after = max(0.0, self.reset_timeout - (self._clock() - self._opened_at))
            raise CircuitOpenError(self.name, retry_after)

    def record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self._half_open_success_count += 1
            if self._half_open_success_count >= self.half_open_successes:
                self._close()
            return
        self._failures.clear()

    def record_failure(self) -> None:
        state = self.state
        if state == CircuitState.HALF_OPEN:
            self._open()
            return
        if state == CircuitState.OPEN:
            return

        self._failures.append(self._clock())
        self._prune()
        if len(self._failures) >= self.fail_max:
            self._open()

    def reset(self) -> None:
        self._close()

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self.failure_count,
            "fail_max": self.fail_max,
            "reset_timeout": self.reset_timeout,
        }

    def _prune(self) -> None:
        cutoff = self._clock() - self.monitoring_window
        while self._failures and self._failures[0] < cutoff:
            self._failures.popleft()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._half_open_success_count = 0
        logger.warning(f"Circuit '{self.name}' opened after {len(self._failures)} failures")

    def _close(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info(f"Circuit '{self.name}' closed")
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._opened_at = None
        self._half_open_success_count = 0


def _is_retryable(exc: BaseException) -> bool:
    # Retrying into an open circuit cannot succeed before reset_timeout
    return isinstance(exc, TransientExternalError) and not isinstance(exc, CircuitOpenError)


class ResilientCaller:
    """Runs one external call with a hard deadline, retries and a circuit breaker."""

    def __init__(
        self,
        breaker: Optional[CircuitBreaker] = None,
        timeout: float = 30.0,
        max_attempts: int = 4,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        jitter: float = 0.5,
    ):
        self.breaker = breaker
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.jitter = jitter

    @classmethod
    def from_settings(cls, settings, breaker: Optional[CircuitBreaker] = None) -> "ResilientCaller":
        return cls(
            breaker=breaker,
            timeout=settings.EXTERNAL_CALL_TIMEOUT,
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            backoff_base=settings.RETRY_BACKOFF_BASE,
            backoff_max=settings.RETRY_BACKOFF_MAX,
            jitter=settings.RETRY_JITTER,
        )

    async def call(
        self,
        fn: Callable[..., Awaitable[Any]],
        *args,
        cancel_token: Optional[asyncio.Event] = None,
        **kwargs,
    ) -> Any:
        """
        Await `fn(*args, **kwargs)` under the retry policy.

        Raises:
            OperationCancelledError: the token was set before an attempt
            CircuitOpenError: the breaker rejected the call
            TransientExternalError: retries exhausted
            PermanentExternalError: non-retriable failure, first attempt
        """
        async def _sleep(seconds: float) -> None:
            await cancellable_sleep(seconds, cancel_token)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max) + wait_random(0, self.jitter),
            retry=retry_if_exception(_is_retryable),
            sleep=_sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                if is_cancelled(cancel_token):
                    raise OperationCancelledError()
                return await self._attempt(fn, *args, **kwargs)

    async def _attempt(self, fn, *args, **kwargs):
        if self.breaker:
            self.breaker.before_call()
        try:
            result = await asyncio.wait_for(fn(*args, **kwargs), timeout=self.timeout)
        except asyncio.TimeoutError:
            if self.breaker:
                self.breaker.record_failure()
            raise TransientExternalError(f"{getattr(fn, '__name__', 'call')} timed out after {self.timeout}s")
        except TransientExternalError:
            if self.breaker:
                self.breaker.record_failure()
            raise
        if self.breaker:
            self.breaker.record_success()
        return result

    @staticmethod
    def _log_retry(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"Attempt {retry_state.attempt_number} failed ({exc}); "
            f"retrying in {retry_state.next_action.sleep:.2f}s"
        )
