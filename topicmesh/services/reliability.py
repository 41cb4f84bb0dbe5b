"""Fault-tolerance primitives wrapping the search dependency.

Call chain per query: RetryHandler -> CircuitBreaker -> SearxngTransport.
One breaker instance is shared by every agent talking to the same SearXNG
instance; it is built once in ``services.runtime`` and injected.
"""
from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from topicmesh.models.research import BreakerState, CircuitBreakerState
from topicmesh.services.errors import (
    ConfigurationError,
    InvalidQueryError,
    ResearchCancelledError,
    RetryExhaustedError,
    SearchError,
    ServiceUnavailableError,
)

T = TypeVar("T")

# Errors the caller caused; the dependency itself answered or was never hit.
NON_DEPENDENCY_ERRORS = (InvalidQueryError, ConfigurationError)


class CancellationToken:
    """Caller-held handle that aborts a research subtree.

    Tasks registered with the token are cancelled on ``cancel()``, which
    propagates into httpx and closes their connections.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._tasks: set[asyncio.Task[Any]] = set()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Research cancelled") -> None:
        if self.cancelled:
            return
        self.reason = reason
        self._event.set()
        for task in list(self._tasks):
            task.cancel()

    def register(self, task: asyncio.Task[Any]) -> None:
        if self.cancelled:
            task.cancel()
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ResearchCancelledError(self.reason or "Research cancelled")

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds unless cancelled first."""
        try:
            async with asyncio.timeout(delay):
                await self._event.wait()
        except TimeoutError:
            return
        self.raise_if_cancelled()


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        *,
        name: str = "searxng",
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float | None = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> BreakerState:
        return self._state

    def snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            state=self._state,
            failure_count=self._failure_count,
            last_failure_time=self._last_failure_time,
        )

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        await self._admit()
        try:
            result = await operation()
        except NON_DEPENDENCY_ERRORS:
            await self._release_trial()
            raise
        except Exception:
            await self.on_failure()
            raise
        except BaseException:
            # Cancellation says nothing about the dependency's health.
            await self._release_trial()
            raise
        await self.on_success()
        return result

    async def on_success(self) -> None:
        async with self._lock:
            if self._state != BreakerState.CLOSED:
                logger.info(f"Circuit breaker '{self.name}' closed")
            self._state = BreakerState.CLOSED
            self._failure_count = 0
            self._trial_in_flight = False

    async def on_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()
            self._trial_in_flight = False
            if self._state == BreakerState.HALF_OPEN or self._failure_count >= self.failure_threshold:
                if self._state != BreakerState.OPEN:
                    logger.warning(
                        f"Circuit breaker '{self.name}' opened after {self._failure_count} failures"
                    )
                self._state = BreakerState.OPEN

    async def reset(self) -> None:
        async with self._lock:
            self._state = BreakerState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._trial_in_flight = False

    async def _admit(self) -> None:
        async with self._lock:
            if self._state == BreakerState.OPEN:
                elapsed = self._clock() - (self._last_failure_time or 0.0)
                if elapsed < self.recovery_timeout:
                    raise ServiceUnavailableError(
                        context={"breaker": self.name, "retry_in": round(self.recovery_timeout - elapsed, 2)}
                    )
                self._state = BreakerState.HALF_OPEN
                self._trial_in_flight = False
                logger.info(f"Circuit breaker '{self.name}' half-open, admitting one trial call")

            if self._state == BreakerState.HALF_OPEN:
                if self._trial_in_flight:
                    raise ServiceUnavailableError(context={"breaker": self.name, "half_open": True})
                self._trial_in_flight = True

    async def _release_trial(self) -> None:
        async with self._lock:
            self._trial_in_flight = False


class RetryHandler:
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        backoff_multiplier: float = 2.0,
        jitter: bool = True,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.jitter = jitter
        self._sleep = sleep
        self._rng = rng or random.Random()

    def compute_delay(self, attempt: int) -> float:
        delay = min(self.max_delay, self.base_delay * self.backoff_multiplier ** (attempt - 1))
        if self.jitter:
            delay *= self._rng.uniform(0.5, 1.5)
        return min(delay, self.max_delay)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str = "operation",
        cancel_token: CancellationToken | None = None,
    ) -> T:
        previous_delay = 0.0
        for attempt in range(1, self.max_attempts + 1):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            try:
                return await operation()
            except SearchError as exc:
                if not exc.retryable:
                    raise
                if attempt == self.max_attempts:
                    raise RetryExhaustedError(self.max_attempts, exc) from exc
                # Jitter never shortens the wait below the previous attempt's.
                delay = max(previous_delay, self.compute_delay(attempt))
                previous_delay = delay
                logger.warning(
                    f"{context}: attempt {attempt}/{self.max_attempts} failed "
                    f"({exc.error_type.value}), retrying in {delay:.2f}s"
                )
                if cancel_token is not None:
                    await cancel_token.sleep(delay)
                else:
                    await self._sleep(delay)

        raise RuntimeError("retry loop exited without a result")


class ResilientSearch:
    """Search transport guarded by retry and circuit breaker."""

    def __init__(self, transport: Any, breaker: CircuitBreaker, retry: RetryHandler):
        self.transport = transport
        self.breaker = breaker
        self.retry = retry

    async def search(self, query: str, options: Any = None, cancel_token: CancellationToken | None = None):
        return await self.retry.execute(
            lambda: self.breaker.call(lambda: self.transport.search(query, options)),
            context=f"search '{query[:60]}'",
            cancel_token=cancel_token,
        )
