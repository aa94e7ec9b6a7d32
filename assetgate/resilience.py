"""
assetgate Resilience

Retry with capped exponential backoff and jitter, plus cooperative
cancellation between attempts.

Backoff schedule
────────────────

    attempt 1    immediately
    attempt n    after  min(max_delay, base_delay * 2^(n-2)) * (1 + jitter)
                 jitter ~ U[0, jitter_factor)

    With the defaults (3 attempts, 1000 ms base, 10000 ms cap, 0.1 jitter):

        ──▶ try ──1.0-1.1s──▶ try ──2.0-2.2s──▶ try ──▶ RetryExhaustedError

Usage
─────

    policy = RetryPolicy(max_attempts=3, retryable_exceptions=(OracleRequestError,))
    token = CancellationToken()
    result = policy.execute(lambda: endpoint.request(job_id, params), cancel_token=token)

Sleep and the jitter source are injectable so tests can run the schedule
without real time passing.
"""

from __future__ import annotations

import functools
import random
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional, TypeVar

from assetgate.errors import OperationCancelled

T = TypeVar("T")


# ════════════════════════════════════════════════════════════════════════════
# CANCELLATION
# ════════════════════════════════════════════════════════════════════════════


class CancellationToken:
    """
    Cooperative cancellation flag shared between a caller and a retry loop.

    Cancellation is observed between attempts and interrupts backoff waits;
    an attempt already on the wire runs to completion.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Block up to ``seconds``; True if cancelled meanwhile."""
        return self._event.wait(seconds)

    def raise_if_cancelled(self, operation: str = "operation") -> None:
        if self._event.is_set():
            raise OperationCancelled(operation)


# ════════════════════════════════════════════════════════════════════════════
# RETRY POLICY
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class RetryConfig:
    """Retry policy configuration."""
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    jitter_factor: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be non-negative")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be within [0, 1]")


@dataclass
class RetryMetrics:
    """Retry metrics."""
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    retries_exhausted: int = 0
    cancelled: int = 0
    total_retry_delay_seconds: float = 0.0


class RetryExhaustedError(Exception):
    """Raised when all retry attempts are exhausted."""
    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_exception}")


class RetryPolicy:
    """
    Retry policy with capped exponential backoff and multiplicative jitter.

    Only exceptions listed in ``retryable_exceptions`` are retried; anything
    else propagates from the attempt that raised it. Per-call state (attempt
    counter, delays) lives on the stack, so one policy can serve concurrent
    callers; only the metrics are shared.

    Example:
        retry = RetryPolicy(max_attempts=3, base_delay_ms=1000)

        @retry
        def flaky_operation():
            return external_service.call()

        # Or programmatic
        result = retry.execute(lambda: external_service.call())
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 10000,
        jitter_factor: float = 0.1,
        retryable_exceptions: tuple = (Exception,),
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        rng: Optional[Callable[[], float]] = None,
    ):
        self.config = RetryConfig(
            max_attempts=max_attempts,
            base_delay_ms=base_delay_ms,
            max_delay_ms=max_delay_ms,
            jitter_factor=jitter_factor,
        )
        self.retryable_exceptions = retryable_exceptions
        self._metrics = RetryMetrics()
        self._lock = threading.Lock()
        self._on_retry = on_retry
        self._sleep = sleep
        self._rng = rng or random.random

    @property
    def metrics(self) -> RetryMetrics:
        """Current retry metrics."""
        with self._lock:
            return replace(self._metrics)

    def update(self, **changes: Any) -> RetryConfig:
        """Replace configuration fields; validated before taking effect."""
        with self._lock:
            self.config = replace(self.config, **changes)
            return self.config

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before ``attempt`` (1-based). Zero for the first."""
        if attempt < 2:
            return 0.0
        config = self.config
        capped_ms = min(config.max_delay_ms, config.base_delay_ms * (2 ** (attempt - 2)))
        jitter = self._rng() * config.jitter_factor
        return capped_ms * (1 + jitter) / 1000.0

    def _wait(self, seconds: float, cancel_token: Optional[CancellationToken]) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
            return
        if cancel_token is not None:
            cancel_token.wait(seconds)
        else:
            time.sleep(seconds)

    def _check_cancelled(self, cancel_token: Optional[CancellationToken], operation: str) -> None:
        if cancel_token is not None and cancel_token.cancelled:
            with self._lock:
                self._metrics.cancelled += 1
            raise OperationCancelled(operation)

    def execute(
        self,
        func: Callable[[], T],
        cancel_token: Optional[CancellationToken] = None,
        operation: str = "operation",
    ) -> T:
        """Execute function with retry policy."""
        config = self.config
        last_exception: Optional[Exception] = None

        for attempt in range(1, config.max_attempts + 1):
            if attempt > 1:
                delay = self.delay_before(attempt)
                with self._lock:
                    self._metrics.total_retry_delay_seconds += delay
                if self._on_retry:
                    self._on_retry(attempt, last_exception, delay)
                self._check_cancelled(cancel_token, operation)
                self._wait(delay, cancel_token)

            self._check_cancelled(cancel_token, operation)

            with self._lock:
                self._metrics.total_attempts += 1

            try:
                result = func()
            except self.retryable_exceptions as e:
                last_exception = e
                with self._lock:
                    self._metrics.failed_attempts += 1
                continue

            with self._lock:
                self._metrics.successful_attempts += 1
            return result

        with self._lock:
            self._metrics.retries_exhausted += 1

        raise RetryExhaustedError(config.max_attempts, last_exception)

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Decorator for retry protection."""
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper

