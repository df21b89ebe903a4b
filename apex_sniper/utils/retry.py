"""
Retry and circuit breaking for the swap pipeline.

`async_retry` wraps the quote/broadcast attempt made by the trading service;
`CircuitBreaker` stops hammering the quoting service once it keeps failing.
"""

import asyncio
import logging
import time
from functools import wraps
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


def async_retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Re-run a coroutine when it raises one of `exceptions`.

    The wait before attempt n+1 is `delay * backoff**(n-1)`. Anything not in
    `exceptions` propagates on the first raise; the last retryable error is
    re-raised once `max_attempts` calls have failed.

    Example:
        @async_retry(max_attempts=3, delay=0.5, exceptions=(QuoteUnavailable, BroadcastFailed))
        async def attempt():
            return await broadcaster.execute_swap(...)
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        name = getattr(func, "__qualname__", func.__name__)

        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            wait = delay
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as exc:
                    context = {
                        "function": name,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "error_type": type(exc).__name__,
                    }
                    if attempt >= max_attempts:
                        logger.error(f"{name} gave up after {attempt} attempts: {exc}",
                                     extra={"extra_data": context})
                        raise
                    logger.warning(f"{name} attempt {attempt} failed ({exc}), next try in {wait:.2f}s",
                                   extra={"extra_data": context})
                if wait > 0:
                    await asyncio.sleep(wait)
                wait *= backoff
                attempt += 1

        return wrapper
    return decorator


class CircuitBreaker:
    """
    Failure counter guarding one external service.

    CLOSED lets calls through. `failure_threshold` consecutive failures move
    it to OPEN, which rejects calls until `recovery_timeout` seconds pass since
    the last failure. The first call after that runs HALF_OPEN: success closes
    the breaker, failure reopens it immediately.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self._clock = clock

        self.failures = 0
        self.opened_at = 0.0
        self.state = CLOSED

    def _trip(self):
        if self.state != OPEN:
            logger.warning(f"{self.name} circuit opened after {self.failures} consecutive failures")
        self.state = OPEN
        self.opened_at = self._clock()

    def record_success(self):
        if self.state != CLOSED:
            logger.info(f"{self.name} circuit closed")
        self.failures = 0
        self.state = CLOSED

    def record_failure(self):
        self.failures += 1
        if self.state == HALF_OPEN or self.failures >= self.failure_threshold:
            self._trip()

    def can_execute(self) -> bool:
        if self.state != OPEN:
            return True
        if self._clock() - self.opened_at < self.recovery_timeout:
            return False
        self.state = HALF_OPEN
        logger.info(f"{self.name} circuit half-open, letting one request through")
        return True
