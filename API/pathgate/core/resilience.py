import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Awaitable, Callable, TypeVar

from pathgate.core.errors import (
    AdvisorServiceError,
    AuthorizationError,
    CircuitOpenError,
    ValidationError,
)
from pathgate.core.logging import DOMAIN_RESILIENCE, get_domain_logger

logger = get_domain_logger(__name__, DOMAIN_RESILIENCE)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (ValidationError, AuthorizationError)):
        return False
    if isinstance(exc, AdvisorServiceError):
        return exc.retryable
    return True


async def retry_with_backoff(
    async_func: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay_seconds: float = 0.5,
    retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``async_func`` once plus up to ``max_retries`` retries.

    The delay before retry ``n`` (0-based) is ``base_delay_seconds * 2**n``.
    Errors for which ``retryable`` returns False are raised immediately.
    """
    attempt = 0
    while True:
        try:
            return await async_func()
        except Exception as exc:
            if not retryable(exc) or attempt >= max_retries:
                raise
            delay = base_delay_seconds * (2**attempt)
            logger.info("Retrying after %s (attempt %s/%s, delay %.2fs)", type(exc).__name__, attempt + 1, max_retries, delay)
            await sleep(delay)
            attempt += 1


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    name: str
    failure_threshold: int = 5
    recovery_timeout_seconds: float = 60.0
    half_open_max_calls: int = 1
    clock: Callable[[], float] = time.monotonic
    state: CircuitState = field(default=CircuitState.CLOSED)
    failure_count: int = field(default=0)
    last_failure_time: float = field(default=0.0)
    half_open_calls: int = field(default=0)
    _lock: Lock = field(default_factory=Lock)

    def can_execute(self) -> bool:
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return True
            if self.state == CircuitState.OPEN:
                if self.clock() - self.last_failure_time >= self.recovery_timeout_seconds:
                    self.state = CircuitState.HALF_OPEN
                    self.half_open_calls = 1
                    return True
                return False
            if self.state == CircuitState.HALF_OPEN:
                if self.half_open_calls < self.half_open_max_calls:
                    self.half_open_calls += 1
                    return True
                return False
            return False

    def record_success(self) -> None:
        with self._lock:
            if self.state in {CircuitState.HALF_OPEN, CircuitState.OPEN}:
                logger.info("Circuit %s closed after successful trial call", self.name)
                self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.half_open_calls = 0

    def record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self.clock()
            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                if self.state != CircuitState.OPEN:
                    logger.warning("Circuit %s opened after %s consecutive failures", self.name, self.failure_count)
                self.state = CircuitState.OPEN
                self.half_open_calls = 0

    def release_trial(self) -> None:
        """Hand back a half-open slot whose call ended without an outcome."""
        with self._lock:
            if self.state == CircuitState.HALF_OPEN and self.half_open_calls > 0:
                self.half_open_calls -= 1

    async def call(self, async_func: Callable[[], Awaitable[T]]) -> T:
        if not self.can_execute():
            raise CircuitOpenError(self.name)
        try:
            result = await async_func()
        except Exception:
            self.record_failure()
            raise
        except BaseException:
            # Cancelled: neither success nor failure.
            self.release_trial()
            raise
        self.record_success()
        return result

    def status(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
        }
