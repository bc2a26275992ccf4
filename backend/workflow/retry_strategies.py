"""Step retry strategies and failure classification.

Provides:
- is_retryable(): transient vs fatal classification of step errors
- RetryStrategy: fixed / exponential / linear backoff with optional jitter
- execute_with_retry(): run a coroutine function under a strategy

Usage:
    strategy = RetryStrategy.exponential(max_retries=3, base_delay=2.0)
    delay = strategy.compute_delay(task.retry_count)
"""

import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import structlog

from app.config import Settings
from core.constants import ErrorCode
from core.exceptions import EngineException

logger = structlog.get_logger(__name__)


def is_retryable(error: BaseException) -> bool:
    """Whether a step failure is transient.

    Retryable: RetryableStepError and subclasses, any EngineException
    whose code is RATE_LIMITED, TIMEOUT or EXTERNAL_SERVICE_ERROR,
    timeouts and connection errors. Everything else is fatal.
    """
    if isinstance(error, EngineException):
        return error.retryable
    return isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError))


def error_info(error: BaseException) -> dict:
    """``{message, code, retryable}`` describing a step failure."""
    if isinstance(error, EngineException):
        return error.to_dict()
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        code = ErrorCode.TIMEOUT
    elif isinstance(error, ConnectionError):
        code = ErrorCode.EXTERNAL_SERVICE_ERROR
    else:
        code = ErrorCode.INTERNAL_ERROR
    return {
        "message": str(error) or type(error).__name__,
        "code": code.value,
        "retryable": is_retryable(error),
    }


class RetryPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


@dataclass
class RetryStrategy:
    """Backoff policy for re-running failed steps."""
    policy: RetryPolicy
    max_retries: int = 3
    base_delay: float = 2.0
    max_delay: float = 300.0
    jitter: bool = True
    jitter_range: float = 0.25

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No retries, fail immediately."""
        return cls(policy=RetryPolicy.NONE, max_retries=0)

    @classmethod
    def fixed(cls, max_retries: int = 1, delay: float = 5.0) -> 'RetryStrategy':
        """Fixed delay between retries."""
        return cls(
            policy=RetryPolicy.FIXED,
            max_retries=max_retries,
            base_delay=delay,
            jitter=False,
        )

    @classmethod
    def exponential(
        cls,
        max_retries: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 300.0,
        jitter: bool = True,
    ) -> 'RetryStrategy':
        """Exponential backoff: base_delay * 2^(attempt-1)."""
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
        )

    @classmethod
    def linear(cls, max_retries: int = 3, base_delay: float = 2.0, max_delay: float = 30.0) -> 'RetryStrategy':
        """Linear backoff: base_delay * attempt."""
        return cls(
            policy=RetryPolicy.LINEAR,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> 'RetryStrategy':
        """Task retry backoff configured by RETRY_* settings."""
        return cls.exponential(
            max_retries=settings.DEFAULT_MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
            jitter=settings.RETRY_JITTER,
        )

    def compute_delay(self, attempt: int) -> float:
        """Compute the delay before retry number ``attempt`` (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0

        if self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (max(attempt, 1) - 1))
        elif self.policy == RetryPolicy.LINEAR:
            delay = self.base_delay * max(attempt, 1)
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = delay + random.uniform(-jitter_amount, jitter_amount)
            delay = min(max(0.0, delay), self.max_delay)

        return round(delay, 3)

    def should_retry(self, retries_done: int, error: Optional[BaseException] = None, max_retries: Optional[int] = None) -> bool:
        """Whether another attempt is allowed after ``retries_done`` retries.

        ``max_retries`` overrides the strategy's bound (tasks carry their own).
        """
        if self.policy == RetryPolicy.NONE:
            return False
        limit = self.max_retries if max_retries is None else max_retries
        if retries_done >= limit:
            return False
        return error is None or is_retryable(error)


async def execute_with_retry(
    func: Callable,
    strategy: RetryStrategy,
    *args,
    on_retry: Optional[Callable] = None,
    **kwargs,
):
    """Execute an async function with the given retry strategy.

    Args:
        func: Async callable to execute.
        strategy: RetryStrategy instance.
        on_retry: Optional callback(attempt, error, delay) called before each retry.

    Returns:
        The result of func(*args, **kwargs).

    Raises:
        The last exception once the error is fatal or retries are exhausted.
    """
    retries_done = 0

    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not strategy.should_retry(retries_done, e):
                raise

            retries_done += 1
            delay = strategy.compute_delay(retries_done)

            if on_retry:
                try:
                    result = on_retry(retries_done, e, delay)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as callback_error:
                    logger.warning("Retry callback failed", error=str(callback_error))

            await asyncio.sleep(delay)
