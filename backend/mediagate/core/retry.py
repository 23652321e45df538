"""
Retry / backoff for every external call site.

One policy object describes the per-attempt timeout, the attempt budget and
the backoff curve; classification decides what is worth repeating. Only
transient failures (TransientError subclasses and timeouts) are retried;
everything else, including PolicyRejection, propagates on the first raise.

Usage:
    policy = RetryPolicy.from_settings(settings)
    annotations = await retry_call("analysis.await", client.await_result, handle,
                                   policy=policy)
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from mediagate.core.errors import PolicyRejection, TransientError
from mediagate.core.metrics import EXTERNAL_RETRIES

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, PolicyRejection):
        return False
    return isinstance(exc, (TransientError, asyncio.TimeoutError, TimeoutError, ConnectionError))


class RetryExhausted(Exception):
    """Every attempt failed with a transient error."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts: "
            f"{type(last_error).__name__}: {last_error}"
        )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    timeout: Optional[float] = 30.0
    delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 20.0
    classify: Callable[[BaseException], bool] = is_transient

    def get_delay(self, attempt: int) -> float:
        """Delay after the given (0-indexed) failed attempt."""
        return min(self.delay * (self.backoff_factor ** attempt), self.max_delay)

    @classmethod
    def from_settings(cls, settings, *, timeout: Optional[float] = None,
                      max_attempts: Optional[int] = None) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts or settings.external_call_max_attempts,
            timeout=timeout if timeout is not None else settings.external_call_timeout_seconds,
            delay=settings.retry_base_delay_seconds,
            backoff_factor=settings.retry_backoff_factor,
            max_delay=settings.retry_max_delay_seconds,
        )


async def retry_call(
    operation: str,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy,
    **kwargs: Any,
) -> T:
    """Await ``func`` under the policy's timeout, retrying transient failures."""
    last_error: Optional[BaseException] = None
    attempts = max(1, policy.max_attempts)

    for attempt in range(attempts):
        try:
            if policy.timeout is None:
                return await func(*args, **kwargs)
            return await asyncio.wait_for(func(*args, **kwargs), timeout=policy.timeout)
        except Exception as exc:
            if not policy.classify(exc):
                raise
            last_error = exc
            if attempt + 1 < attempts:
                delay = policy.get_delay(attempt)
                EXTERNAL_RETRIES.labels(operation=operation).inc()
                logger.warning(
                    f"Retry {attempt + 1}/{attempts - 1} for {operation}: "
                    f"{type(exc).__name__}: {exc}. Waiting {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    logger.error(f"All {attempts} attempts failed for {operation}: {last_error}")
    raise RetryExhausted(operation, attempts, last_error)
