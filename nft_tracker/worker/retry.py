"""Bounded exponential-backoff retry policy for feed pages and datastore writes."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from nft_tracker import metrics
from nft_tracker.errors import FeedError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Transport errors worth another attempt
RETRYABLE_HTTP_EXC = (
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
    httpx.ReadError,
)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def is_transient_error(exc: BaseException) -> bool:
    """
    Classify an exception as transient infrastructure failure.

    Connection drops, timeouts, serialization conflicts and upstream 5xx/429
    are transient. Constraint violations and malformed payloads are not.
    """
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError):
        return bool(exc.connection_invalidated)
    if isinstance(exc, RETRYABLE_HTTP_EXC):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS
    if isinstance(exc, FeedError):
        return exc.status_code in RETRYABLE_STATUS
    return isinstance(exc, (asyncio.TimeoutError, ConnectionError))


@dataclass(frozen=True)
class RetryPolicy:
    """
    Explicit retry policy passed into the datastore and feed clients.

    Delay before attempt ``n + 1`` is ``min(base_delay * multiplier ** (n - 1), max_delay)``.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    retry_on: Callable[[BaseException], bool] = is_transient_error
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delay values must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt."""
        return min(self.base_delay * (self.multiplier ** max(0, attempt - 1)), self.max_delay)

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        operation: str = "operation",
    ) -> T:
        """
        Run ``fn`` until it succeeds, a non-transient error occurs, or attempts run out.

        Args:
            fn: Zero-argument coroutine factory; called once per attempt
            operation: Label used in logs and metrics

        Returns:
            Result of ``fn``

        Raises:
            RetryExhaustedError: If every attempt failed with a transient error
            Exception: Any non-transient error from ``fn``, unchanged
        """
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await fn()
            except Exception as e:
                if not self.retry_on(e):
                    raise
                last_error = e
                if attempt >= self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{operation} failed with {type(e).__name__}: {e}; "
                    f"retrying in {delay:.1f}s (attempt {attempt}/{self.max_attempts})"
                )
                metrics.record_retry(operation)
                await self.sleep(delay)

        metrics.record_retry_exhausted(operation)
        logger.error(f"{operation} gave up after {self.max_attempts} attempts: {last_error}")
        raise RetryExhaustedError(operation, self.max_attempts, last_error)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        """Build the policy from application settings."""
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )
