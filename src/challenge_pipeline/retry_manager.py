"""
Retry Manager for the challenge pipeline.

Retries transport-level faults (connection resets, TLS failures, timeouts)
with exponential backoff. Challenge responses are not faults: they are
returned to the orchestrator and handled by the solver and planner.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from .config import RetryConfig
from .exceptions import TransportError

T = TypeVar("T")


@dataclass
class RetryResult(Generic[T]):
    """Result of a retry operation."""

    success: bool
    result: Optional[T]
    attempts: int
    last_error: Optional[Exception]


def is_transport_error(error: Exception) -> bool:
    """Default retry predicate: only transport faults are retried."""
    return isinstance(error, TransportError)


class RetryManager:
    """
    Manages retry logic with exponential backoff.

    Non-retryable exceptions end the loop immediately and are reported in
    the RetryResult rather than raised.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the retry manager.

        Args:
            config: Retry configuration with max_retries and delays
            sleep: Coroutine used to wait between attempts
        """
        self._config = config or RetryConfig()
        self._sleep = sleep

    def _calculate_delay(self, attempt: int) -> float:
        """
        Calculate wait time with exponential backoff.

        delay(n) = base_delay * 2^n, capped at max_delay.

        Args:
            attempt: The current attempt number (0-indexed)

        Returns:
            The delay in seconds before the next retry
        """
        delay = self._config.base_delay_seconds * (2 ** attempt)
        return min(delay, self._config.max_delay_seconds)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        is_retryable: Optional[Callable[[Exception], bool]] = None,
    ) -> RetryResult[T]:
        """
        Execute an operation with retry logic and exponential backoff.

        Args:
            operation: The async operation to execute
            is_retryable: Decides whether an exception is retried;
                         defaults to retrying TransportError only

        Returns:
            RetryResult containing success status, result, attempts, and last error
        """
        predicate = is_retryable or is_transport_error
        max_attempts = self._config.max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            try:
                value = await operation()
            except Exception as e:
                last_error = e
                if not predicate(e) or attempt == max_attempts:
                    return RetryResult(success=False, result=None, attempts=attempt, last_error=e)
                await self._sleep(self._calculate_delay(attempt - 1))
                continue
            return RetryResult(success=True, result=value, attempts=attempt, last_error=None)

        return RetryResult(success=False, result=None, attempts=max_attempts, last_error=last_error)
