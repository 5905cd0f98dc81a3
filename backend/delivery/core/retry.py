"""
Retry and timeout helpers for store operations.

Only transport failures are retried; precondition and logic errors are
raised to the caller on the first attempt. Backoff doubles the delay after
every failed attempt.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from delivery.core.config import get_settings
from delivery.core.exceptions import DeliveryError, OperationTimeout
from delivery.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    max_attempts: Optional[int] = None,
    retry_delay: Optional[float] = None,
    **context,
) -> T:
    """
    Run operation, retrying transport errors with exponential backoff.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        operation_name: Name used in log events
        max_attempts: Total attempts (defaults to settings)
        retry_delay: Initial delay in seconds (defaults to settings)
        **context: Extra fields for log events

    Returns:
        The operation's result

    Raises:
        DeliveryError: The last transport error, or any non-retryable error
    """
    settings = get_settings()
    attempts = max_attempts or settings.store_retry_attempts
    delay = settings.store_retry_delay_seconds if retry_delay is None else retry_delay

    for attempt in range(attempts):
        try:
            return await operation()
        except DeliveryError as e:
            if not e.retryable or attempt == attempts - 1:
                raise
            logger.warning(
                "Retrying after transport failure",
                operation=operation_name,
                attempt=attempt + 1,
                max_attempts=attempts,
                error=str(e),
                **context,
            )
            await asyncio.sleep(delay * (2**attempt))

    raise RuntimeError("retry_with_backoff called with max_attempts < 1")


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    operation_name: str,
    **context,
) -> T:
    """
    Await with a client-side deadline.

    Raises:
        OperationTimeout: If the deadline passes first
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning(
            "Operation timed out",
            operation=operation_name,
            timeout_seconds=timeout,
            **context,
        )
        raise OperationTimeout(
            f"{operation_name} timed out after {timeout}s",
            operation=operation_name,
            **context,
        ) from e
