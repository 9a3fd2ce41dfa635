"""
Timeout and retry wrapper for external calls.

Storage, database and model calls can all hang. Everything the pipeline
awaits from the outside world goes through call_with_timeout so that a
stuck call turns into an OperationTimeoutError instead of a stuck upload.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .errors import OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_timeout(
    operation: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    retries: int = 0,
    description: str = "external call",
) -> T:
    """
    Await operation() with a timeout, retrying only when it times out.

    `operation` is a factory rather than an awaitable because a coroutine
    can only be awaited once; each attempt needs a fresh one.

    Other exceptions propagate untouched on the first attempt. Raises
    OperationTimeoutError once every attempt has timed out.
    """
    attempts = retries + 1

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "External call timed out",
                extra={
                    "operation": description,
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "timeout_seconds": timeout,
                }
            )

    raise OperationTimeoutError(
        f"{description} timed out after {attempts} attempt(s) of {timeout}s"
    )
