"""
Bounded retry with exponential backoff for registry and manifest operations.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from orchestrator.src.errors import PipelineError

logger = logging.getLogger(__name__)

T = TypeVar("T")

async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff: float,
    retry_on: Tuple[Type[PipelineError], ...],
    description: str = "operation",
) -> T:
    """
    Run `operation` up to `attempts` times.
    Only errors in `retry_on` that are marked retryable get another attempt;
    the last error is re-raised once attempts are exhausted.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except retry_on as e:
            if not e.retryable or attempt >= attempts:
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}): {e}; retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
            attempt += 1
