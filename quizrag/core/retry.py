"""Bounded retry loop.

Attempt N of MAX: stop immediately on errors the predicate rejects, keep the
last error for reporting, and wrap exhaustion in ``RetryExhaustedError``.
There is no delay between attempts.
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from quizrag.errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_with_retries(
    operation: Callable[[int], Awaitable[T]],
    *,
    max_attempts: int,
    is_retryable: Callable[[BaseException], bool],
    stage: str,
) -> T:
    """Run ``operation`` until it succeeds or the attempt budget is spent.

    Args:
        operation: Coroutine factory receiving the 1-based attempt number
        max_attempts: Attempt budget (at least 1)
        is_retryable: Predicate deciding whether a failure consumes another attempt
        stage: Human-readable stage name used in logs and the final error

    Returns:
        The first successful result

    Raises:
        The original error if it is not retryable, otherwise RetryExhaustedError
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation(attempt)
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = e
            logger.warning(f"{stage}: attempt {attempt}/{max_attempts} failed: {e}")

    logger.error(f"{stage}: giving up after {max_attempts} attempts")
    raise RetryExhaustedError(stage, max_attempts, last_error)
