"""Retry with exponential backoff for transient collaborator failures."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

T = TypeVar("T")

# Backoff schedule for transient failures, in seconds
EXPONENTIAL_DELAYS = [1, 2, 4]


def backoff_delay(attempt: int, delays: list[float] | None = None) -> float:
    """Delay to wait after a failed attempt (1-based)."""
    delays = delays or EXPONENTIAL_DELAYS
    return delays[min(attempt, len(delays)) - 1]


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    delays: list[float] | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> T:
    """Run ``operation`` until it succeeds or attempts run out.

    Args:
        operation: Zero-argument coroutine factory
        max_attempts: Total attempts, including the first
        delays: Backoff schedule (defaults to 1s, 2s, 4s)
        retry_on: Exception types that trigger a retry
        description: Label used in log messages
        sleep: Sleep function (defaults to asyncio.sleep)

    Returns:
        The operation's result

    Raises:
        The last exception once all attempts failed
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
    sleep = sleep or asyncio.sleep

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt >= max_attempts:
                logger.error(f"{description} failed after {max_attempts} attempts: {e}")
                raise

            delay = backoff_delay(attempt, delays)
            logger.warning(
                f"{description} attempt {attempt}/{max_attempts} failed: {e}; retrying in {delay}s"
            )
            await sleep(delay)

    raise AssertionError("retry loop exited without a result")
