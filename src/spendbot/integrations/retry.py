"""Bounded retry with linear backoff for external writes.

Used uniformly for WhatsApp sends, media uploads and image-host calls:
a fixed small number of attempts, sleeping ``backoff * attempt`` seconds
between them.  The last exception is re-raised unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from spendbot.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    description: str,
    attempts: int | None = None,
    backoff_seconds: float | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Run *operation* until it succeeds or *attempts* are exhausted.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        description: Short label used in log lines (e.g. ``"send text"``).
        attempts: Total attempts (defaults to ``settings.retry_attempts``).
        backoff_seconds: Linear backoff step (defaults to
            ``settings.retry_backoff_seconds``).
        retry_on: Exception types that trigger another attempt.  Anything
            else propagates immediately.

    Returns:
        Whatever *operation* returns on its first successful attempt.
    """
    total = max(1, attempts if attempts is not None else settings.retry_attempts)
    step = backoff_seconds if backoff_seconds is not None else settings.retry_backoff_seconds

    for attempt in range(1, total + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt == total:
                logger.error("%s failed after %d attempts: %s", description, total, exc)
                raise
            delay = step * attempt
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description, attempt, total, exc, delay,
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")
