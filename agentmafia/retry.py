"""
Retry Utilities
===============

Exponential backoff for transient provider failures (rate limits, 5xx,
timeouts, dropped connections). Non-transient errors are raised at once.

Usage:
    from agentmafia.retry import with_retry

    response = await with_retry(
        lambda: provider.complete(model, system, messages, tools),
        should_stop=run.is_cancelled,
    )
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from agentmafia.errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_HTTP_CODES = frozenset({408, 429, 500, 502, 503, 504, 520, 521, 522, 523, 524})

_TRANSIENT_PATTERNS = (
    "timeout",
    "timed out",
    "econnreset",
    "socket hang up",
    "network",
    "rate limit",
    "overloaded",
    "temporarily unavailable",
    "too many requests",
    "service unavailable",
    "bad gateway",
)


def is_transient_error(error: BaseException) -> bool:
    """Decide whether an error is worth retrying."""
    if isinstance(error, ProviderError):
        if error.transient:
            return True
        if error.status_code is not None:
            return error.status_code in TRANSIENT_HTTP_CODES
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in TRANSIENT_HTTP_CODES
    message = str(error).lower()
    return any(pattern in message for pattern in _TRANSIENT_PATTERNS)


def backoff_delay(attempt: int, initial_delay: float, max_delay: float, jitter: bool = True) -> float:
    """Delay before retry number ``attempt`` (1-based), capped, +/-25% jitter."""
    delay = min(initial_delay * (2 ** (attempt - 1)), max_delay)
    if jitter:
        spread = delay * 0.25
        delay = delay - spread + random.random() * spread * 2
    return delay


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 15.0,
    should_stop: Optional[Callable[[], bool]] = None,
) -> T:
    """
    Run ``operation`` until it succeeds, retrying transient failures.

    ``should_stop`` is consulted before every retry; once it returns True the
    last error is raised instead of sleeping again.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if attempt >= max_attempts or not is_transient_error(exc):
                raise
            if should_stop is not None and should_stop():
                raise
            delay = backoff_delay(attempt, initial_delay, max_delay)
            logger.warning("Transient error (%s); retry %d/%d in %.1fs", exc, attempt + 1, max_attempts, delay)
            await asyncio.sleep(delay)
