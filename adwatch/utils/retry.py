"""Bounded retry helpers for calls to the ad sources."""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

RETRY_EXCEPTIONS = (httpx.TransportError, asyncio.TimeoutError)
RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, RETRY_EXCEPTIONS):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRY_STATUS_CODES
    return False


def retry_async(func: Callable[..., Awaitable], *, attempts: int = 3, base_delay: float = 1.0):
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        delay = base_delay
        for attempt in range(attempts):
            try:
                return await func(*args, **kwargs)
            except Exception as exc:
                if not is_retryable(exc) or attempt == attempts - 1:
                    raise
                logger.info("Retrying %s after %s (attempt %s)", getattr(func, "__name__", func), exc, attempt + 1)
                if delay:
                    await asyncio.sleep(delay + random.random() * delay)
                delay *= 2
    return wrapper
