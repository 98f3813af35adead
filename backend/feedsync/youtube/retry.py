from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from backend.feedsync.youtube.client import YouTubeApiError, YouTubeAuthorizationError

LOGGER = logging.getLogger("feedsync.youtube.retry")

T = TypeVar("T")


async def retry_on_authorization_error(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff_seconds: float,
    description: str,
) -> T:
    """Retry `operation` while it fails with an authorization error, backing off linearly."""
    if attempts < 1:
        raise ValueError(f"attempts must be positive, got {attempts}")
    attempt = 1
    while True:
        try:
            return await operation()
        except YouTubeAuthorizationError:
            if attempt >= attempts:
                raise
            LOGGER.info(
                "authorization rejected; retrying operation=%s attempt=%d/%d",
                description,
                attempt,
                attempts,
            )
            await asyncio.sleep(backoff_seconds * attempt)
            attempt += 1


async def with_authorization_fallback(
    unauthorized: Callable[[], Awaitable[T]],
    authorized: Callable[[], Awaitable[T]],
    *,
    description: str,
) -> T:
    """Try the public request first; only a failure there justifies using credentials."""
    try:
        return await unauthorized()
    except YouTubeApiError as exc:
        LOGGER.info(
            "unauthorized request failed; retrying authorized operation=%s error=%s",
            description,
            exc,
        )
    return await authorized()
