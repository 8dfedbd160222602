"""Redis-backed rate limiting for the OAuth endpoints, with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

from fastapi import Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from services.errors import RateLimited


logger = logging.getLogger(__name__)

RATE_LIMIT_KEY_PREFIX = "adinsights:rate"

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _client_identifier(request: Request) -> str:
    # The socket peer wins; x-forwarded-for is client-controlled.
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> bool:
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await redis_client.incr(key)
        if current == 1:
            await redis_client.expire(key, window_seconds)
    finally:
        await redis_client.aclose()
    return current <= limit


def rate_limit(
    prefix: str,
    limit: Optional[int] = None,
    window_seconds: Optional[int] = None,
) -> Callable[[Request], Awaitable[None]]:
    """Return a FastAPI dependency that enforces per-client request quotas."""
    max_requests = limit if limit is not None else settings.OAUTH_RATE_LIMIT_REQUESTS
    window = window_seconds if window_seconds is not None else settings.OAUTH_RATE_LIMIT_WINDOW_SECONDS

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"{RATE_LIMIT_KEY_PREFIX}:{prefix}:{_client_identifier(request)}"
        try:
            allowed = await _consume_redis_quota(key, max_requests, window)
        except (RedisError, OSError) as exc:
            logger.debug("Redis rate limit unavailable, using local counters: %s", exc)
            allowed = await _consume_local_quota(key, max_requests, window)

        if not allowed:
            logger.warning("Rate limit exceeded prefix=%s key=%s", prefix, key)
            raise RateLimited(f"Rate limit exceeded for {prefix}. Try again later.")

    return _dependency
