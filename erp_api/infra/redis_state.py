from __future__ import annotations

import logging
import os
import time
from functools import lru_cache

from redis import Redis
from redis.exceptions import RedisError

from erp_api.domain.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
AUTH_RATE_LIMIT_PER_MINUTE = int(os.getenv("AUTH_RATE_LIMIT_PER_MINUTE", "20"))
RATE_LIMIT_WINDOW_SECONDS = 60


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except RedisError:
        logger.warning("redis readiness check failed", exc_info=True)
        return False


def enforce_rate_limit(
    bucket: str,
    client_key: str,
    *,
    limit: int | None = None,
    window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
) -> None:
    """Fixed-window counter; raises RateLimitExceeded past ``limit`` hits.

    An unreachable Redis lets the request through.
    """
    max_hits = AUTH_RATE_LIMIT_PER_MINUTE if limit is None else limit
    if max_hits <= 0:
        return
    window = int(time.time()) // window_seconds
    key = f"ratelimit:{bucket}:{client_key}:{window}"
    try:
        client = get_redis()
        hits = int(client.incr(key))
        if hits == 1:
            client.expire(key, window_seconds)
    except RedisError:
        logger.warning("rate limiter unavailable, allowing request", extra={"bucket": bucket})
        return
    if hits > max_hits:
        logger.info("rate limit exceeded", extra={"bucket": bucket, "client": client_key})
        raise RateLimitExceeded("Too many requests")
