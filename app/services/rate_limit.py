"""Metered call rate limit: fixed window count per account via Redis."""

import time

from redis.exceptions import RedisError

from app.core.exceptions import RateLimitedError
from app.core.logging import get_logger

KEY_PREFIX = "ratelimit:metered"

log = get_logger(__name__)


def _key(account_id: str, window_seconds: int, now: float | None = None) -> str:
    bucket = int((now if now is not None else time.time()) // window_seconds)
    return f"{KEY_PREFIX}:{account_id}:{bucket}"


async def incr_calls_in_window(redis, account_id: str, window_seconds: int) -> int:
    """Increment and return the count for the current window; 0 when Redis is unavailable."""
    key = _key(account_id, window_seconds)
    try:
        n = await redis.incr(key)
        if n == 1:
            await redis.expire(key, window_seconds)
        return n
    except RedisError as exc:
        log.warning("rate_limit_unavailable", error=str(exc))
        return 0


async def enforce(redis, account_id: str, limit: int, window_seconds: int) -> None:
    """Raise RateLimitedError past limit calls per window. No Redis means no limit."""
    if redis is None or limit <= 0:
        return
    n = await incr_calls_in_window(redis, account_id, window_seconds)
    if n > limit:
        raise RateLimitedError(limit, window_seconds)
