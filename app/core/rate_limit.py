"""Fixed-window limits on payment initiation, counted in Redis."""

import logging
import time
from typing import Optional

import redis

from app.config import get_settings
from app.core.exceptions import RateLimitError

logger = logging.getLogger(__name__)
settings = get_settings()

_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True, socket_connect_timeout=1)
    return _client


def count_hit(key: str, window_seconds: int, client: Optional[redis.Redis] = None) -> Optional[int]:
    """Count one hit in the current window. None means Redis could not be reached."""
    bucket = f"rl:{key}:{int(time.time()) // window_seconds}"
    client = client or get_redis()
    try:
        pipe = client.pipeline()
        pipe.incr(bucket)
        pipe.expire(bucket, window_seconds)
        count, _ = pipe.execute()
    except redis.RedisError as exc:
        # fail open
        logger.warning("Rate limiter unavailable, allowing request: %s", exc)
        return None
    return int(count)


def enforce_payment_init_limit(user_id: int, client: Optional[redis.Redis] = None) -> None:
    limit = settings.PAYMENT_INIT_RATE_LIMIT
    if limit <= 0:
        return
    count = count_hit(f"payment-init:{user_id}", settings.PAYMENT_INIT_RATE_WINDOW_SECONDS, client)
    if count is not None and count > limit:
        logger.info("User %s hit the payment initiation limit (%s/%ss)", user_id, limit, settings.PAYMENT_INIT_RATE_WINDOW_SECONDS)
        raise RateLimitError("Too many payment attempts. Please wait a moment and try again.")
