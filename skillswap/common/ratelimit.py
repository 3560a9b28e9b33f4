"""Redis token bucket shared by the API's mutating routes."""

from time import time

import redis

from skillswap.common.logging import logger


class RateLimitExceeded(Exception):
    pass


class TokenBucket:
    """Per-actor bucket; capacity and refill rate are both `limit_per_minute`."""

    def __init__(self, client: redis.Redis, limit_per_minute: int, prefix: str = "tokenbucket") -> None:
        self.client = client
        self.limit_per_minute = limit_per_minute
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, limit_per_minute: int) -> "TokenBucket":
        return cls(redis.Redis.from_url(url, decode_responses=True), limit_per_minute)

    def consume(self, actor: str) -> None:
        if self.limit_per_minute <= 0:
            return
        key = f"{self.prefix}:{actor}"
        now = time()
        capacity = float(self.limit_per_minute)
        refill_per_sec = capacity / 60.0

        try:
            values = self.client.hmget(key, "tokens", "updated_at")
        except redis.RedisError as exc:
            # Limiter unavailable: serve the request rather than fail every write.
            logger.warning("rate_limit_read_failed actor=%s: %s", actor, exc)
            return
        tokens = float(values[0]) if values[0] is not None else capacity
        updated_at = float(values[1]) if values[1] is not None else now
        tokens = min(capacity, tokens + max(0.0, now - updated_at) * refill_per_sec)

        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        try:
            self.client.hset(key, mapping={"tokens": tokens, "updated_at": now})
            self.client.expire(key, 120)
        except redis.RedisError as exc:
            logger.warning("rate_limit_write_failed actor=%s: %s", actor, exc)
        if not allowed:
            raise RateLimitExceeded(actor)
