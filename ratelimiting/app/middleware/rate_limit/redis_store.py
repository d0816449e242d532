"""Redis-backed rate limit store.

Records are stored as JSON strings with a millisecond TTL (``PX``), so the
same fields and expiry semantics survive a process restart. ``increment``
runs as a Lua script, which makes its read-modify-write atomic on the
server even when several processes share the key.
"""

import json
import math
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ratelimiting.app.exceptions import RateLimitStoreError
from ratelimiting.app.middleware.rate_limit.models import RateLimitRecord
from ratelimiting.app.middleware.rate_limit.store import Clock, system_clock

# KEYS[1] = record key
# ARGV[1] = ttl in ms, ARGV[2] = now in ms (window_start for a new record)
INCREMENT_SCRIPT = """
    local raw = redis.call('GET', KEYS[1])
    local record
    if raw then
        record = cjson.decode(raw)
    else
        record = {window_start = tonumber(ARGV[2])}
    end
    record['count'] = (tonumber(record['count']) or 0) + 1
    redis.call('SET', KEYS[1], cjson.encode(record), 'PX', tonumber(ARGV[1]))
    return record['count']
"""


def _ttl_px(ttl_ms: float) -> int:
    if ttl_ms <= 0:
        raise ValueError(f"ttl_ms must be positive, got {ttl_ms}")
    return max(1, math.ceil(ttl_ms))


class RedisRateLimitStore:
    """Rate limit store over ``redis.asyncio``.

    Example:
        >>> store = RedisRateLimitStore(redis_url="redis://localhost:6379/0")
        >>> limiter = RateLimiter(config, store)
    """

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        clock: Optional[Clock] = None,
        key_prefix: str = "rate_limit:",
    ) -> None:
        if redis_client is None and not redis_url:
            raise ValueError("RedisRateLimitStore needs a redis_client or redis_url")
        self._redis = redis_client
        self._redis_url = redis_url
        self._clock = clock or system_clock
        self._key_prefix = key_prefix

    def _get_client(self) -> Any:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def get(self, key: str) -> Optional[RateLimitRecord]:
        try:
            raw = await self._get_client().get(self._key(key))
        except RedisError as e:
            raise RateLimitStoreError("get", key, str(e)) from e
        if raw is None:
            return None
        try:
            return RateLimitRecord.from_dict(json.loads(raw))
        except (AttributeError, TypeError, ValueError) as e:
            raise RateLimitStoreError("get", key, f"corrupt record: {e}") from e

    async def set(self, key: str, record: RateLimitRecord, ttl_ms: float) -> None:
        payload = json.dumps(record.to_dict())
        try:
            await self._get_client().set(self._key(key), payload, px=_ttl_px(ttl_ms))
        except RedisError as e:
            raise RateLimitStoreError("set", key, str(e)) from e

    async def increment(self, key: str, ttl_ms: float) -> int:
        try:
            count = await self._get_client().eval(
                INCREMENT_SCRIPT,
                1,
                self._key(key),
                _ttl_px(ttl_ms),
                int(self._clock()),
            )
        except RedisError as e:
            raise RateLimitStoreError("increment", key, str(e)) from e
        return int(count)

    async def delete(self, key: str) -> None:
        try:
            await self._get_client().delete(self._key(key))
        except RedisError as e:
            raise RateLimitStoreError("delete", key, str(e)) from e

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
