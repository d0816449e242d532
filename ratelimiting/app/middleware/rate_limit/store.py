"""Key-value stores holding per-key rate limit state.

Every store implements the same four single-key coroutines, so the
algorithms in ``limiter.py`` never depend on where state lives. TTLs are
relative milliseconds and are re-armed on every write. A read never
returns an expired record, whether or not a sweep has run.
"""

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, runtime_checkable

from ratelimiting.app.core.logging import get_logger
from ratelimiting.app.middleware.rate_limit.models import RateLimitRecord

logger = get_logger(__name__)

Clock = Callable[[], float]


def system_clock() -> float:
    """Current wall-clock time in epoch milliseconds."""
    return time.time() * 1000


@runtime_checkable
class RateLimitStore(Protocol):
    """Contract every rate limit store honors.

    ``get`` returns ``None`` for absent or expired keys, never a zeroed
    record. ``increment`` creates the record with ``count=1`` when absent
    and must be atomic for a single key.
    """

    async def get(self, key: str) -> Optional[RateLimitRecord]:
        ...

    async def set(self, key: str, record: RateLimitRecord, ttl_ms: float) -> None:
        ...

    async def increment(self, key: str, ttl_ms: float) -> int:
        ...

    async def delete(self, key: str) -> None:
        ...


@dataclass
class _StoreEntry:
    """Internal entry with TTL tracking."""

    record: RateLimitRecord
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class InMemoryRateLimitStore:
    """In-process store with read-time expiry and an optional background sweep.

    State is lost on restart and is not shared between processes. No
    operation awaits while touching the dict, so each call is atomic
    within the event loop.
    """

    SWEEP_BATCH_SIZE = 500

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or system_clock
        self._entries: dict[str, _StoreEntry] = {}
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def size(self) -> int:
        """Number of entries held, including expired ones not yet swept."""
        return len(self._entries)

    def _live_entry(self, key: str, now: float) -> Optional[_StoreEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(now):
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[RateLimitRecord]:
        entry = self._live_entry(key, self._clock())
        if entry is None:
            return None
        return entry.record.copy()

    async def set(self, key: str, record: RateLimitRecord, ttl_ms: float) -> None:
        if ttl_ms <= 0:
            raise ValueError(f"ttl_ms must be positive, got {ttl_ms}")
        self._entries[key] = _StoreEntry(
            record=record.copy(), expires_at=self._clock() + ttl_ms
        )

    async def increment(self, key: str, ttl_ms: float) -> int:
        if ttl_ms <= 0:
            raise ValueError(f"ttl_ms must be positive, got {ttl_ms}")
        now = self._clock()
        entry = self._live_entry(key, now)
        if entry is None:
            record = RateLimitRecord(count=1, window_start=now)
        else:
            record = entry.record
            record.count += 1
        self._entries[key] = _StoreEntry(record=record, expires_at=now + ttl_ms)
        return record.count

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def cleanup(self) -> int:
        """Remove expired entries one key at a time.

        Yields to the event loop every ``SWEEP_BATCH_SIZE`` keys so a large
        sweep never stalls request handling.

        Returns:
            Number of entries removed.
        """
        removed = 0
        now = self._clock()
        for index, key in enumerate(list(self._entries)):
            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(now):
                del self._entries[key]
                removed += 1
            if index % self.SWEEP_BATCH_SIZE == self.SWEEP_BATCH_SIZE - 1:
                await asyncio.sleep(0)
                now = self._clock()
        if removed:
            logger.debug(f"Rate limit store sweep removed {removed} expired entries")
        return removed

    def start_sweeper(self, interval_seconds: float) -> None:
        """Start the periodic background sweep (no-op if already running)."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_forever(interval_seconds))

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    async def _sweep_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            await self.cleanup()

    async def close(self) -> None:
        await self.stop_sweeper()


def create_store(
    backend: Optional[str] = None,
    redis_url: Optional[str] = None,
    clock: Optional[Clock] = None,
) -> RateLimitStore:
    """Construct the configured store.

    Each call builds a new instance; callers own it and pass it to the
    limiters that should share state.

    Args:
        backend: 'memory' or 'redis'. Defaults to ``settings.rate_limit_store``.
        redis_url: Redis connection URL. Defaults to ``settings.redis_url``.
        clock: Millisecond clock, mainly for tests.
    """
    from ratelimiting.app.core.config import settings

    backend = (backend or settings.rate_limit_store).lower()
    if backend == "redis":
        from ratelimiting.app.middleware.rate_limit.redis_store import RedisRateLimitStore

        logger.info("Using Redis rate limit store")
        return RedisRateLimitStore(redis_url=redis_url or settings.redis_url, clock=clock)
    if backend != "memory":
        raise ValueError(f"Unknown rate limit store backend: {backend}")

    logger.debug("Using in-memory rate limit store")
    return InMemoryRateLimitStore(clock=clock)
