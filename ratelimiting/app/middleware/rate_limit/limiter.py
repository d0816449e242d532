"""Rate limiting algorithms.

``RateLimiter`` binds one ``RateLimitConfig`` to one store and decides,
per caller identifier, whether a request may proceed. The four strategies
share the same record shape and differ only in how they read it:

* fixed window: counter per boundary-aligned window
* sliding window: log of admitted timestamps over the trailing window
* token bucket: ``quota`` capacity refilled at ``quota / window`` per ms
* leaky bucket: level draining at ``quota / window`` per ms

Fixed window bounds admissions per aligned window only; a caller can get
up to ``2 * quota`` through across a boundary. Sliding window bounds every
trailing window. Both buckets admit at most ``quota`` plus whatever refilled
(or leaked) during the interval.

Store failures never reach the caller: the limiter logs a warning and
allows the request.
"""

import asyncio
import contextlib
import math
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional

from ratelimiting.app.core.logging import get_log_context, get_logger
from ratelimiting.app.exceptions import RateLimitConfigError
from ratelimiting.app.middleware.rate_limit.identifier import UNKNOWN_IDENTIFIER
from ratelimiting.app.middleware.rate_limit.models import (
    RateLimitConfig,
    RateLimitRecord,
    RateLimitResult,
    RateLimitStrategy,
)
from ratelimiting.app.middleware.rate_limit.store import Clock, RateLimitStore, system_clock

logger = get_logger(__name__)


@dataclass
class _KeyLock:
    lock: asyncio.Lock
    users: int = 0


class RateLimiter:
    """Rate limiter for a single configuration.

    Example:
        >>> store = InMemoryRateLimitStore()
        >>> limiter = RateLimiter(get_preset("auth_login"), store)
        >>> result = await limiter.check_limit("203.0.113.7")
        >>> result.allowed, result.remaining
        (True, 4)
    """

    def __init__(
        self,
        config: RateLimitConfig,
        store: RateLimitStore,
        *,
        clock: Optional[Clock] = None,
        store_timeout: Optional[float] = None,
    ):
        """Initialize the limiter.

        Args:
            config: Strategy, quota, window and namespace.
            store: Where per-key state lives. Limiters sharing a store and
                namespace share quotas.
            clock: Millisecond clock, defaults to wall-clock time.
            store_timeout: Seconds a check may spend on the store before it
                is abandoned and the request allowed. None disables it.

        Raises:
            RateLimitConfigError: If ``config`` is not a RateLimitConfig or
                ``store_timeout`` is not positive.
        """
        if not isinstance(config, RateLimitConfig):
            raise RateLimitConfigError(
                f"config must be a RateLimitConfig, got {type(config).__name__}"
            )
        if store_timeout is not None and store_timeout <= 0:
            raise RateLimitConfigError("store_timeout must be positive")

        self.config = config
        self.store = store
        self._clock = clock or system_clock
        self._store_timeout = store_timeout
        self._key_locks: dict[str, _KeyLock] = {}
        self._strategies: dict[
            RateLimitStrategy, Callable[[str, float], Awaitable[RateLimitResult]]
        ] = {
            RateLimitStrategy.FIXED_WINDOW: self._fixed_window,
            RateLimitStrategy.SLIDING_WINDOW: self._sliding_window,
            RateLimitStrategy.TOKEN_BUCKET: self._token_bucket,
            RateLimitStrategy.LEAKY_BUCKET: self._leaky_bucket,
        }

    def build_key(self, identifier: str) -> str:
        return self.config.build_key(identifier or UNKNOWN_IDENTIFIER)

    async def check_limit(self, identifier: str) -> RateLimitResult:
        """Record one request for ``identifier`` and decide on it.

        Returns:
            The decision. On store failure or timeout an allowing result is
            returned and a warning logged.
        """
        key = self.build_key(identifier)
        context = get_log_context(
            namespace=self.config.namespace,
            identifier=identifier or UNKNOWN_IDENTIFIER,
            strategy=self.config.strategy.value,
        )

        try:
            if self._store_timeout is not None:
                result = await asyncio.wait_for(
                    self._locked_check(key), timeout=self._store_timeout
                )
            else:
                result = await self._locked_check(key)
        except Exception as e:
            logger.warning(
                f"Rate limit store failure, allowing request: {type(e).__name__}: {e}",
                extra=context,
                exc_info=True,
            )
            return self._fail_open()

        if result.allowed:
            logger.debug(
                f"Rate limit: allowed, {result.remaining}/{result.limit} remaining",
                extra=context,
            )
        else:
            logger.info(
                "Rate limit exceeded",
                extra={**context, "retry_after": result.retry_after},
            )
        return result

    async def reset(self, identifier: str) -> None:
        """Forget all state for ``identifier`` in this namespace."""
        key = self.build_key(identifier)
        async with self._key_lock(key):
            await self.store.delete(key)

    @contextlib.asynccontextmanager
    async def _key_lock(self, key: str) -> AsyncIterator[None]:
        # One lock per key, dropped once nobody holds or waits for it.
        entry = self._key_locks.get(key)
        if entry is None:
            entry = self._key_locks[key] = _KeyLock(lock=asyncio.Lock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._key_locks.pop(key, None)

    async def _locked_check(self, key: str) -> RateLimitResult:
        async with self._key_lock(key):
            now = self._clock()
            return await self._strategies[self.config.strategy](key, now)

    def _allow(self, remaining: float, reset_at: float) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            limit=self.config.quota,
            remaining=max(0, int(remaining)),
            reset_at=math.ceil(reset_at),
            strategy=self.config.strategy,
        )

    def _reject(self, reset_at: float, retry_after_ms: float) -> RateLimitResult:
        return RateLimitResult(
            allowed=False,
            limit=self.config.quota,
            remaining=0,
            reset_at=math.ceil(reset_at),
            retry_after=max(1, math.ceil(retry_after_ms / 1000)),
            strategy=self.config.strategy,
        )

    def _fail_open(self) -> RateLimitResult:
        return self._allow(self.config.quota, self._clock() + self.config.window_ms)

    def _units_since(self, since: float, now: float) -> int:
        """Whole tokens refilled (or units leaked) between ``since`` and ``now``."""
        elapsed = max(0.0, now - since)
        return math.floor(elapsed * self.config.quota / self.config.window_ms)

    async def _fixed_window(self, key: str, now: float) -> RateLimitResult:
        cfg = self.config
        window_start = int(now // cfg.window_ms) * cfg.window_ms
        reset_at = window_start + cfg.window_ms

        record = await self.store.get(key)
        if record is None or record.window_start != window_start:
            await self.store.set(
                key, RateLimitRecord(count=1, window_start=window_start), cfg.window_ms
            )
            return self._allow(cfg.quota - 1, reset_at)

        if record.count >= cfg.quota:
            return self._reject(reset_at, reset_at - now)

        # Another process may have counted since the read.
        count = await self.store.increment(key, cfg.window_ms)
        if count > cfg.quota:
            return self._reject(reset_at, reset_at - now)
        return self._allow(cfg.quota - count, reset_at)

    async def _sliding_window(self, key: str, now: float) -> RateLimitResult:
        cfg = self.config
        cutoff = now - cfg.window_ms

        record = await self.store.get(key)
        events = [t for t in (record.event_log if record else []) if t > cutoff]
        events.append(now)
        allowed = len(events) <= cfg.quota
        if not allowed:
            # Rejected requests do not occupy a slot.
            events.pop()

        await self.store.set(
            key,
            RateLimitRecord(count=len(events), window_start=now, event_log=events),
            cfg.window_ms,
        )

        # The oldest retained event is the next one to age out.
        reset_at = events[0] + cfg.window_ms
        if allowed:
            return self._allow(cfg.quota - len(events), reset_at)
        return self._reject(reset_at, reset_at - now)

    async def _token_bucket(self, key: str, now: float) -> RateLimitResult:
        cfg = self.config
        interval = cfg.unit_interval_ms
        ttl = cfg.window_ms * 2

        record = await self.store.get(key)
        if record is None:
            tokens = cfg.quota - 1
            await self.store.set(
                key,
                RateLimitRecord(count=1, window_start=now, tokens=tokens),
                ttl,
            )
            return self._allow(tokens, now + interval)

        last_refill = record.window_start
        refilled = self._units_since(last_refill, now)
        stored = record.tokens or 0
        current = min(cfg.quota, stored + refilled)

        if current >= cfg.quota:
            last_refill = now
        else:
            # Keep the partial progress towards the next token.
            last_refill += refilled * interval

        if current <= 0:
            return self._reject(last_refill + interval, interval)

        tokens = current - 1
        await self.store.set(
            key,
            RateLimitRecord(count=record.count + 1, window_start=last_refill, tokens=tokens),
            ttl,
        )
        return self._allow(tokens, last_refill + interval)

    async def _leaky_bucket(self, key: str, now: float) -> RateLimitResult:
        cfg = self.config
        interval = cfg.unit_interval_ms

        record = await self.store.get(key)
        if record is None:
            level, last_leak = 0, now
        else:
            leaked = self._units_since(record.window_start, now)
            level = max(0, record.count - leaked)
            last_leak = now if level == 0 else record.window_start + leaked * interval

        if level >= cfg.quota:
            return self._reject(last_leak + interval, interval)

        level += 1
        await self.store.set(
            key,
            RateLimitRecord(count=level, window_start=last_leak),
            cfg.window_ms * 2,
        )
        # Reset is when the bucket has fully drained.
        return self._allow(cfg.quota - level, last_leak + level * interval)


def create_rate_limiter(
    config: RateLimitConfig,
    store: RateLimitStore,
    **kwargs,
) -> RateLimiter:
    return RateLimiter(config, store, **kwargs)
