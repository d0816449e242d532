"""Rate limiting data models.

This module contains the configuration, per-key state and decision
dataclasses shared by the stores, the limiter and the middleware.
All timestamps are epoch milliseconds.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from ratelimiting.app.exceptions import RateLimitConfigError


class RateLimitStrategy(str, Enum):
    """Rate limiting algorithms.

    Attributes:
        FIXED_WINDOW: Counter per boundary-aligned window. Allows up to
            twice the quota across a window boundary.
        SLIDING_WINDOW: Timestamp log over the trailing window.
        TOKEN_BUCKET: Burst up to capacity, steady refill afterwards.
        LEAKY_BUCKET: Queue level draining at a constant rate.
    """

    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"
    LEAKY_BUCKET = "leaky_bucket"


@dataclass(frozen=True)
class RateLimitConfig:
    """Configuration for one rate limited call site.

    Attributes:
        strategy: Algorithm used to decide.
        quota: Maximum operations per window.
        window_ms: Window length in milliseconds.
        namespace: Key space so call sites sharing identifiers do not collide.

    Raises:
        RateLimitConfigError: On a non-positive quota or window, an empty
            namespace or an unknown strategy.
    """

    strategy: RateLimitStrategy
    quota: int
    window_ms: int
    namespace: str

    def __post_init__(self) -> None:
        try:
            strategy = RateLimitStrategy(self.strategy)
        except ValueError:
            raise RateLimitConfigError(
                f"Unknown rate limiting strategy: {self.strategy!r}"
            ) from None
        object.__setattr__(self, "strategy", strategy)

        if isinstance(self.quota, bool) or not isinstance(self.quota, int) or self.quota <= 0:
            raise RateLimitConfigError(f"quota must be a positive integer, got {self.quota!r}")
        if (
            isinstance(self.window_ms, bool)
            or not isinstance(self.window_ms, int)
            or self.window_ms <= 0
        ):
            raise RateLimitConfigError(
                f"window_ms must be a positive integer, got {self.window_ms!r}"
            )
        if not isinstance(self.namespace, str) or not self.namespace.strip():
            raise RateLimitConfigError("namespace must be a non-empty string")

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000

    @property
    def rate_per_ms(self) -> float:
        """Refill (token bucket) or leak (leaky bucket) rate in units per ms."""
        return self.quota / self.window_ms

    @property
    def unit_interval_ms(self) -> float:
        """Milliseconds for exactly one token to refill or one unit to leak."""
        return self.window_ms / self.quota

    def build_key(self, identifier: str) -> str:
        return f"{self.namespace}:{identifier}"


@dataclass
class RateLimitRecord:
    """Per-key state owned by a store.

    ``window_start`` is the aligned window start for fixed window, the last
    observation for sliding window and leaky bucket, and the last refill for
    token bucket. ``tokens`` is only used by token bucket and ``event_log``
    only by sliding window.
    """

    count: int = 0
    window_start: float = 0
    tokens: Optional[float] = None
    event_log: list[float] = field(default_factory=list)

    def copy(self) -> "RateLimitRecord":
        return RateLimitRecord(
            count=self.count,
            window_start=self.window_start,
            tokens=self.tokens,
            event_log=list(self.event_log),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"count": self.count, "window_start": self.window_start}
        if self.tokens is not None:
            data["tokens"] = self.tokens
        if self.event_log:
            data["event_log"] = list(self.event_log)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RateLimitRecord":
        return cls(
            count=int(data.get("count", 0)),
            window_start=data.get("window_start", 0),
            tokens=data.get("tokens"),
            event_log=list(data.get("event_log") or []),
        )


@dataclass
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Configured quota.
        remaining: Quota left, never negative and 0 when rejected.
        reset_at: Epoch ms when the window resets or the next unit frees up.
        retry_after: Seconds to wait before retrying, set only when rejected.
        strategy: Strategy that produced the decision.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: Optional[int] = None
    strategy: Optional[RateLimitStrategy] = None

    @property
    def reset_seconds(self) -> int:
        """``reset_at`` as epoch seconds, rounded up."""
        return math.ceil(self.reset_at / 1000)
