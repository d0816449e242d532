"""Rate limiting engine.

Four strategies (fixed window, sliding window, token bucket, leaky bucket)
over pluggable stores, plus helpers wiring limiters into request handling.

Usage:
    store = create_store("memory")
    login = with_rate_limit(login, burst_protection(store, 3, 10_000), auth_rate_limit(store))
"""

from ratelimiting.app.middleware.rate_limit.identifier import (
    UNKNOWN_IDENTIFIER,
    derive_identifier,
    get_client_identifier,
    hash_user_agent,
    user_or_client_identifier,
)
from ratelimiting.app.middleware.rate_limit.limiter import RateLimiter, create_rate_limiter
from ratelimiting.app.middleware.rate_limit.middleware import (
    RateLimitChain,
    RateLimitDecision,
    RateLimitLayer,
    RateLimitMiddleware,
    RateLimitState,
    add_rate_limit_headers,
    build_rejection_response,
    compose_limits,
    rate_limit,
    with_rate_limit,
)
from ratelimiting.app.middleware.rate_limit.models import (
    RateLimitConfig,
    RateLimitRecord,
    RateLimitResult,
    RateLimitStrategy,
)
from ratelimiting.app.middleware.rate_limit.presets import (
    PRESETS,
    admin_rate_limit,
    api_moderate_rate_limit,
    api_strict_rate_limit,
    auth_rate_limit,
    burst_protection,
    financial_read_rate_limit,
    financial_write_rate_limit,
    get_preset,
    global_rate_limit,
    ip_rate_limit,
    user_rate_limit,
)
from ratelimiting.app.middleware.rate_limit.store import (
    InMemoryRateLimitStore,
    RateLimitStore,
    create_store,
)

__all__ = [
    # Models
    "RateLimitConfig",
    "RateLimitRecord",
    "RateLimitResult",
    "RateLimitStrategy",
    # Stores
    "RateLimitStore",
    "InMemoryRateLimitStore",
    "create_store",
    # Limiter
    "RateLimiter",
    "create_rate_limiter",
    # Identification
    "UNKNOWN_IDENTIFIER",
    "derive_identifier",
    "get_client_identifier",
    "hash_user_agent",
    "user_or_client_identifier",
    # Request integration
    "RateLimitChain",
    "RateLimitDecision",
    "RateLimitLayer",
    "RateLimitMiddleware",
    "RateLimitState",
    "add_rate_limit_headers",
    "build_rejection_response",
    "compose_limits",
    "rate_limit",
    "with_rate_limit",
    # Presets
    "PRESETS",
    "get_preset",
    "admin_rate_limit",
    "api_moderate_rate_limit",
    "api_strict_rate_limit",
    "auth_rate_limit",
    "burst_protection",
    "financial_read_rate_limit",
    "financial_write_rate_limit",
    "global_rate_limit",
    "ip_rate_limit",
    "user_rate_limit",
]
