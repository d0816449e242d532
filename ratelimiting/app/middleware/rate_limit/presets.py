"""Named rate limit configurations and ready-made layers.

Every factory takes the store explicitly; there is no shared default.
"""

import math
from typing import Optional, Sequence

from starlette.requests import Request
from starlette.responses import JSONResponse

from ratelimiting.app.core.config import DEFAULT_SKIP_PATHS, PREFIX_SKIP_PATHS
from ratelimiting.app.exceptions import PresetNotFoundError
from ratelimiting.app.middleware.rate_limit.identifier import (
    get_client_identifier,
    user_or_client_identifier,
)
from ratelimiting.app.middleware.rate_limit.middleware import (
    RateLimitLayer,
    build_rejection_response,
)
from ratelimiting.app.middleware.rate_limit.models import (
    RateLimitConfig,
    RateLimitResult,
    RateLimitStrategy,
)
from ratelimiting.app.middleware.rate_limit.store import RateLimitStore

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS


def _preset(strategy: RateLimitStrategy, quota: int, window_ms: int, name: str) -> RateLimitConfig:
    return RateLimitConfig(strategy=strategy, quota=quota, window_ms=window_ms, namespace=name)


FIXED = RateLimitStrategy.FIXED_WINDOW
SLIDING = RateLimitStrategy.SLIDING_WINDOW
BUCKET = RateLimitStrategy.TOKEN_BUCKET

PRESETS: dict[str, RateLimitConfig] = {
    # API endpoint limits
    "api_strict": _preset(FIXED, 100, MINUTE_MS, "api_strict"),
    "api_moderate": _preset(SLIDING, 1000, MINUTE_MS, "api_moderate"),
    "api_lenient": _preset(BUCKET, 5000, MINUTE_MS, "api_lenient"),
    # Authentication
    "auth_login": _preset(FIXED, 5, 15 * MINUTE_MS, "auth_login"),
    "auth_signup": _preset(FIXED, 3, HOUR_MS, "auth_signup"),
    "auth_reset": _preset(FIXED, 3, HOUR_MS, "auth_reset"),
    "auth_strict": _preset(FIXED, 5, 15 * MINUTE_MS, "auth_strict"),
    # Admin operations
    "admin_config": _preset(FIXED, 10, MINUTE_MS, "admin_config"),
    "admin_users": _preset(SLIDING, 50, MINUTE_MS, "admin_users"),
    "admin_moderate": _preset(FIXED, 10, MINUTE_MS, "admin_moderate"),
    # Financial operations
    "financial_read": _preset(BUCKET, 200, MINUTE_MS, "financial_read"),
    "financial_write": _preset(FIXED, 20, MINUTE_MS, "financial_write"),
    "financial_read_secure": _preset(SLIDING, 60, MINUTE_MS, "financial_read_secure"),
    # Generic reads and writes
    "write_operations": _preset(FIXED, 30, MINUTE_MS, "write_operations"),
    "read_operations": _preset(SLIDING, 100, MINUTE_MS, "read_operations"),
    "public_search": _preset(BUCKET, 200, MINUTE_MS, "public_search"),
    # Global ceilings
    "global_per_ip": _preset(SLIDING, 10000, MINUTE_MS, "global_per_ip"),
    "global_per_user": _preset(BUCKET, 5000, MINUTE_MS, "global_per_user"),
}


def get_preset(name: str) -> RateLimitConfig:
    try:
        return PRESETS[name]
    except KeyError:
        raise PresetNotFoundError(name) from None


def _custom_rejection(
    error: str,
    message: str,
    default_retry_after: Optional[int] = None,
):
    def build(result: RateLimitResult) -> JSONResponse:
        retry_after = result.retry_after or default_retry_after
        response = JSONResponse(
            status_code=429,
            content={
                "success": False,
                "error": error,
                "message": message,
                "retryAfter": retry_after,
            },
        )
        if retry_after:
            response.headers["Retry-After"] = str(retry_after)
        return response

    return build


def path_matches(
    request: Request, fragments: Sequence[str], prefixes: Sequence[str] = ()
) -> bool:
    """True when the path starts with one of ``prefixes`` or contains a fragment."""
    path = request.url.path
    return any(path.startswith(p) for p in prefixes) or any(f in path for f in fragments)


def skip_health_checks(request: Request) -> bool:
    return path_matches(request, ("/health", "/status"))


def auth_rate_limit(store: RateLimitStore, **options) -> RateLimitLayer:
    """Login attempts per client IP and user agent."""
    return RateLimitLayer(
        get_preset("auth_login"),
        store,
        identifier=lambda request: get_client_identifier(request, include_user_agent=True),
        rejection_builder=_custom_rejection(
            "Authentication rate limit exceeded",
            "Too many login attempts. Please try again later.",
            default_retry_after=900,
        ),
        **options,
    )


def api_strict_rate_limit(store: RateLimitStore, **options) -> RateLimitLayer:
    return RateLimitLayer(
        get_preset("api_strict"), store, skip_condition=skip_health_checks, **options
    )


def api_moderate_rate_limit(store: RateLimitStore, **options) -> RateLimitLayer:
    return RateLimitLayer(get_preset("api_moderate"), store, **options)


def admin_rate_limit(store: RateLimitStore, **options) -> RateLimitLayer:
    return RateLimitLayer(
        get_preset("admin_config"),
        store,
        identifier=user_or_client_identifier,
        rejection_builder=_custom_rejection(
            "Admin operation rate limit exceeded",
            "Too many administrative operations. Please wait before retrying.",
        ),
        **options,
    )


def financial_read_rate_limit(store: RateLimitStore, **options) -> RateLimitLayer:
    return RateLimitLayer(
        get_preset("financial_read"), store, identifier=user_or_client_identifier, **options
    )


def financial_write_rate_limit(store: RateLimitStore, **options) -> RateLimitLayer:
    return RateLimitLayer(
        get_preset("financial_write"),
        store,
        identifier=user_or_client_identifier,
        rejection_builder=_custom_rejection(
            "Financial operation rate limit exceeded",
            "Too many financial operations. Please wait before making changes.",
        ),
        **options,
    )


def global_rate_limit(
    store: RateLimitStore,
    config: Optional[RateLimitConfig] = None,
    skip_paths: Optional[Sequence[str]] = None,
    **options,
) -> RateLimitLayer:
    """Per-IP ceiling for all traffic except static assets and health checks."""
    paths = DEFAULT_SKIP_PATHS if skip_paths is None else skip_paths
    prefixes = tuple(p for p in paths if p in PREFIX_SKIP_PATHS)
    fragments = tuple(p for p in paths if p not in PREFIX_SKIP_PATHS)
    return RateLimitLayer(
        config or get_preset("global_per_ip"),
        store,
        identifier=lambda request: get_client_identifier(request, include_user_agent=False),
        skip_condition=lambda request: path_matches(request, fragments, prefixes),
        **options,
    )


def burst_protection(
    store: RateLimitStore,
    burst_limit: int,
    burst_window_ms: int,
    identifier: Optional[str] = None,
    **options,
) -> RateLimitLayer:
    """Short sliding window for sudden spikes, stacked in front of slower limits."""
    config = RateLimitConfig(
        strategy=SLIDING,
        quota=burst_limit,
        window_ms=burst_window_ms,
        namespace="burst_protection",
    )
    return RateLimitLayer(
        config,
        store,
        identifier=identifier,
        rejection_builder=_custom_rejection(
            "Burst limit exceeded",
            "Too many requests in a short time. Please slow down.",
            default_retry_after=math.ceil(burst_window_ms / 1000),
        ),
        **options,
    )


def ip_rate_limit(
    store: RateLimitStore,
    whitelist: Sequence[str] = (),
    config: Optional[RateLimitConfig] = None,
    **options,
) -> RateLimitLayer:
    """Per-IP limit; whitelisted addresses are never counted."""
    allowed_ips = frozenset(whitelist)

    def client_ip(request: Request) -> str:
        return get_client_identifier(request, include_user_agent=False)

    def build_rejection(result: RateLimitResult) -> JSONResponse:
        return build_rejection_response(
            result,
            error="IP rate limit exceeded",
            message="Too many requests from this IP address. Please try again later.",
        )

    return RateLimitLayer(
        config or get_preset("global_per_ip"),
        store,
        identifier=client_ip,
        skip_condition=lambda request: client_ip(request) in allowed_ips,
        rejection_builder=build_rejection,
        **options,
    )


def user_rate_limit(
    store: RateLimitStore,
    user_id: str,
    config: Optional[RateLimitConfig] = None,
    **options,
) -> RateLimitLayer:
    return RateLimitLayer(
        config or get_preset("global_per_user"),
        store,
        identifier=f"user:{user_id}",
        rejection_builder=_custom_rejection(
            "User rate limit exceeded",
            "Too many requests. Please wait before making more requests.",
        ),
        **options,
    )
