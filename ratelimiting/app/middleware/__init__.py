"""Middleware package for the rate limiting service."""

from ratelimiting.app.middleware.rate_limit import RateLimitMiddleware, with_rate_limit

__all__ = [
    "RateLimitMiddleware",
    "with_rate_limit",
]
