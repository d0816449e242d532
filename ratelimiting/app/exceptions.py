"""Custom exceptions for the rate limiting service.

A rejected request is not an exception: it is a normal ``RateLimitResult``
with ``allowed=False``. These classes cover programming errors and
infrastructure failures only.
"""


class RateLimitingException(Exception):
    """Base class for rate limiting exceptions with HTTP status code.

    Subclasses define a ``status_code`` so the application exception
    handler can render them consistently.
    """
    status_code: int = 500

    def __init__(self, message: str = "Rate limiting error"):
        self.message = message
        super().__init__(message)


class RateLimitConfigError(RateLimitingException, ValueError):
    """Raised at setup time for an invalid rate limit configuration.

    Never raised while handling a request.
    """
    status_code = 500


class RateLimitStoreError(RateLimitingException):
    """Raised by a store when its backend is unreachable or misbehaves.

    The limiter absorbs this error and fails open.
    """
    status_code = 503

    def __init__(self, operation: str, key: str, detail: str | None = None):
        self.operation = operation
        self.key = key
        message = f"Rate limit store {operation} failed for key {key!r}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class PresetNotFoundError(RateLimitConfigError):
    """Raised when a named preset configuration does not exist."""
    status_code = 404

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown rate limit preset: {name}")
