"""Request-level rate limiting engine and HTTP middleware."""
