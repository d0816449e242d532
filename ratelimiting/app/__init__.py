"""FastAPI application package for the rate limiting service."""
