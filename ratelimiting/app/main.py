from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ratelimiting.app.api.admin import router as admin_router
from ratelimiting.app.core.config import settings
from ratelimiting.app.core.logging import get_logger, setup_logging
from ratelimiting.app.exceptions import RateLimitingException
from ratelimiting.app.middleware.rate_limit import (
    InMemoryRateLimitStore,
    RateLimitConfig,
    RateLimitMiddleware,
    RateLimitStore,
    create_store,
    global_rate_limit,
)


def build_global_config() -> RateLimitConfig:
    """Global per-IP ceiling from settings."""
    return RateLimitConfig(
        strategy=settings.global_rate_limit_strategy,
        quota=settings.global_rate_limit_quota,
        window_ms=settings.global_rate_limit_window_ms,
        namespace="global_per_ip",
    )


def create_app(store: Optional[RateLimitStore] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        store: Store shared by every limiter in the app. Built from settings
            when omitted.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    # Middleware is built before startup, so the store must exist already.
    if store is None:
        store = create_store()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the in-memory sweep on startup and release the store on shutdown."""
        if isinstance(store, InMemoryRateLimitStore):
            store.start_sweeper(settings.rate_limit_sweep_interval_seconds)

        logger.info(
            "Application startup complete",
            extra={
                "store": settings.rate_limit_store,
                "global_rate_limit": settings.global_rate_limit_enabled,
                "debug_mode": settings.debug,
            },
        )
        yield

        close = getattr(store, "close", None)
        if close is not None:
            await close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Rate Limiting Service",
        description="Request rate limiting with fixed window, sliding window, token bucket and leaky bucket strategies",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.rate_limit_store = store

    if settings.global_rate_limit_enabled:
        app.add_middleware(
            RateLimitMiddleware,
            guards=[
                global_rate_limit(
                    store,
                    config=build_global_config(),
                    skip_paths=settings.rate_limit_skip_paths,
                    store_timeout=settings.rate_limit_store_timeout_seconds,
                )
            ],
        )

    app.include_router(admin_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok"}

    @app.get("/status")
    async def status() -> dict[str, Any]:
        """Service status with the active store and global limit settings."""
        return {
            "status": "ok",
            "store": type(app.state.rate_limit_store).__name__,
            "global_rate_limit": {
                "enabled": settings.global_rate_limit_enabled,
                "strategy": settings.global_rate_limit_strategy,
                "quota": settings.global_rate_limit_quota,
                "window_ms": settings.global_rate_limit_window_ms,
            },
        }

    @app.exception_handler(RateLimitingException)
    async def rate_limiting_error_handler(
        request: Request, exc: RateLimitingException
    ) -> JSONResponse:
        """Render service errors as JSON without stack traces."""
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            f"Rate limiting error: {exc.message}",
            extra={"path": request.url.path, "method": request.method},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": type(exc).__name__, "message": exc.message},
        )

    return app


# Create the application instance
app = create_app()
