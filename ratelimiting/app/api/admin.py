"""Operator endpoints for inspecting presets and resetting caller quotas."""

import hmac

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from ratelimiting.app.core.config import settings
from ratelimiting.app.core.logging import get_log_context, get_logger
from ratelimiting.app.middleware.rate_limit.limiter import RateLimiter
from ratelimiting.app.middleware.rate_limit.presets import PRESETS, get_preset

logger = get_logger(__name__)
router = APIRouter(prefix="/admin/rate-limits", tags=["admin"])


class PresetInfo(BaseModel):
    name: str
    strategy: str
    quota: int
    window_ms: int


class ResetResponse(BaseModel):
    preset: str
    identifier: str
    reset: bool = True


def get_bearer_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip()


def require_admin(request: Request) -> str:
    """Validate the admin bearer token.

    Raises:
        HTTPException: 503 when no admin token is configured, 401 when the
            token is missing or wrong.
    """
    expected_token = settings.admin_token.strip()
    if not expected_token:
        raise HTTPException(status_code=503, detail="Admin API is disabled")

    token = get_bearer_token(request) or ""
    if not hmac.compare_digest(token, expected_token):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")
    return "admin"


@router.get("", response_model=list[PresetInfo])
async def list_presets(admin=Depends(require_admin)) -> list[PresetInfo]:
    """List every named preset with its strategy, quota and window."""
    return [
        PresetInfo(
            name=name,
            strategy=config.strategy.value,
            quota=config.quota,
            window_ms=config.window_ms,
        )
        for name, config in PRESETS.items()
    ]


@router.delete("/{preset}/{identifier}", response_model=ResetResponse)
async def reset_rate_limit(
    preset: str,
    identifier: str,
    request: Request,
    admin=Depends(require_admin),
) -> ResetResponse:
    """Forget the stored state for ``identifier`` under ``preset``.

    Raises:
        PresetNotFoundError: Unknown preset name (rendered as 404).
    """
    config = get_preset(preset)
    limiter = RateLimiter(config, request.app.state.rate_limit_store)
    await limiter.reset(identifier)

    logger.info(
        "Rate limit reset by admin",
        extra=get_log_context(namespace=config.namespace, identifier=identifier),
    )
    return ResetResponse(preset=preset, identifier=identifier)
