import json
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_SKIP_PATHS = ["/_next/", "/favicon", "/health", "/status"]

# Skip entries matched against the start of the path; the rest match anywhere.
PREFIX_SKIP_PATHS = ("/_next/", "/favicon")


def _parse_path_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but accept comma or whitespace separated values so a
    # hand-written env var does not crash startup.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    parts = [p for p in re.split(r"[,\s]+", raw) if p]
    seen: set[str] = set()
    result: list[str] = []
    for part in parts:
        if part in seen:
            continue
        seen.add(part)
        result.append(part)
    return result


class Settings(BaseSettings):
    """Service settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Store settings
    rate_limit_store: str = "memory"  # memory | redis
    redis_url: str = "redis://localhost:6379/0"
    rate_limit_sweep_interval_seconds: float = 300.0  # In-memory expiry sweep
    rate_limit_store_timeout_seconds: float = 1.0  # Store calls slower than this fail open

    # Client identification
    rate_limit_trust_forwarded_for: bool = True
    rate_limit_include_user_agent: bool = True

    # Global per-IP ceiling applied to every request
    global_rate_limit_enabled: bool = True
    global_rate_limit_quota: int = 10000
    global_rate_limit_window_ms: int = 60_000
    global_rate_limit_strategy: str = "sliding_window"

    # Paths that bypass the global ceiling (see PREFIX_SKIP_PATHS).
    # NoDecode keeps a plain "/health,/status" value from failing JSON parsing.
    rate_limit_skip_paths: Annotated[list[str], NoDecode] = DEFAULT_SKIP_PATHS

    # Admin API token (admin endpoints are disabled when empty)
    admin_token: str = ""

    @field_validator("rate_limit_skip_paths", mode="before")
    @classmethod
    def decode_skip_paths(cls, v: Any) -> list[str]:
        return _parse_path_list(v)

    @field_validator("rate_limit_store")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        """Validate the store backend name."""
        v = v.strip().lower()
        if v not in ("memory", "redis"):
            raise ValueError("rate_limit_store must be 'memory' or 'redis'")
        return v

    @field_validator("global_rate_limit_strategy")
    @classmethod
    def validate_strategy(cls, v: str) -> str:
        """Validate the global strategy name."""
        v = v.strip().lower()
        allowed = ("fixed_window", "sliding_window", "token_bucket", "leaky_bucket")
        if v not in allowed:
            raise ValueError(f"global_rate_limit_strategy must be one of {allowed}")
        return v

    @field_validator("global_rate_limit_quota", "global_rate_limit_window_ms")
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator(
        "rate_limit_sweep_interval_seconds",
        "rate_limit_store_timeout_seconds",
    )
    @classmethod
    def validate_interval_positive(cls, v: float) -> float:
        """Validate interval and timeout values are positive."""
        if v <= 0:
            raise ValueError("Interval and timeout values must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
