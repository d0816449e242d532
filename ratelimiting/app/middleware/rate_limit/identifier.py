"""Caller identification for rate limit keys.

The client address comes from the first valid entry of ``X-Forwarded-For``
(when the proxy chain is trusted), then ``X-Real-IP``, then the socket
peer. Callers with no usable address share the ``"unknown"`` identifier
and therefore one bucket per namespace.
"""

import hashlib
import ipaddress
from typing import Optional

from starlette.requests import Request

UNKNOWN_IDENTIFIER = "unknown"

# 16 hex chars (64 bits) of SHA-256 keeps keys short without exposing the header.
USER_AGENT_HASH_LENGTH = 16

USER_ID_HEADER = "X-User-Id"


def _valid_ip(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    candidate = value.strip()
    # Bracketed IPv6 ("[::1]") and IPv4 with port ("1.2.3.4:80")
    if candidate.startswith("[") and "]" in candidate:
        candidate = candidate[1:candidate.index("]")]
    elif candidate.count(":") == 1:
        candidate = candidate.split(":", 1)[0]
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


def hash_user_agent(user_agent: Optional[str]) -> str:
    """Return a short, fixed-length digest of the user agent."""
    digest = hashlib.sha256((user_agent or UNKNOWN_IDENTIFIER).encode()).hexdigest()
    return digest[:USER_AGENT_HASH_LENGTH]


def derive_identifier(
    remote_addr: Optional[str] = None,
    forwarded_for: Optional[str] = None,
    real_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    include_user_agent: bool = False,
    trust_forwarded: bool = True,
) -> str:
    """Build a stable identifier from connection metadata.

    Args:
        remote_addr: Socket peer address.
        forwarded_for: Raw ``X-Forwarded-For`` header value.
        real_ip: Raw ``X-Real-IP`` header value.
        user_agent: Raw ``User-Agent`` header value.
        include_user_agent: Append a hash of the user agent so clients
            behind one NAT address get separate buckets.
        trust_forwarded: Whether proxy headers may be used at all.

    Returns:
        ``"<ip>"`` or ``"<ip>:<ua-hash>"``; never empty.
    """
    ip = None
    if trust_forwarded:
        if forwarded_for:
            ip = _valid_ip(forwarded_for.split(",")[0])
        if ip is None:
            ip = _valid_ip(real_ip)
    if ip is None:
        ip = _valid_ip(remote_addr)
    if ip is None:
        ip = UNKNOWN_IDENTIFIER

    if not include_user_agent:
        return ip
    return f"{ip}:{hash_user_agent(user_agent)}"


def get_client_identifier(
    request: Request,
    include_user_agent: bool = False,
    trust_forwarded: Optional[bool] = None,
) -> str:
    """Derive the rate limit identifier for a Starlette request."""
    if trust_forwarded is None:
        from ratelimiting.app.core.config import settings

        trust_forwarded = settings.rate_limit_trust_forwarded_for

    return derive_identifier(
        remote_addr=request.client.host if request.client else None,
        forwarded_for=request.headers.get("X-Forwarded-For"),
        real_ip=request.headers.get("X-Real-IP"),
        user_agent=request.headers.get("User-Agent"),
        include_user_agent=include_user_agent,
        trust_forwarded=trust_forwarded,
    )


def user_or_client_identifier(request: Request) -> str:
    """Authenticated user id when the auth layer set one, else the client IP."""
    user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    if user_id:
        return f"user:{user_id}"
    return get_client_identifier(request, include_user_agent=False)
