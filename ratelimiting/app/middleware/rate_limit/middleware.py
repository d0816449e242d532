"""HTTP integration for rate limiters.

A ``RateLimitLayer`` pairs one limiter with its per-call-site options
(identifier override, skip predicate, rejection builder). Layers compose
into a ``RateLimitChain``; the first layer that rejects ends evaluation,
and a request is admitted only when every layer admits it.

Handlers are wrapped by plain function composition::

    login = with_rate_limit(login, burst_layer, auth_layer)

Per request, a layer moves through::

    PENDING -> SKIPPED
    PENDING -> CHECKED -> ALLOWED -> HANDLER_INVOKED -> RESPONSE_DECORATED
    PENDING -> CHECKED -> REJECTED -> RESPONSE_SHORT_CIRCUITED

The terminal state is recorded on ``request.state``.
"""

import functools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, Union

from fastapi.encoders import jsonable_encoder
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ratelimiting.app.core.config import settings
from ratelimiting.app.core.logging import get_logger
from ratelimiting.app.middleware.rate_limit.identifier import (
    UNKNOWN_IDENTIFIER,
    get_client_identifier,
)
from ratelimiting.app.middleware.rate_limit.limiter import RateLimiter
from ratelimiting.app.middleware.rate_limit.models import RateLimitConfig, RateLimitResult
from ratelimiting.app.middleware.rate_limit.store import Clock, RateLimitStore

logger = get_logger(__name__)

Handler = Callable[..., Awaitable[Any]]
IdentifierFunc = Callable[[Request], str]
SkipCondition = Callable[[Request], bool]
RejectionBuilder = Callable[[RateLimitResult], Response]


class RateLimitState(str, Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    CHECKED = "checked"
    ALLOWED = "allowed"
    REJECTED = "rejected"
    HANDLER_INVOKED = "handler_invoked"
    RESPONSE_DECORATED = "response_decorated"
    RESPONSE_SHORT_CIRCUITED = "response_short_circuited"


@dataclass
class RateLimitDecision:
    """Outcome of evaluating a layer or chain for one request.

    ``result`` is None only when every layer skipped. ``response`` is set
    only when rejected.
    """

    state: RateLimitState
    result: Optional[RateLimitResult] = None
    response: Optional[Response] = None

    @property
    def rejected(self) -> bool:
        return self.state is RateLimitState.REJECTED


class RateLimitGuard(Protocol):
    async def evaluate(self, request: Request) -> RateLimitDecision:
        ...


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_seconds),
    }
    if result.retry_after is not None:
        headers["Retry-After"] = str(result.retry_after)
    return headers


def add_rate_limit_headers(response: Response, result: RateLimitResult) -> Response:
    """Attach quota headers from ``result`` to an admitted response."""
    response.headers["X-RateLimit-Limit"] = str(result.limit)
    response.headers["X-RateLimit-Remaining"] = str(result.remaining)
    response.headers["X-RateLimit-Reset"] = str(result.reset_seconds)
    return response


def build_rejection_response(
    result: RateLimitResult,
    message: Optional[str] = None,
    error: str = "Rate limit exceeded",
) -> JSONResponse:
    """Default 429 response for a rejected request."""
    strategy = result.strategy.value if result.strategy else "rate limit"
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "error": error,
            "message": message
            or f"Too many requests. Limit: {result.limit} per {strategy} window.",
            "rateLimitInfo": {
                "limit": result.limit,
                "remaining": result.remaining,
                "reset": result.reset_seconds,
                "retryAfter": result.retry_after,
            },
        },
        headers=rate_limit_headers(result),
    )


class RateLimitLayer:
    """One limiter plus the options of the call site using it.

    Args:
        config: Limiter configuration.
        store: Shared store instance.
        identifier: Fixed identifier, or a function deriving it from the
            request. Defaults to client IP plus user agent hash.
        skip_condition: Predicate; when true the request bypasses this layer.
        rejection_builder: Builds the response for a rejected request.
        include_user_agent: Used by the default identifier only. Defaults to
            ``settings.rate_limit_include_user_agent``, read per request.
        clock: Millisecond clock passed to the limiter.
        store_timeout: Seconds before a store call is abandoned (fail open).
    """

    def __init__(
        self,
        config: RateLimitConfig,
        store: RateLimitStore,
        *,
        identifier: Union[str, IdentifierFunc, None] = None,
        skip_condition: Optional[SkipCondition] = None,
        rejection_builder: Optional[RejectionBuilder] = None,
        include_user_agent: Optional[bool] = None,
        clock: Optional[Clock] = None,
        store_timeout: Optional[float] = None,
    ):
        self.limiter = RateLimiter(config, store, clock=clock, store_timeout=store_timeout)
        self.identifier = identifier
        self.skip_condition = skip_condition
        self.rejection_builder = rejection_builder or build_rejection_response
        self.include_user_agent = include_user_agent

    @property
    def config(self) -> RateLimitConfig:
        return self.limiter.config

    def identify(self, request: Request) -> str:
        if isinstance(self.identifier, str):
            return self.identifier or UNKNOWN_IDENTIFIER
        try:
            if self.identifier is not None:
                return self.identifier(request) or UNKNOWN_IDENTIFIER
            include_user_agent = self.include_user_agent
            if include_user_agent is None:
                include_user_agent = settings.rate_limit_include_user_agent
            return get_client_identifier(request, include_user_agent=include_user_agent)
        except Exception:
            logger.warning(
                "Rate limit identifier derivation failed, using shared 'unknown' bucket",
                extra={"namespace": self.config.namespace},
                exc_info=True,
            )
            return UNKNOWN_IDENTIFIER

    async def evaluate(self, request: Request) -> RateLimitDecision:
        if self.skip_condition is not None and self.skip_condition(request):
            return RateLimitDecision(state=RateLimitState.SKIPPED)

        result = await self.limiter.check_limit(self.identify(request))
        if result.allowed:
            return RateLimitDecision(state=RateLimitState.ALLOWED, result=result)
        return RateLimitDecision(
            state=RateLimitState.REJECTED,
            result=result,
            response=self.rejection_builder(result),
        )


class RateLimitChain:
    """Ordered composition of layers (or nested chains).

    Evaluation stops at the first rejection, so later layers never count a
    request an earlier layer rejected. An admitted decision carries the
    result with the fewest remaining requests.
    """

    def __init__(self, *guards: RateLimitGuard):
        if not guards:
            raise ValueError("RateLimitChain needs at least one layer")
        self.guards = guards

    async def evaluate(self, request: Request) -> RateLimitDecision:
        tightest: Optional[RateLimitResult] = None
        for guard in self.guards:
            decision = await guard.evaluate(request)
            if decision.rejected:
                return decision
            if decision.result is not None and (
                tightest is None or decision.result.remaining < tightest.remaining
            ):
                tightest = decision.result

        if tightest is None:
            return RateLimitDecision(state=RateLimitState.SKIPPED)
        return RateLimitDecision(state=RateLimitState.ALLOWED, result=tightest)


def compose_limits(*guards: RateLimitGuard) -> RateLimitChain:
    return RateLimitChain(*guards)


def _find_request(args: tuple, kwargs: dict) -> Request:
    for value in (*args, *kwargs.values()):
        if isinstance(value, Request):
            return value
    raise TypeError("Rate limited handler must receive a Request argument")


def _as_response(value: Any) -> Response:
    if isinstance(value, Response):
        return value
    return JSONResponse(content=jsonable_encoder(value))


def with_rate_limit(
    handler: Handler,
    *guards: RateLimitGuard,
    state_attr: str = "rate_limit_state",
) -> Handler:
    """Wrap ``handler`` so every call passes ``guards`` first.

    A rejected request returns the rejection response and never reaches the
    handler. An admitted request gets ``X-RateLimit-*`` headers on the
    handler's response; non-Response return values are rendered as JSON.
    """
    guard = guards[0] if len(guards) == 1 else compose_limits(*guards)

    @functools.wraps(handler)
    async def wrapped(*args: Any, **kwargs: Any) -> Response:
        request = _find_request(args, kwargs)
        setattr(request.state, state_attr, RateLimitState.PENDING)

        decision = await guard.evaluate(request)
        if decision.state is RateLimitState.SKIPPED:
            setattr(request.state, state_attr, RateLimitState.SKIPPED)
            return await handler(*args, **kwargs)

        if decision.rejected:
            setattr(request.state, state_attr, RateLimitState.RESPONSE_SHORT_CIRCUITED)
            return decision.response

        setattr(request.state, state_attr, RateLimitState.HANDLER_INVOKED)
        response = _as_response(await handler(*args, **kwargs))
        add_rate_limit_headers(response, decision.result)
        setattr(request.state, state_attr, RateLimitState.RESPONSE_DECORATED)
        return response

    return wrapped


def rate_limit(
    config: RateLimitConfig,
    store: RateLimitStore,
    **options: Any,
) -> Callable[[Handler], Handler]:
    """Return a ``handler -> handler`` function limiting with ``config``.

    Keyword options are those of ``RateLimitLayer``.
    """
    layer = RateLimitLayer(config, store, **options)

    def wrap(handler: Handler) -> Handler:
        return with_rate_limit(handler, layer)

    return wrap


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware applying a layer chain to every request.

    Route-level limits run inside this middleware; when a route already set
    quota headers they are kept, since they describe the narrower limit.

    Usage:
        app.add_middleware(RateLimitMiddleware, guards=[global_rate_limit(store)])
    """

    def __init__(self, app, guards: Sequence[RateLimitGuard]):
        super().__init__(app)
        self.guard = compose_limits(*guards)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        request.state.global_rate_limit_state = RateLimitState.PENDING
        decision = await self.guard.evaluate(request)

        if decision.rejected:
            request.state.global_rate_limit_state = RateLimitState.RESPONSE_SHORT_CIRCUITED
            return decision.response

        if decision.state is RateLimitState.SKIPPED:
            request.state.global_rate_limit_state = RateLimitState.SKIPPED
            return await call_next(request)

        request.state.global_rate_limit_state = RateLimitState.HANDLER_INVOKED
        response = await call_next(request)
        if "X-RateLimit-Remaining" not in response.headers:
            add_rate_limit_headers(response, decision.result)
        request.state.global_rate_limit_state = RateLimitState.RESPONSE_DECORATED
        return response
