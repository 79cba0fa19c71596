from collections.abc import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from turnstile.core.models import LimitOptions, LimitStatus, StrategyType

logger = structlog.get_logger(__name__)


def default_key(request: Request) -> str:
    """Authenticated user when an auth layer set one, then API key, then client address."""
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    api_key = request.headers.get("X-API-Key")
    if api_key:
        return f"api:{api_key}"
    client_ip = request.client.host if request.client else "unknown"
    return f"ip:{client_ip}"


def default_handler(request: Request, status: LimitStatus) -> Response:
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "message": f"Too many requests, please try again in {status.retry_after} seconds.",
            "retry_after": status.retry_after,
        },
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    HTTP gate in front of the admission service.

    Every request is charged one unit. Rejected requests are answered by
    `handler` and never reach the route. The service is looked up on
    `app.state.admission_service`, which the lifespan populates; until it
    is there requests pass through untouched.

    Args:
        max_requests: Fixed ceiling, or a callable deriving it from the
            request (see `TierLimits`). Service default when None.
        window_ms: Window length; service default when None.
        strategy: Strategy for this gate; service default when None.
        key_func: Maps a request to its client key.
        key_prefix: Namespace for every client key, joined with ":".
        skip: Requests for which it returns True are not counted.
        handler: Builds the response for a rejected request.
        headers: Emit RateLimit-* headers.
    """

    def __init__(
        self,
        app: ASGIApp,
        max_requests: int | Callable[[Request], int] | None = None,
        window_ms: int | None = None,
        strategy: StrategyType | None = None,
        key_func: Callable[[Request], str] = default_key,
        key_prefix: str = "",
        skip: Callable[[Request], bool] | None = None,
        handler: Callable[[Request, LimitStatus], Response] = default_handler,
        headers: bool = True,
    ) -> None:
        super().__init__(app)
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.strategy = strategy
        self.key_func = key_func
        self.key_prefix = key_prefix
        self.skip = skip
        self.handler = handler
        self.headers = headers

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        service = getattr(request.app.state, "admission_service", None)
        if service is None:
            logger.warning("middleware_uninitialized_skipping")
            return await call_next(request)

        if self.skip is not None and self.skip(request):
            return await call_next(request)

        client_id = self.client_id(request)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            client_id=client_id,
            path=request.url.path,
            method=request.method,
        )

        try:
            options = self.options(request)
            status = await service.increment_limit(client_id, options)
        except Exception:
            logger.exception("rate_limit_check_failed", policy="fail_open")
            return await call_next(request)

        logger.info(
            "rate_limit_check",
            limited=status.limited,
            remaining=status.remaining,
            limit=status.limit,
        )

        if status.limited:
            response = self.handler(request, status)
        else:
            response = await call_next(request)

        if self.headers:
            for key, value in status.as_headers().items():
                response.headers[key] = value

        return response

    def client_id(self, request: Request) -> str:
        key = self.key_func(request)
        return f"{self.key_prefix}:{key}" if self.key_prefix else key

    def options(self, request: Request) -> LimitOptions:
        if callable(self.max_requests):
            max_requests = self.max_requests(request)
        else:
            max_requests = self.max_requests

        return LimitOptions(
            max_requests=max_requests,
            window_ms=self.window_ms,
            strategy=self.strategy,
            user_id=getattr(request.state, "user_id", None),
            ip_address=request.client.host if request.client else None,
        )


class RateLimitStatusMiddleware(RateLimitMiddleware):
    """
    Check-only variant: reports the caller's standing in RateLimit-*
    headers without charging or blocking anything.

    Takes the same key and limit options as RateLimitMiddleware so both
    agree on which record they look at.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        service = getattr(request.app.state, "admission_service", None)
        if service is None or (self.skip is not None and self.skip(request)):
            return await call_next(request)

        try:
            status = await service.check_limit(self.client_id(request), self.options(request))
        except Exception:
            logger.exception("rate_limit_status_failed")
            return await call_next(request)

        response = await call_next(request)
        if self.headers:
            for key, value in status.as_headers().items():
                response.headers[key] = value
        return response
