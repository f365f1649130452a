"""Rate limiting middleware using fixed windows counted in the metric cache.

Two limits apply per client IP:
- /v1/webhooks: webhook_rate_limit_requests per webhook_rate_limit_window_seconds
- every other /v1 route: rate_limit_requests per rate_limit_window_seconds

Health checks, the Prometheus endpoint and the docs are never limited.
"""
import time
from typing import NamedTuple, Optional
import structlog

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from subscription_analytics.api.deps import get_cache
from subscription_analytics.cache import MetricsCacheBackend
from subscription_analytics.config import settings
from subscription_analytics.middleware.logging import current_request_id
from subscription_analytics.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorDetail, ErrorResponse

logger = structlog.get_logger(__name__)

API_PREFIX = "/v1/"
WEBHOOK_PREFIX = "/v1/webhooks/"


class RateLimit(NamedTuple):
    scope: str
    max_requests: int
    window_seconds: int


def limit_for_path(path: str) -> Optional[RateLimit]:
    """The limit a request path falls under, or None when it is not limited."""
    if path.startswith(WEBHOOK_PREFIX):
        return RateLimit("webhook", settings.webhook_rate_limit_requests, settings.webhook_rate_limit_window_seconds)
    if path.startswith(API_PREFIX):
        return RateLimit("api", settings.rate_limit_requests, settings.rate_limit_window_seconds)
    return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Rate limiting middleware.

    Counters live in the same cache backend the routes use (resolved through
    the ``get_cache`` dependency, overrides included). A cache outage lets
    requests through.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        limit = limit_for_path(request.url.path)
        if limit is None:
            return await call_next(request)

        identifier = self._get_identifier(request)
        is_allowed, remaining, reset_time = await self._check_rate_limit(request, limit, identifier)

        if not is_allowed:
            logger.warning(
                "rate_limit_exceeded",
                scope=limit.scope,
                identifier=identifier,
                path=request.url.path,
                method=request.method,
            )
            return self._rejected(limit, reset_time)

        response = await call_next(request)

        response.headers["X-RateLimit-Limit"] = str(limit.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(reset_time)
        return response

    @staticmethod
    def _get_identifier(request: Request) -> str:
        """Client IP, taking the first hop of X-Forwarded-For behind a proxy."""
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            ip = forwarded_for.split(",")[0].strip()
        else:
            ip = request.client.host if request.client else "unknown"

        return f"ip:{ip}"

    async def _check_rate_limit(
        self,
        request: Request,
        limit: RateLimit,
        identifier: str,
    ) -> tuple[bool, int, int]:
        """
        Count the request in its window.

        Returns:
            Tuple of (is_allowed, remaining_requests, reset_timestamp)
        """
        now = int(time.time())
        window = now // limit.window_seconds
        reset_time = (window + 1) * limit.window_seconds

        provider = request.app.dependency_overrides.get(get_cache, get_cache)
        counters: MetricsCacheBackend = provider()

        count = await counters.increment(
            f"rate_limit:{limit.scope}:{identifier}:{window}",
            ttl=limit.window_seconds,
        )
        if count is None:
            logger.error("rate_limit_check_failed", scope=limit.scope, identifier=identifier)
            return True, limit.max_requests, reset_time

        logger.debug(
            "rate_limit_checked",
            scope=limit.scope,
            identifier=identifier,
            count=count,
            limit=limit.max_requests,
        )
        return count <= limit.max_requests, max(0, limit.max_requests - count), reset_time

    @staticmethod
    def _rejected(limit: RateLimit, reset_time: int) -> JSONResponse:
        body = ErrorResponse(
            error="RateLimitExceeded",
            message=f"Maximum {limit.max_requests} requests per {limit.window_seconds} seconds exceeded",
            details=[ErrorDetail(code=ErrorCode.RATE_LIMITED, message=f"{limit.scope} rate limit exceeded")],
            remediation=REMEDIATION_HINTS.get(ErrorCode.RATE_LIMITED),
            request_id=current_request_id(),
        )
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=body.model_dump(mode="json"),
            headers={
                "X-RateLimit-Limit": str(limit.max_requests),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(reset_time),
                "Retry-After": str(max(1, reset_time - int(time.time()))),
            },
        )
