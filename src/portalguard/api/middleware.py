import re
from datetime import datetime, timezone
from typing import Sequence

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse
from starlette.types import ASGIApp
import structlog

from portalguard.core.limiter import Decision

logger = structlog.get_logger()

# First match wins; a None policy exempts the path.
DEFAULT_PATH_POLICIES: tuple[tuple[str, str | None], ...] = (
    (r"^/health$", None),
    (r"^(/[a-z]{2})?(/api)?/auth/(password-reset|forgot-password)", "password_reset"),
    (r"^(/[a-z]{2})?(/api)?/auth(/|$)", "auth"),
    (r"^(/api)?/forms/[^/]+/submit", "form_submit"),
    (r"/upload", "upload"),
    (r"^(/api)?/notifications", "notification"),
    (r"", "api"),
)


class StarletteRequestSignals:
    """Exposes a Starlette request through the RequestSignals protocol."""

    def __init__(self, request: Request):
        self._request = request

    def get_header(self, name: str) -> str | None:
        return self._request.headers.get(name)

    def get_peer_address(self) -> str | None:
        return self._request.client.host if self._request.client else None


def _iso(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat()


def rate_limit_headers(decision: Decision) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_at),
    }


def too_many_requests(decision: Decision, now: int | None = None) -> JSONResponse:
    retry_after = decision.retry_after(now)
    headers = rate_limit_headers(decision)
    headers["Retry-After"] = str(retry_after)

    if decision.blocked and decision.block_until:
        headers["X-RateLimit-BlockedUntil"] = str(decision.block_until)
        message = f"Too many requests. Blocked until {_iso(decision.block_until)}"
    else:
        message = f"Too many requests. Try again after {_iso(decision.reset_at)}"

    content = {
        "error": "rate_limit_exceeded",
        "message": message,
        "limit": decision.limit,
        "remaining": 0,
        "reset": _iso(decision.reset_at),
        "retry_after": retry_after,
        "blocked": decision.blocked,
    }
    if decision.blocked and decision.block_until:
        content["blocked_until"] = _iso(decision.block_until)

    return JSONResponse(status_code=429, content=content, headers=headers)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Translates limiter Decisions into HTTP.

    Picks the policy for a path, asks the limiter, then either answers 429
    or forwards the request and copies the rate limit headers onto the
    response. The limiter itself is read from ``app.state`` so it can be
    built in the lifespan handler.
    """

    def __init__(
        self,
        app: ASGIApp,
        path_policies: Sequence[tuple[str, str | None]] = DEFAULT_PATH_POLICIES,
    ):
        super().__init__(app)
        self.path_policies = [(re.compile(pattern), name) for pattern, name in path_policies]

    def resolve_policy(self, path: str) -> str | None:
        for pattern, name in self.path_policies:
            if pattern.search(path):
                return name
        return None

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:

        limiter = getattr(request.app.state, "limiter", None)
        if limiter is None:
            logger.warning("middleware_uninitialized_skipping")
            return await call_next(request)

        policy_name = self.resolve_policy(request.url.path)
        if policy_name is None:
            return await call_next(request)
        if policy_name not in limiter.registry:
            logger.warning("rate_limit.policy_not_registered", policy=policy_name)
            return await call_next(request)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            policy=policy_name,
            path=request.url.path,
            method=request.method
        )

        decision = await limiter.check(StarletteRequestSignals(request), policy_name)

        if not decision.allowed:
            return too_many_requests(decision, limiter.now())

        response = await call_next(request)

        settings = getattr(request.app.state, "settings", None)
        if settings is None or settings.rate_limit_headers_on_success:
            for key, value in rate_limit_headers(decision).items():
                response.headers[key] = value

        return response
