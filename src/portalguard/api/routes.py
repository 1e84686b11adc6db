import secrets
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from pydantic import BaseModel

from portalguard.core.errors import StoreUnavailable, UnknownPolicyError
from portalguard.core.limiter import Limiter
from portalguard.core.policy import RateLimitPolicy

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    store: str
    fail_open_events: int


class RateLimitStatus(BaseModel):
    policy: str
    key: str
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    blocked: bool
    block_until: int | None = None


def get_limiter(request: Request) -> Limiter:
    return request.app.state.limiter


async def require_admin(
    request: Request,
    x_admin_token: Annotated[str | None, Header(alias="X-Admin-Token")] = None,
) -> None:
    expected = request.app.state.settings.admin_token
    if not expected or not x_admin_token or not secrets.compare_digest(
        x_admin_token.encode(), expected.encode()
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin token required")


def _policy_or_404(limiter: Limiter, name: str) -> RateLimitPolicy:
    try:
        return limiter.registry.get(name)
    except UnknownPolicyError:
        raise HTTPException(status_code=404, detail=f"Unknown policy: {name}") from None


@router.get("/health", response_model=HealthResponse)
async def health_check(limiter: Annotated[Limiter, Depends(get_limiter)]):
    store_ok = await limiter.backend.ping()
    return HealthResponse(
        status="healthy",
        store="ok" if store_ok else "unavailable",
        fail_open_events=limiter.fail_open_count,
    )


@router.get("/")
async def root(request: Request):
    return {
        "service": request.app.state.settings.app_name,
        "message": "Rate limiting service is running",
    }


@router.get(
    "/admin/rate-limits/{policy_name}/{key}",
    response_model=RateLimitStatus,
    dependencies=[Depends(require_admin)],
)
async def rate_limit_status(
    policy_name: str,
    key: str,
    limiter: Annotated[Limiter, Depends(get_limiter)],
):
    policy = _policy_or_404(limiter, policy_name)
    decision = await limiter.status(key, policy)
    return RateLimitStatus(
        policy=policy.name,
        key=key,
        allowed=decision.allowed,
        limit=decision.limit,
        remaining=decision.remaining,
        reset_at=decision.reset_at,
        blocked=decision.blocked,
        block_until=decision.block_until,
    )


@router.delete(
    "/admin/rate-limits/{policy_name}/{key}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
)
async def reset_rate_limit(
    policy_name: str,
    key: str,
    limiter: Annotated[Limiter, Depends(get_limiter)],
):
    policy = _policy_or_404(limiter, policy_name)
    try:
        await limiter.reset(key, policy)
    except StoreUnavailable:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Rate limit store unavailable",
        ) from None
    return Response(status_code=status.HTTP_204_NO_CONTENT)
