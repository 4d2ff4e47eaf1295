"""Rate limiting dependencies backed by the application's shared RateLimiter."""

from __future__ import annotations

from typing import Callable

from fastapi import Request

from services.errors import RateLimited
from services.rate_limiter import RateLimiter


def get_rate_limiter(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        limiter = RateLimiter()
        request.app.state.rate_limiter = limiter
    return limiter


def _client_identifier(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


def rate_limit(scope: str, limit: int) -> Callable[[Request], None]:
    """Return a FastAPI dependency that enforces a per-client quota for ``scope``."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        decision = await get_rate_limiter(request).check(_client_identifier(request), limit=limit, scope=scope)
        if not decision.allowed:
            raise RateLimited(
                f"Rate limit exceeded for {scope}. Try again later.",
                remaining=decision.remaining,
                reset_at=decision.reset_at,
            )

    return _dependency
