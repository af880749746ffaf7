from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from fastapi import Request, Response

from civicguard.service.errors import RateLimitExceededError
from civicguard.service.rate_limit import RateLimiter
from civicguard.storage.models import RateLimitInfo

KeyFunc = Callable[[Request], str]


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.runtime.rate_limiter


def apply_rate_limit_headers(response: Response, info: RateLimitInfo) -> None:
    if info.max_hits <= 0:
        return
    response.headers["X-RateLimit-Limit"] = str(info.max_hits)
    response.headers["X-RateLimit-Remaining"] = str(info.remaining_points)
    response.headers["X-RateLimit-Reset"] = str(info.retry_after)


def rate_limit(
    scope: str, key: Optional[KeyFunc] = None
) -> Callable[[Request, Response], Awaitable[RateLimitInfo]]:
    """Dependency gating an endpoint on the limiter rule for ``scope``.

    ``key`` derives the subject from the request and defaults to the client
    IP. Usage::

        @router.post("/auth/login", dependencies=[Depends(rate_limit("login"))])
    """

    key_func = key or client_ip

    async def _dependency(request: Request, response: Response) -> RateLimitInfo:
        limiter = get_rate_limiter(request)
        identity = key_func(request)
        info = await asyncio.to_thread(
            limiter.hit, scope, identity, client_ip=client_ip(request)
        )
        if not info.allowed:
            raise RateLimitExceededError(
                retry_after=info.retry_after,
                detail={"scope": scope, "limit": info.max_hits},
            )
        apply_rate_limit_headers(response, info)
        return info

    return _dependency
