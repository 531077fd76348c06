"""
ServiceOps API Dependencies

Dependency injection for DB sessions, auth, the clock, and outbound clients.
"""

from collections.abc import AsyncGenerator
from functools import lru_cache

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from core.clock import Clock
from core.clock import get_clock as _system_clock
from core.config import get_settings
from core.rate_limit import RateLimiter
from db.session import AsyncSessionLocal
from integrations.klaviyo import KlaviyoClient
from integrations.shopify import ShopifyClient

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return user payload. Bypassed in debug mode."""
    if settings.debug:
        return {
            "sub": "dev-user",
            "email": "dev@serviceops.local",
        }

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    from core.security import decode_access_token

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return payload


def get_clock() -> Clock:
    return _system_clock()


def get_shopify_client() -> ShopifyClient:
    return ShopifyClient.from_settings()


def get_klaviyo_client() -> KlaviyoClient:
    return KlaviyoClient.from_settings()


def actor_from(user: dict) -> str | None:
    return user.get("email") or user.get("sub")


@lru_cache
def _redis_client():
    return aioredis.from_url(settings.redis_url)


def get_public_intake_limiter() -> RateLimiter:
    return RateLimiter(
        _redis_client(),
        scope="rma_public",
        max_requests=settings.public_intake_rate_limit,
        window_seconds=settings.public_intake_rate_window_seconds,
    )


def client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "anonymous"


async def enforce_public_intake_rate_limit(
    request: Request,
    limiter: RateLimiter = Depends(get_public_intake_limiter),
) -> None:
    """Reject with 429 once a client IP exceeds the public intake budget."""
    result = await limiter.hit(client_identifier(request))
    if not result.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(result.retry_after_seconds)},
        )
