"""
Rate limiting middleware for the CareFlow API.
Implements Redis-based rate limiting per user.
"""

import logging
import time
from typing import Optional
from dataclasses import dataclass

import redis.asyncio as redis
from fastapi import Request, status
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_at: int
    limit: int


class RateLimiter:
    """Redis-based fixed-window rate limiter."""

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    async def check_rate_limit(
        self,
        identity: str,
        limit: int = 100,
        window: int = 60,  # seconds
        key_prefix: str = "careflow:ratelimit"
    ) -> RateLimitResult:
        """Count this request against the identity's current window."""
        now = time.time()
        current_window = int(now) // window
        key = f"{key_prefix}:{identity}:{current_window}"

        pipe = self.redis.pipeline()
        pipe.zremrangebyscore(key, 0, now - window)
        pipe.zcard(key)
        pipe.zadd(key, {f"{now:.6f}": now})
        pipe.expire(key, window)
        results = await pipe.execute()
        current_count = results[1]

        return RateLimitResult(
            allowed=current_count < limit,
            remaining=max(0, limit - current_count - 1),
            reset_at=(current_window + 1) * window,
            limit=limit
        )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware that enforces per-user request limits on API routes."""

    EXEMPT_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    def __init__(self, app, limiter: RateLimiter, requests_per_minute: int = 100, prefix: str = "/api"):
        super().__init__(app)
        self.limiter = limiter
        self.requests_per_minute = requests_per_minute
        self.prefix = prefix

    async def dispatch(self, request: Request, call_next):
        """Process request with rate limiting."""
        path = request.url.path
        if path in self.EXEMPT_PATHS or not path.startswith(self.prefix):
            return await call_next(request)

        identity = self._extract_identity(request)
        try:
            result = await self.limiter.check_rate_limit(identity, limit=self.requests_per_minute)
        except redis.RedisError as e:
            logger.warning(f"Rate limiter unavailable, allowing request: {e}")
            return await call_next(request)

        if not result.allowed:
            retry_after = max(0, result.reset_at - int(time.time()))
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "error": "rate_limit_exceeded",
                    "message": "Too many requests. Please slow down.",
                    "retry_after": retry_after
                },
                headers={
                    "X-RateLimit-Limit": str(result.limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(result.reset_at),
                    "Retry-After": str(retry_after)
                }
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(result.reset_at)
        return response

    def _extract_identity(self, request: Request) -> str:
        """User id from the bearer token, else the client address."""
        authorization = request.headers.get("Authorization", "")
        if authorization.lower().startswith("bearer "):
            try:
                claims = jwt.get_unverified_claims(authorization[7:])
                if claims.get("sub"):
                    return f"user:{claims['sub']}"
            except JWTError:
                pass
        host: Optional[str] = request.client.host if request.client else None
        return f"ip:{host or 'unknown'}"
