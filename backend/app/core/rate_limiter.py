import asyncio
import time
from collections import defaultdict, deque
from typing import Callable, Optional, Tuple, Union

from fastapi import Request, status
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from redis.exceptions import RedisError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app.core.config import settings
from app.core.logging import security_logger
from app.core.security import identity_from_header

# Paths that are never limited
EXEMPT_PATHS = {"/health", "/", "/docs", "/redoc", "/openapi.json", "/metrics"}


class InMemoryRateLimiter:
    """Sliding window per key, for a single process"""

    def __init__(self):
        self.clients = defaultdict(deque)
        self.lock = asyncio.Lock()

    async def is_allowed(self, key: str, limit: int, window: int) -> bool:
        async with self.lock:
            now = time.time()
            hits = self.clients[key]
            while hits and hits[0] < now - window:
                hits.popleft()
            if len(hits) >= limit:
                return False
            hits.append(now)
            return True


class RedisRateLimiter:
    """Sliding window kept in a Redis sorted set so all workers share it"""

    def __init__(self, redis_client: Redis):
        self.redis = redis_client

    async def is_allowed(self, key: str, limit: int, window: int) -> bool:
        now = time.time()
        redis_key = f"ratelimit:{key}"
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(redis_key, 0, now - window)
                pipe.zcard(redis_key)
                pipe.zadd(redis_key, {str(now): now})
                pipe.expire(redis_key, window)
                results = await pipe.execute()
        except RedisError as e:
            # Fail open when Redis is unavailable
            security_logger.error("Redis rate limiter error", error=str(e))
            return True
        return results[1] < limit


_memory_limiter: Optional[InMemoryRateLimiter] = None
_redis_limiter: Optional[RedisRateLimiter] = None


def get_rate_limiter() -> InMemoryRateLimiter:
    global _memory_limiter
    if _memory_limiter is None:
        _memory_limiter = InMemoryRateLimiter()
    return _memory_limiter


def setup_redis_rate_limiter(redis_url: str = "redis://localhost:6379") -> None:
    global _redis_limiter
    try:
        _redis_limiter = RedisRateLimiter(Redis.from_url(redis_url, decode_responses=True))
    except (RedisError, ValueError) as e:
        security_logger.warning("Redis rate limiter unavailable, using in-memory limits", error=str(e))
        return
    security_logger.info("Redis rate limiter configured")


def get_active_rate_limiter() -> Union[RedisRateLimiter, InMemoryRateLimiter]:
    return _redis_limiter or get_rate_limiter()


def rate_limit_key_func(request: Request) -> str:
    """Per user when the bearer token checks out, else per client address"""
    identity = identity_from_header(request.headers.get("authorization"))
    if identity is not None:
        return f"user:{identity.user_id}"
    return get_remote_address(request)


def limits_for(method: str, path: str) -> Tuple[int, int]:
    """(requests, window seconds) for a request"""
    if path.startswith("/sync"):
        # Offline replays arrive in bursts of batched operations
        return 20, 60
    if path.startswith("/chats") and method in ("POST", "PATCH", "DELETE"):
        return 60, 60
    return 120, 60


def bucket_for(method: str, path: str) -> str:
    """Requests sharing limits share a window"""
    section = path.strip("/").split("/", 1)[0] or "root"
    if section == "chats" and method in ("POST", "PATCH", "DELETE"):
        return "chats:write"
    return section


limiter = Limiter(key_func=rate_limit_key_func, enabled=settings.rate_limit_enabled)


async def rate_limit_middleware(request: Request, call_next: Callable):
    """Sliding window limits applied before routing"""
    path = request.url.path
    if path in EXEMPT_PATHS:
        return await call_next(request)

    client_key = rate_limit_key_func(request)
    limit, window = limits_for(request.method, path)
    allowed = await get_active_rate_limiter().is_allowed(
        f"{client_key}:{bucket_for(request.method, path)}", limit, window
    )
    if not allowed:
        security_logger.warning("Rate limit exceeded", client=client_key, path=path, method=request.method)
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "code": "rate_limited",
                "detail": f"Rate limit exceeded. Maximum {limit} requests per {window} seconds.",
            },
            headers={"Retry-After": str(window)},
        )
    return await call_next(request)


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    security_logger.warning("Route rate limit exceeded", client=rate_limit_key_func(request), path=request.url.path)
    return _rate_limit_exceeded_handler(request, exc)
