import os
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Iterable

import redis
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse


_ALWAYS_EXEMPT = ("/health", "/metrics")
_AUTH_PATHS = ("/auth/request_otp", "/auth/verify_otp")


def _too_many(retry_after: int) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests", "code": "rate_limited", "retry_after": retry_after},
        headers={"Retry-After": str(retry_after)},
    )


class _LimiterBase(BaseHTTPMiddleware):
    def __init__(self, app, limit_per_minute: int = 60, auth_boost: int = 2, exempt_otp: bool = True, exclude_paths: Iterable[str] | None = None):
        super().__init__(app)
        self.limit_per_minute = limit_per_minute
        self.auth_boost = auth_boost
        self.exempt_otp = exempt_otp
        self.exclude_paths = set(_ALWAYS_EXEMPT) | set(exclude_paths or ())

    def _client_key(self, request: Request) -> str:
        auth = request.headers.get("authorization")
        if auth:
            return f"token:{auth[-24:]}"
        client = request.client.host if request.client else "unknown"
        return f"ip:{client}"

    def _is_exempt(self, request: Request) -> bool:
        path = request.url.path
        if path in self.exclude_paths:
            return True
        dev_env = os.getenv("ENV", "dev").lower() == "dev"
        return (
            self.exempt_otp
            and dev_env
            and path in _AUTH_PATHS
            and os.getenv("RL_EXEMPT_OTP", "true").lower() == "true"
        )

    def _limit_for(self, request: Request) -> int:
        # allow runtime override via env
        try:
            base = int(os.getenv("RL_LIMIT_PER_MINUTE_OVERRIDE", str(self.limit_per_minute)))
        except ValueError:
            base = self.limit_per_minute
        if request.url.path.startswith("/auth/"):
            base = min(base, 20)
        if request.headers.get("authorization"):
            try:
                boost = int(os.getenv("RL_AUTH_BOOST_OVERRIDE", str(self.auth_boost)))
            except ValueError:
                boost = self.auth_boost
            base *= boost
        return base


class SlidingWindowLimiter(_LimiterBase):
    """In-process limiter; one deque of request timestamps per client."""

    window_seconds = 60

    def __init__(self, app, **kwargs):
        super().__init__(app, **kwargs)
        self.store: Dict[str, Deque[float]] = defaultdict(deque)

    async def dispatch(self, request: Request, call_next):
        if self._is_exempt(request):
            return await call_next(request)
        now = time.time()
        limit = self._limit_for(request)
        dq = self.store[self._client_key(request)]
        while dq and now - dq[0] > self.window_seconds:
            dq.popleft()
        if len(dq) >= limit:
            return _too_many(max(1, int(self.window_seconds - (now - dq[0]))))
        dq.append(now)
        return await call_next(request)


class RedisRateLimiter(_LimiterBase):
    """Fixed one-minute windows counted in Redis, shared across workers."""

    def __init__(self, app, redis_url: str, prefix: str = "ratelimit", **kwargs):
        super().__init__(app, **kwargs)
        self.redis = redis.from_url(redis_url, decode_responses=True)
        self.prefix = prefix

    async def dispatch(self, request: Request, call_next):
        if self._is_exempt(request):
            return await call_next(request)
        now = int(time.time())
        key = f"{self.prefix}:{self._client_key(request)}:{now // 60}"
        try:
            count = self.redis.incr(key)
            if count == 1:
                self.redis.expire(key, 70)
        except redis.RedisError:
            # fail open
            return await call_next(request)
        if count > self._limit_for(request):
            return _too_many(60 - (now % 60))
        return await call_next(request)
