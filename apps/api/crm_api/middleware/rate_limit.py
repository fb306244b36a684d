from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_api.context import get_correlation_id
from crm_api.core.auth import bearer_token
from crm_api.core.config import get_settings
from crm_api.core.envelope import error_response
from crm_api.core.security import InvalidTokenError, decode_token


AUTH_LIMITED_PATHS = {"/api/auth/login", "/api/auth/register"}


@dataclass
class _BucketState:
    tokens: float
    last_refill: float
    capacity: float
    refill_rate: float

    def is_idle(self, now: float) -> bool:
        return self.tokens + (now - self.last_refill) * self.refill_rate >= self.capacity


class _TokenBucketLimiter:
    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval: float = 60.0) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _BucketState] = {}
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def __len__(self) -> int:
        return len(self._buckets)

    def take(self, client_key: str, route_group: str, capacity: int, window_seconds: int) -> tuple[bool, int]:
        if capacity <= 0:
            return False, window_seconds

        now = self._clock()
        refill_rate = capacity / float(window_seconds)
        key = (client_key, route_group)

        with self._lock:
            if now >= self._next_sweep:
                self._prune(now)
            current = self._buckets.get(key)
            if current is None:
                current = _BucketState(
                    tokens=float(capacity),
                    last_refill=now,
                    capacity=float(capacity),
                    refill_rate=refill_rate,
                )
                self._buckets[key] = current

            elapsed = max(0.0, now - current.last_refill)
            current.tokens = min(float(capacity), current.tokens + (elapsed * refill_rate))
            current.last_refill = now

            if current.tokens < 1.0:
                retry_after = max(1, math.ceil((1.0 - current.tokens) / refill_rate))
                return False, retry_after

            current.tokens -= 1.0
            return True, 0

    def _prune(self, now: float) -> None:
        # A bucket that has refilled to capacity behaves exactly like a missing one.
        for key in [key for key, state in self._buckets.items() if state.is_idle(now)]:
            del self._buckets[key]
        self._next_sweep = now + self._sweep_interval

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._next_sweep = self._clock() + self._sweep_interval


_limiter = _TokenBucketLimiter()


class ApiRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled or settings.is_development:
            return await call_next(request)

        path = request.url.path.rstrip("/") or "/"
        if not path.startswith("/api/"):
            return await call_next(request)

        if path in AUTH_LIMITED_PATHS and request.method.upper() == "POST":
            route_group = "auth"
            capacity = settings.rate_limit_auth_attempts
            window_seconds = settings.rate_limit_auth_window_seconds
            message = "Too many login attempts, please try again later."
        else:
            route_group = "api"
            capacity = settings.rate_limit_api_per_minute
            window_seconds = 60
            message = "Too many requests, please try again later."

        allowed, retry_after = _limiter.take(
            client_key=_resolve_client_key(request, settings.rate_limit_trusted_proxies),
            route_group=route_group,
            capacity=capacity,
            window_seconds=window_seconds,
        )
        if allowed:
            return await call_next(request)

        headers = {"Retry-After": str(retry_after)}
        correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
        if correlation_id:
            headers["X-Correlation-Id"] = correlation_id
        return error_response(status_code=429, code="RATE_LIMIT_EXCEEDED", message=message, headers=headers)


def _resolve_client_key(request: Request, trusted_proxies: int) -> str:
    token = bearer_token(request)
    if token:
        try:
            payload = decode_token(token, "access")
        except InvalidTokenError:
            payload = None
        if payload is not None:
            return f"user:{payload['sub']}"
    return f"ip:{_client_address(request, trusted_proxies)}"


def _client_address(request: Request, trusted_proxies: int) -> str:
    """Peer address after skipping ``trusted_proxies`` hops from the right of X-Forwarded-For."""
    peer = request.client.host if request.client else "unknown"
    if trusted_proxies <= 0:
        return peer

    forwarded = [hop.strip() for hop in request.headers.get("x-forwarded-for", "").split(",") if hop.strip()]
    hops = [peer, *reversed(forwarded)]
    return hops[min(trusted_proxies, len(hops) - 1)]


def reset_rate_limiter() -> None:
    _limiter.clear()
