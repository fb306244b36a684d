"""Optional Redis client used for cache health reporting."""

from __future__ import annotations

import redis

from crm_api.core.config import get_settings

REDIS_DISABLED_URL = "memory://"
REDIS_CONNECT_TIMEOUT_SECONDS = 2.0
REDIS_SOCKET_TIMEOUT_SECONDS = 2.0

_client: redis.Redis | None = None
_client_url: str | None = None


def get_redis_url() -> str | None:
    url = get_settings().redis_url
    if not url or url.strip().lower() == REDIS_DISABLED_URL:
        return None
    return url.strip()


def get_redis_client() -> redis.Redis | None:
    global _client, _client_url

    url = get_redis_url()
    if not url:
        return None

    if _client is None or _client_url != url:
        pool = redis.ConnectionPool.from_url(
            url,
            socket_connect_timeout=REDIS_CONNECT_TIMEOUT_SECONDS,
            socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
        )
        _client = redis.Redis(connection_pool=pool)
        _client_url = url
    return _client


def ping() -> str:
    """Return "not configured", "connected" or "disconnected"."""
    client = get_redis_client()
    if client is None:
        return "not configured"
    try:
        client.ping()
    except redis.RedisError:
        return "disconnected"
    return "connected"
