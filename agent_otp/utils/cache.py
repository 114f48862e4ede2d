"""Fast ephemeral cache for token projections.

The cache is best-effort: every entry can be rebuilt from the database, so
callers treat a miss (or a cache outage) as a slower path, never an error.
"""
from typing import Optional, Protocol

import redis

from agent_otp.config import settings
from agent_otp.utils.logger import logger

# Key prefixes for the different cached record types
CACHE_KEYS = {
    "TOKEN": "token:",   # token:{token_hash} -> token projection
    "OTP": "otp:",       # otp:{permission_request_id} -> encrypted payload
}


def build_cache_key(prefix: str, *parts: str) -> str:
    """Build a cache key with proper prefixing"""
    return CACHE_KEYS[prefix] + ":".join(parts)


class TokenCache(Protocol):
    """Minimal key-value contract the token service relies on"""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ex: int) -> None: ...

    def delete(self, key: str) -> None: ...


class RedisTokenCache:
    """TokenCache backed by a Redis connection pool"""

    def __init__(self, client: "redis.Redis"):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisTokenCache":
        client = redis.Redis.from_url(url, encoding="utf-8", decode_responses=True, max_connections=20)
        logger.info("Token cache connected to Redis")
        return cls(client)

    def get(self, key: str) -> Optional[str]:
        return self._redis.get(key)

    def set(self, key: str, value: str, ex: int) -> None:
        self._redis.set(key, value, ex=ex)

    def delete(self, key: str) -> None:
        self._redis.delete(key)

    def close(self) -> None:
        self._redis.close()


class NullTokenCache:
    """TokenCache that stores nothing; every read falls through to the database"""

    def get(self, key: str) -> Optional[str]:
        return None

    def set(self, key: str, value: str, ex: int) -> None:
        return None

    def delete(self, key: str) -> None:
        return None


def create_token_cache(url: Optional[str] = None) -> TokenCache:
    """Build the configured cache; falls back to NullTokenCache without a REDIS_URL"""
    url = url or settings.REDIS_URL
    if not url:
        logger.warning("REDIS_URL not set - token lookups will always hit the database")
        return NullTokenCache()
    return RedisTokenCache.from_url(url)
