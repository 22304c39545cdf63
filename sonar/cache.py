"""Redis cache for user records.

Users are read far more often than they change (every ping rendering needs
the author), so profiles are cached under two keys: by id and by username.
Any Redis failure is logged and treated as a miss.
"""

import json
from typing import Any, Awaitable, Callable, Optional
from redis import asyncio as aioredis
from .config import settings
from .logger import logger

USER_BY_ID_PREFIX = "user:id"
USER_BY_USERNAME_PREFIX = "user:username"


def make_cache_key(prefix: str, identifier: Any) -> str:
    """Namespace a key, e.g. make_cache_key("user:id", 123) -> "user:id:123"."""
    return f"{prefix}:{identifier}"


def user_cache_keys(user_id: int, username: str) -> tuple[str, str]:
    return (
        make_cache_key(USER_BY_ID_PREFIX, user_id),
        make_cache_key(USER_BY_USERNAME_PREFIX, username),
    )


class CacheManager:
    """Owns the Redis client. Operations degrade to None/False without it."""

    def __init__(self):
        self._redis: Optional[aioredis.Redis] = None

    @property
    def connected(self) -> bool:
        return self._redis is not None

    async def connect(self, url: str | None = None):
        """Open a client and ping it. On failure the cache stays off."""
        if self._redis is not None:
            return
        client = aioredis.from_url(
            url or settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
        )
        try:
            await client.ping()
        except Exception as e:
            logger.error(f"[cache] Redis unreachable, caching disabled: {e}")
            return
        self._redis = client
        logger.info("[cache] Connected to Redis")

    async def disconnect(self):
        if self._redis:
            client, self._redis = self._redis, None
            await client.aclose()
            logger.info("[cache] Disconnected from Redis")

    async def _guarded(self, action: str, call: Callable[[aioredis.Redis], Awaitable[Any]], fallback: Any):
        if not self._redis:
            return fallback
        try:
            return await call(self._redis)
        except Exception as e:
            logger.error(f"[cache] {action} failed: {e}")
            return fallback

    async def get(self, key: str) -> Optional[dict]:
        """Cached dict for `key`, or None."""
        raw = await self._guarded(f"GET {key}", lambda r: r.get(key), None)
        if raw is None:
            logger.debug(f"[cache] MISS: {key}")
            return None
        logger.debug(f"[cache] HIT: {key}")
        return json.loads(raw)

    async def set(self, key: str, value: dict, ttl: Optional[int] = None) -> bool:
        """Store `value` as JSON for `ttl` seconds (CACHE_TTL by default)."""
        ttl = ttl or settings.CACHE_TTL
        payload = json.dumps(value, default=str)

        async def _set(r):
            await r.setex(key, ttl, payload)
            return True

        return await self._guarded(f"SET {key}", _set, False)

    async def delete(self, *keys: str) -> bool:
        if not keys:
            return False

        async def _delete(r):
            await r.delete(*keys)
            return True

        return await self._guarded(f"DELETE {', '.join(keys)}", _delete, False)

    async def health_check(self) -> bool:
        async def _ping(r):
            await r.ping()
            return True

        return await self._guarded("PING", _ping, False)

    # ==================== User Records ====================

    async def remember_user(self, user: dict) -> None:
        """Cache a public user dict (id, username, real_name, blurb) under both keys."""
        for key in user_cache_keys(user["id"], user["username"]):
            await self.set(key, user)

    async def forget_user(self, user_id: int, username: str) -> None:
        await self.delete(*user_cache_keys(user_id, username))


cache_manager = CacheManager()
