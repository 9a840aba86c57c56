from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional

import redis.asyncio as aioredis
from redis import Redis


def _session_key(user_id: str) -> str:
    return f"auth:user_session:{user_id}"


def _denylist_key(jti: str) -> str:
    return f"auth:access:denylist:{jti}"


class RedisCache:
    """Thin Redis wrapper for the token denylist and the session registry."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Add a token id to the denylist until the token would have expired."""
        if ttl_seconds > 0:
            await self.client.set(_denylist_key(jti), "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(_denylist_key(jti)))

    async def save_user_session(
        self, user_id: str, record: Dict[str, str], ttl_seconds: int
    ) -> None:
        """Replace the single session entry for ``user_id``."""
        key = _session_key(user_id)
        pipe = self.client.pipeline()
        pipe.delete(key)
        pipe.hset(key, mapping=record)
        pipe.expire(key, max(1, ttl_seconds))
        await pipe.execute()

    async def get_user_session(self, user_id: str) -> Optional[Dict[str, str]]:
        record = await self.client.hgetall(_session_key(user_id))
        return record or None

    async def update_session_activity(
        self, user_id: str, ttl_seconds: int
    ) -> bool:
        """Bump lastActivity on an existing entry; returns False if none exists."""
        key = _session_key(user_id)
        if not await self.client.exists(key):
            return False
        now = datetime.now(timezone.utc).isoformat()
        pipe = self.client.pipeline()
        pipe.hset(key, "lastActivity", now)
        pipe.expire(key, max(1, ttl_seconds))
        await pipe.execute()
        return True

    async def delete_user_session(self, user_id: str) -> None:
        await self.client.delete(_session_key(user_id))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a sync client internally to avoid event loop binding issues under
    pytest, but exposes the same awaitable methods as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self.client.set(_denylist_key(jti), "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(self.client.exists(_denylist_key(jti)))

    async def save_user_session(
        self, user_id: str, record: Dict[str, str], ttl_seconds: int
    ) -> None:
        key = _session_key(user_id)
        pipe = self.client.pipeline()
        pipe.delete(key)
        pipe.hset(key, mapping=record)
        pipe.expire(key, max(1, ttl_seconds))
        pipe.execute()

    async def get_user_session(self, user_id: str) -> Optional[Dict[str, str]]:
        record = self.client.hgetall(_session_key(user_id))
        return record or None

    async def update_session_activity(
        self, user_id: str, ttl_seconds: int
    ) -> bool:
        key = _session_key(user_id)
        if not self.client.exists(key):
            return False
        now = datetime.now(timezone.utc).isoformat()
        pipe = self.client.pipeline()
        pipe.hset(key, "lastActivity", now)
        pipe.expire(key, max(1, ttl_seconds))
        pipe.execute()
        return True

    async def delete_user_session(self, user_id: str) -> None:
        self.client.delete(_session_key(user_id))

    async def close(self) -> None:
        self.client.close()
