from __future__ import annotations

import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis


def _pending_key(session_id: str) -> str:
    return f"pending_flow:{session_id}"


class RedisCache:
    """Thin Redis wrapper for session-carried interaction state."""

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
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_pending_flow(
        self, session_id: str, record: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            _pending_key(session_id), json.dumps(record), ex=max(1, ttl_seconds)
        )

    async def get_pending_flow(self, session_id: str) -> Optional[Dict[str, Any]]:
        raw = await self.client.get(_pending_key(session_id))
        if not raw:
            return None
        return json.loads(raw)

    async def delete_pending_flow(self, session_id: str) -> None:
        await self.client.delete(_pending_key(session_id))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Exposes the same awaitable methods as :class:`RedisCache` but talks to
    Redis through a sync client, avoiding event loop binding under pytest.
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

    async def set_pending_flow(
        self, session_id: str, record: Dict[str, Any], ttl_seconds: int
    ) -> None:
        self.client.set(_pending_key(session_id), json.dumps(record), ex=max(1, ttl_seconds))

    async def get_pending_flow(self, session_id: str) -> Optional[Dict[str, Any]]:
        raw = self.client.get(_pending_key(session_id))
        if not raw:
            return None
        return json.loads(raw)

    async def delete_pending_flow(self, session_id: str) -> None:
        self.client.delete(_pending_key(session_id))

    async def close(self) -> None:
        self.client.close()
