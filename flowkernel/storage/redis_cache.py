from __future__ import annotations

import json
import time
from typing import Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisStateCache:
    """Redis-backed store for live execution state snapshots.

    Snapshots let late subscribers and other API workers reconcile progress
    without replaying the event stream.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _key(execution_id: str, tenant_id: Optional[str]) -> str:
        tenant_prefix = f"{tenant_id}:" if tenant_id else ""
        return f"execution:state:{tenant_prefix}{execution_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_execution_state(
        self, execution_id: str, *, tenant_id: Optional[str] = None
    ) -> Optional[dict]:
        cached = await self.client.get(self._key(execution_id, tenant_id))
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted entry is a cache miss
            return None

    async def set_execution_state(
        self,
        execution_id: str,
        state: dict,
        ttl_seconds: int = 1800,
        *,
        tenant_id: Optional[str] = None,
    ) -> None:
        await self.client.set(
            self._key(execution_id, tenant_id),
            json.dumps(state, ensure_ascii=False, default=str),
            ex=ttl_seconds,
        )

    async def delete_execution_state(
        self, execution_id: str, *, tenant_id: Optional[str] = None
    ) -> None:
        await self.client.delete(self._key(execution_id, tenant_id))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down the runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class MemoryStateCache:
    """Process-local stand-in for RedisStateCache used in tests and dev mode."""

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[float, dict]] = {}

    def verify_connection(self) -> None:
        return None

    async def get_execution_state(
        self, execution_id: str, *, tenant_id: Optional[str] = None
    ) -> Optional[dict]:
        key = RedisStateCache._key(execution_id, tenant_id)
        entry = self._entries.get(key)
        if not entry:
            return None
        expires_at, state = entry
        if expires_at <= time.monotonic():
            self._entries.pop(key, None)
            return None
        return json.loads(json.dumps(state, default=str))

    async def set_execution_state(
        self,
        execution_id: str,
        state: dict,
        ttl_seconds: int = 1800,
        *,
        tenant_id: Optional[str] = None,
    ) -> None:
        key = RedisStateCache._key(execution_id, tenant_id)
        self._entries[key] = (time.monotonic() + ttl_seconds, json.loads(json.dumps(state, default=str)))

    async def delete_execution_state(
        self, execution_id: str, *, tenant_id: Optional[str] = None
    ) -> None:
        self._entries.pop(RedisStateCache._key(execution_id, tenant_id), None)

    async def close(self) -> None:
        self._entries.clear()
