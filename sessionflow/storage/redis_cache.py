from __future__ import annotations

import hashlib
from typing import Any, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from sessionflow.logging import get_logger
from sessionflow.storage.common import (
    BrowserBridge,
    dump_stored_session,
    load_stored_session,
)
from sessionflow.storage.errors import StoreError
from sessionflow.storage.models import SessionRecord, StoredSession


class RedisSessionStore:
    """Redis-backed store so captured sessions survive across processes."""

    DEFAULT_TTL_SECONDS = 24 * 60 * 60

    def __init__(
        self,
        redis_url: str,
        browser: BrowserBridge,
        *,
        key_prefix: str = "sessionflow",
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        socket_timeout: float = 5.0,
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url
        self.browser = browser
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds
        self.logger = get_logger(__name__)
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _session_key(self, session_id: str) -> str:
        """Hash ids so serialized structured keys cannot inject delimiters."""
        digest = hashlib.sha256(session_id.encode()).hexdigest()
        return f"{self.key_prefix}:session:{digest}"

    @property
    def _index_key(self) -> str:
        return f"{self.key_prefix}:sessions"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the store."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, session_id: str) -> Optional[StoredSession]:
        try:
            raw = await self.client.get(self._session_key(session_id))
        except RedisError as exc:
            raise StoreError("session lookup failed", {"id": session_id, "error": str(exc)}) from exc
        return load_stored_session(raw)

    async def save(self, record: SessionRecord) -> None:
        payload = dump_stored_session(record.to_stored())
        key = self._session_key(record.id)
        try:
            pipe = self.client.pipeline()
            pipe.set(key, payload, ex=self.ttl_seconds)
            pipe.sadd(self._index_key, key)
            pipe.expire(self._index_key, self.ttl_seconds)
            await pipe.execute()
        except RedisError as exc:
            raise StoreError("session save failed", {"id": record.id, "error": str(exc)}) from exc
        self.logger.debug("session_saved", session_id=record.id, backend="redis")

    async def delete(self, session_id: str) -> bool:
        key = self._session_key(session_id)
        try:
            pipe = self.client.pipeline()
            pipe.delete(key)
            pipe.srem(self._index_key, key)
            removed, _ = await pipe.execute()
        except RedisError as exc:
            raise StoreError("session delete failed", {"id": session_id, "error": str(exc)}) from exc
        return bool(removed)

    async def clear_current(self) -> None:
        await self.browser.clear()

    async def clear_all(self) -> int:
        """Delete every saved session under this prefix; returns the count."""
        try:
            keys = await self.client.smembers(self._index_key)
            if not keys:
                return 0
            pipe = self.client.pipeline()
            for key in keys:
                pipe.delete(key)
            pipe.delete(self._index_key)
            await pipe.execute()
        except RedisError as exc:
            raise StoreError("clearing saved sessions failed", {"error": str(exc)}) from exc
        self.logger.info("saved_sessions_cleared", backend="redis", count=len(keys))
        return len(keys)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
