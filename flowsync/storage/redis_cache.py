from __future__ import annotations

import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the prediction event channel."""

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

    async def publish_event(self, channel: str, event: Dict[str, Any]) -> int:
        """Publish ``event`` as JSON; returns the number of subscribers reached."""
        return await self.client.publish(channel, json.dumps(event))

    async def subscribe(self, channel: str):
        pubsub = self.client.pubsub()
        await pubsub.subscribe(channel)
        return pubsub

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class _SyncPubSubAdapter:
    """Wraps a sync PubSub with the awaitable surface the consumer expects."""

    def __init__(self, pubsub) -> None:
        self._sync = pubsub

    async def get_message(
        self, ignore_subscribe_messages: bool = False, timeout: float = 0.0
    ) -> Optional[dict]:
        return self._sync.get_message(
            ignore_subscribe_messages=ignore_subscribe_messages, timeout=timeout
        )

    async def unsubscribe(self, *channels: str) -> None:
        self._sync.unsubscribe(*channels)

    async def close(self) -> None:
        self._sync.close()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes async methods so callers can await it exactly like
    RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def publish_event(self, channel: str, event: Dict[str, Any]) -> int:
        return self._sync_client.publish(channel, json.dumps(event))

    async def subscribe(self, channel: str):
        pubsub = self._sync_client.pubsub()
        pubsub.subscribe(channel)
        return _SyncPubSubAdapter(pubsub)

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
