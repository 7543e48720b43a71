"""
Redis connection manager for Scorekeeper.
Provides async connection pool, lease, dedup, stream-queue and pub/sub helpers,
and key namespace utilities.
"""
from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.exceptions import ResponseError

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Key namespaces ──────────────────────────────────────────────────────
DEDUP_KEY = "dedup:{provider_id}:{event_id}"
LEASE_KEY = "lease:match:{match_id}"
QUEUE_STREAM_KEY = "queue:provider:{provider_id}"
QUEUE_GROUP = "scorekeeper-ingest"
NOTIFY_CHANNEL = "notify:match:{match_id}"
ALERT_CHANNEL = "alerts:{kind}"


def _fmt(template: str, **kwargs: Any) -> str:
    return template.format(**kwargs)


class RedisManager:
    """Manages async Redis connection pool and provides typed helpers."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._pool: Optional[Redis] = None

    async def connect(self) -> None:
        """Initialize the connection pool."""
        self._pool = aioredis.from_url(
            self._settings.redis_url_str,
            max_connections=self._settings.redis_max_connections,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True,
        )
        await self._pool.ping()
        logger.info("redis_connected", url=self._settings.redis_url_str)

    async def disconnect(self) -> None:
        """Graceful shutdown."""
        if self._pool:
            await self._pool.aclose()
            logger.info("redis_disconnected")

    @property
    def client(self) -> Redis:
        if self._pool is None:
            raise RuntimeError("RedisManager not connected. Call connect() first.")
        return self._pool

    # ── Idempotency window ──────────────────────────────────────────────
    async def claim_idempotency_key(self, provider_id: str, event_id: str, ttl_s: int) -> bool:
        """SET NX with expiry. True when the key was new (first sighting)."""
        key = _fmt(DEDUP_KEY, provider_id=provider_id, event_id=event_id)
        return bool(await self.client.set(key, "1", nx=True, ex=ttl_s))

    async def release_idempotency_key(self, provider_id: str, event_id: str) -> None:
        key = _fmt(DEDUP_KEY, provider_id=provider_id, event_id=event_id)
        await self.client.delete(key)

    # ── Per-match writer lease ──────────────────────────────────────────

    # Lua script: atomically delete only if we hold the lease
    _RELEASE_LEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    redis.call("del", KEYS[1])
    return 1
end
return 0
"""

    async def try_acquire_lease(self, match_id: str, token: str, ttl_ms: int) -> bool:
        """Attempt to take the match lease using SET NX PX."""
        key = _fmt(LEASE_KEY, match_id=match_id)
        return bool(await self.client.set(key, token, nx=True, px=ttl_ms))

    async def release_lease(self, match_id: str, token: str) -> bool:
        """Atomically release the lease only if we hold it."""
        key = _fmt(LEASE_KEY, match_id=match_id)
        result = await self.client.eval(self._RELEASE_LEASE_SCRIPT, 1, key, token)
        return bool(result)

    # ── Provider queues (Redis Streams, at-least-once) ──────────────────
    async def ensure_queue_group(self, provider_id: str) -> None:
        key = _fmt(QUEUE_STREAM_KEY, provider_id=provider_id)
        try:
            await self.client.xgroup_create(key, QUEUE_GROUP, id="0", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def enqueue(self, provider_id: str, data: str) -> str:
        key = _fmt(QUEUE_STREAM_KEY, provider_id=provider_id)
        return await self.client.xadd(key, {"data": data})

    async def read_queue(
        self, provider_id: str, consumer: str, count: int, block_ms: int, pending: bool = False
    ) -> list[tuple[str, dict[str, str]]]:
        """Read new messages, or this consumer's unacknowledged ones when ``pending``."""
        key = _fmt(QUEUE_STREAM_KEY, provider_id=provider_id)
        start = "0" if pending else ">"
        response = await self.client.xreadgroup(
            QUEUE_GROUP, consumer, {key: start}, count=count, block=None if pending or not block_ms else block_ms
        )
        if not response:
            return []
        _stream, messages = response[0]
        return list(messages)

    async def ack(self, provider_id: str, message_id: str) -> int:
        key = _fmt(QUEUE_STREAM_KEY, provider_id=provider_id)
        return await self.client.xack(key, QUEUE_GROUP, message_id)

    # ── Pub/Sub publish ─────────────────────────────────────────────────
    async def publish_match_update(self, match_id: str, payload: str) -> int:
        channel = _fmt(NOTIFY_CHANNEL, match_id=match_id)
        return await self.client.publish(channel, payload)

    async def publish_alert(self, kind: str, payload: str) -> int:
        channel = _fmt(ALERT_CHANNEL, kind=kind)
        return await self.client.publish(channel, payload)
