"""
Durable at-least-once provider queues.

A message stays pending until it is acknowledged. Workers acknowledge only
after the ledger append succeeded or the event reached a terminal outcome
(duplicate, invalid, quarantined); anything else is redelivered.
"""
from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any

from shared.utils.logging import get_logger
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)


@dataclass(frozen=True)
class QueueMessage:
    message_id: str
    payload: dict[str, Any]


class ProviderQueue(ABC):
    @abstractmethod
    async def put(self, provider_id: str, payload: dict[str, Any]) -> str:
        ...

    @abstractmethod
    async def fetch(self, provider_id: str, consumer: str, count: int, block_ms: int = 0) -> list[QueueMessage]:
        """Unacknowledged messages for this consumer first, then new ones."""

    @abstractmethod
    async def ack(self, provider_id: str, message_id: str) -> None:
        ...


class InMemoryProviderQueue(ProviderQueue):
    def __init__(self) -> None:
        self._ready: dict[str, deque[QueueMessage]] = {}
        self._pending: dict[str, dict[str, QueueMessage]] = {}
        self._counter = 0

    async def put(self, provider_id: str, payload: dict[str, Any]) -> str:
        self._counter += 1
        message = QueueMessage(message_id=f"{self._counter}-0", payload=payload)
        self._ready.setdefault(provider_id, deque()).append(message)
        return message.message_id

    async def fetch(self, provider_id: str, consumer: str, count: int, block_ms: int = 0) -> list[QueueMessage]:
        pending = self._pending.setdefault(provider_id, {})
        batch = list(pending.values())[:count]
        ready = self._ready.setdefault(provider_id, deque())
        while ready and len(batch) < count:
            message = ready.popleft()
            pending[message.message_id] = message
            batch.append(message)
        return batch

    async def ack(self, provider_id: str, message_id: str) -> None:
        self._pending.get(provider_id, {}).pop(message_id, None)

    def depth(self, provider_id: str) -> int:
        """Ready plus unacknowledged messages."""
        return len(self._ready.get(provider_id, ())) + len(self._pending.get(provider_id, {}))


class RedisProviderQueue(ProviderQueue):
    """One Redis stream per provider, consumed through a consumer group."""

    def __init__(self, redis: RedisManager) -> None:
        self._redis = redis
        self._groups: set[str] = set()

    async def _ensure(self, provider_id: str) -> None:
        if provider_id not in self._groups:
            await self._redis.ensure_queue_group(provider_id)
            self._groups.add(provider_id)

    async def put(self, provider_id: str, payload: dict[str, Any]) -> str:
        await self._ensure(provider_id)
        return await self._redis.enqueue(provider_id, json.dumps(payload, default=str))

    async def fetch(self, provider_id: str, consumer: str, count: int, block_ms: int = 0) -> list[QueueMessage]:
        await self._ensure(provider_id)
        raw = await self._redis.read_queue(provider_id, consumer, count, block_ms, pending=True)
        if not raw:
            raw = await self._redis.read_queue(provider_id, consumer, count, block_ms)
        messages: list[QueueMessage] = []
        for message_id, fields in raw:
            try:
                payload = json.loads(fields.get("data", "{}"))
            except json.JSONDecodeError as exc:
                logger.warning("queue_message_undecodable", provider=provider_id, message_id=message_id, error=str(exc))
                payload = {}
            messages.append(QueueMessage(message_id=message_id, payload=payload))
        return messages

    async def ack(self, provider_id: str, message_id: str) -> None:
        await self._redis.ack(provider_id, message_id)
