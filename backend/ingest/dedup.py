"""
Idempotency window keyed by (provider_id, event_id).

Keys are retained for ``dedup_window_s`` seconds and, in process, for at most
``dedup_max_keys`` entries (oldest evicted first).
"""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Callable, Optional

from shared.config import Settings, get_settings
from shared.errors import DuplicateEvent
from shared.utils.redis_manager import RedisManager


class DedupWindow(ABC):
    @abstractmethod
    async def claim(self, provider_id: str, event_id: str) -> None:
        """Record first sighting; raise ``DuplicateEvent`` if already seen."""

    @abstractmethod
    async def release(self, provider_id: str, event_id: str) -> None:
        """Forget a key whose processing failed transiently, so a retry is accepted."""


class InMemoryDedupWindow(DedupWindow):
    def __init__(
        self,
        ttl_s: float,
        max_keys: int,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._ttl_s = ttl_s
        self._max_keys = max_keys
        self._clock = clock or time.monotonic
        self._seen: OrderedDict[tuple[str, str], float] = OrderedDict()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "InMemoryDedupWindow":
        settings = settings or get_settings()
        return cls(settings.dedup_window_s, settings.dedup_max_keys)

    def __len__(self) -> int:
        return len(self._seen)

    def _evict(self, now: float) -> None:
        while self._seen:
            key, seen_at = next(iter(self._seen.items()))
            if now - seen_at < self._ttl_s and len(self._seen) <= self._max_keys:
                break
            self._seen.popitem(last=False)

    async def claim(self, provider_id: str, event_id: str) -> None:
        now = self._clock()
        self._evict(now)
        key = (provider_id, event_id)
        if key in self._seen:
            raise DuplicateEvent(provider_id, event_id)
        self._seen[key] = now
        self._evict(now)

    async def release(self, provider_id: str, event_id: str) -> None:
        self._seen.pop((provider_id, event_id), None)


class RedisDedupWindow(DedupWindow):
    """Shared window across ingest workers; expiry is handled by Redis."""

    def __init__(self, redis: RedisManager, settings: Settings | None = None) -> None:
        self._redis = redis
        self._ttl_s = (settings or get_settings()).dedup_window_s

    async def claim(self, provider_id: str, event_id: str) -> None:
        if not await self._redis.claim_idempotency_key(provider_id, event_id, self._ttl_s):
            raise DuplicateEvent(provider_id, event_id)

    async def release(self, provider_id: str, event_id: str) -> None:
        await self._redis.release_idempotency_key(provider_id, event_id)
