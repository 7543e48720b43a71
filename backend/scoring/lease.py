"""
Per-match single-writer leases.

Every ledger write for a match happens while holding its lease. Leases are
re-entrant within one task (a correction holding the lease can call resolver
operations that take it again) and are released on every exit path.
"""
from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import AsyncIterator, cast

from shared.config import Settings, get_settings
from shared.errors import LeaseTimeoutError
from shared.utils.logging import get_logger
from shared.utils.metrics import LEASE_WAIT, track_latency
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)

_held: ContextVar[frozenset[str]] = ContextVar("held_match_leases", default=frozenset())


class MatchLeaseManager(ABC):
    def __init__(self, timeout_s: float) -> None:
        self.timeout_s = timeout_s

    @abstractmethod
    async def _acquire(self, match_id: str, timeout_s: float) -> object:
        """Block until acquired; return a release token or raise LeaseTimeoutError."""

    @abstractmethod
    async def _release(self, match_id: str, token: object) -> None:
        ...

    def is_held(self, match_id: str) -> bool:
        """True when the current task already holds the lease."""
        return match_id in _held.get()

    @asynccontextmanager
    async def hold(self, match_id: str, timeout_s: float | None = None) -> AsyncIterator[None]:
        if self.is_held(match_id):
            yield
            return
        with track_latency(LEASE_WAIT):
            token = await self._acquire(match_id, self.timeout_s if timeout_s is None else timeout_s)
        reset = _held.set(_held.get() | {match_id})
        try:
            yield
        finally:
            _held.reset(reset)
            await self._release(match_id, token)


class LocalLeaseManager(MatchLeaseManager):
    """One asyncio.Lock per match, for a single process."""

    def __init__(self, timeout_s: float = 5.0) -> None:
        super().__init__(timeout_s)
        self._locks: dict[str, asyncio.Lock] = {}

    async def _acquire(self, match_id: str, timeout_s: float) -> object:
        lock = self._locks.setdefault(match_id, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout_s)
        except asyncio.TimeoutError:
            logger.warning("lease_timeout", match_id=match_id, timeout_s=timeout_s)
            raise LeaseTimeoutError(match_id, timeout_s) from None
        return lock

    async def _release(self, match_id: str, token: object) -> None:
        cast(asyncio.Lock, token).release()


class RedisLeaseManager(MatchLeaseManager):
    """
    Cross-process lease: SET NX PX with a random token, released with an
    atomic compare-and-delete so an expired holder never frees a newer lease.
    """

    POLL_INTERVAL_S = 0.05

    def __init__(self, redis: RedisManager, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        super().__init__(settings.lease_timeout_s)
        self._redis = redis
        self._ttl_ms = settings.lease_ttl_s * 1000
        self._owner = settings.instance_id or uuid.uuid4().hex[:8]

    async def _acquire(self, match_id: str, timeout_s: float) -> object:
        token = f"{self._owner}:{uuid.uuid4().hex}"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        while True:
            if await self._redis.try_acquire_lease(match_id, token, self._ttl_ms):
                return token
            if loop.time() >= deadline:
                logger.warning("lease_timeout", match_id=match_id, timeout_s=timeout_s)
                raise LeaseTimeoutError(match_id, timeout_s)
            await asyncio.sleep(self.POLL_INTERVAL_S)

    async def _release(self, match_id: str, token: object) -> None:
        released = await self._redis.release_lease(match_id, str(token))
        if not released:
            logger.warning("lease_lost_before_release", match_id=match_id)
