"""
Downstream notification interface.

Delivery is external; the engine only publishes match updates and operator
alerts. ``RedisNotifier`` publishes on pub/sub channels, ``InMemoryNotifier``
records messages for tests and single-process deployments.
"""
from __future__ import annotations

import json
from typing import Any, Protocol

from shared.utils.logging import get_logger
from shared.utils.metrics import ALERTS, NOTIFY_FAILURES
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)


class Notifier(Protocol):
    async def notify(self, match_id: str, payload: dict[str, Any]) -> None:
        ...

    async def alert(self, kind: str, payload: dict[str, Any]) -> None:
        ...


class InMemoryNotifier:
    def __init__(self) -> None:
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.alerts: list[tuple[str, dict[str, Any]]] = []

    async def notify(self, match_id: str, payload: dict[str, Any]) -> None:
        self.updates.append((match_id, payload))

    async def alert(self, kind: str, payload: dict[str, Any]) -> None:
        self.alerts.append((kind, payload))


class RedisNotifier:
    def __init__(self, redis: RedisManager) -> None:
        self._redis = redis

    async def notify(self, match_id: str, payload: dict[str, Any]) -> None:
        await self._redis.publish_match_update(match_id, json.dumps(payload, default=str))

    async def alert(self, kind: str, payload: dict[str, Any]) -> None:
        await self._redis.publish_alert(kind, json.dumps(payload, default=str))


async def raise_alert(notifier: Notifier, kind: str, **payload: Any) -> None:
    """
    Log, count and publish an operator alert.

    Alerts are raised after the ledger write they describe has committed, so a
    publish failure is logged and counted but never propagated: the caller's
    write must not be retried because the alert channel is down.
    """
    ALERTS.labels(kind=kind).inc()
    logger.warning("alert_raised", kind=kind, details=payload)
    try:
        await notifier.alert(kind, payload)
    except Exception as exc:
        NOTIFY_FAILURES.labels(channel="alert").inc()
        logger.error("alert_publish_failed", kind=kind, error=str(exc), exc_info=True)


async def publish_update(notifier: Notifier, match_id: str, payload: dict[str, Any]) -> bool:
    """Publish a committed match update; returns False when delivery failed."""
    try:
        await notifier.notify(match_id, payload)
    except Exception as exc:
        NOTIFY_FAILURES.labels(channel="update").inc()
        logger.error("update_publish_failed", match_id=match_id, type=payload.get("type"), error=str(exc), exc_info=True)
        return False
    return True
