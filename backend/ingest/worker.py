"""
Per-provider ingest worker.

Drains one provider queue through ``IngestionService.intake`` behind that
provider's circuit breaker. A provider that keeps sending malformed events or
keeps failing opens its circuit; its queue is then left untouched until the
cooldown elapses, while other providers keep flowing.
"""
from __future__ import annotations

import asyncio
from collections import Counter
from typing import TYPE_CHECKING, Optional

from shared.config import Settings, get_settings
from shared.errors import DuplicateEvent, InvalidEventError, QuarantineError
from shared.utils.circuit_breaker import CircuitBreaker, CircuitBreakerOpen, CircuitState
from shared.utils.logging import get_logger, log_context

from ingest.queue import ProviderQueue, QueueMessage
from ingest.service import IngestionService

if TYPE_CHECKING:
    from shared.bootstrap import EngineContext

logger = get_logger(__name__)


class ProviderIngestWorker:
    def __init__(
        self,
        provider_id: str,
        queue: ProviderQueue,
        ingestion: IngestionService,
        breaker: Optional[CircuitBreaker] = None,
        consumer: str = "worker-1",
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.provider_id = provider_id
        self._queue = queue
        self._ingestion = ingestion
        self._breaker = breaker or CircuitBreaker.for_provider(provider_id, self._settings)
        self._consumer = consumer

    @classmethod
    def from_context(cls, ctx: "EngineContext", provider_id: str) -> "ProviderIngestWorker":
        consumer = f"{ctx.settings.instance_id or 'ingest'}:{provider_id}"
        return cls(provider_id, ctx.queue, ctx.ingestion, consumer=consumer, settings=ctx.settings)

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def _intake(self, message: QueueMessage) -> str:
        """Terminal per-event outcomes are returned; breaker-worthy failures raise."""
        try:
            result = await self._ingestion.intake(message.payload)
        except DuplicateEvent:
            return "duplicate"
        except QuarantineError:
            return "quarantined"
        return result.outcome.value

    async def drain_once(self, block_ms: int = 0) -> Counter:
        """
        Process one batch. Returns outcome counts.

        Messages are acknowledged once the event reached a terminal outcome.
        Unexpected failures leave the message pending so it is redelivered.
        """
        outcomes: Counter = Counter()
        if self._breaker.state == CircuitState.OPEN:
            outcomes["skipped"] += 1
            return outcomes

        batch = await self._queue.fetch(
            self.provider_id, self._consumer, self._settings.queue_batch_size, block_ms
        )
        for message in batch:
            try:
                with log_context(provider=self.provider_id, message_id=message.message_id):
                    outcome = await self._breaker.call(self._intake, message)
            except CircuitBreakerOpen as exc:
                logger.warning(
                    "provider_circuit_open",
                    provider=self.provider_id,
                    retry_after=round(exc.retry_after, 1),
                )
                outcomes["deferred"] += len(batch) - sum(outcomes.values())
                break
            except InvalidEventError as exc:
                logger.warning(
                    "invalid_event_dropped",
                    provider=self.provider_id,
                    message_id=message.message_id,
                    field=exc.field,
                    error=str(exc),
                )
                outcome = "invalid"
            except Exception as exc:
                logger.error(
                    "ingest_message_failed",
                    provider=self.provider_id,
                    message_id=message.message_id,
                    error=str(exc),
                    exc_info=True,
                )
                outcomes["failed"] += 1
                continue
            await self._queue.ack(self.provider_id, message.message_id)
            outcomes[outcome] += 1
        return outcomes

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("provider_worker_started", provider=self.provider_id, consumer=self._consumer)
        while not stop.is_set():
            try:
                outcomes = await self.drain_once(block_ms=self._settings.queue_block_ms)
                if outcomes.get("skipped"):
                    await asyncio.sleep(min(self._breaker.retry_after, 5.0) or 0.5)
                elif outcomes:
                    logger.debug("provider_batch_done", provider=self.provider_id, **outcomes)
                else:
                    await asyncio.sleep(0.05)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("provider_worker_error", provider=self.provider_id, error=str(exc), exc_info=True)
                await asyncio.sleep(2.0)
        logger.info("provider_worker_stopped", provider=self.provider_id)
