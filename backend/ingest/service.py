"""
Ingestion service and ingest worker entrypoint.

``IngestionService.intake`` is the single path from a provider event to the
ledger: validate -> dedup -> tolerance pre-check -> trust quorum -> resolver
(under the match lease, with the tolerance check repeated there). Failures are
isolated per event.
"""
from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from shared.config import Settings, get_settings
from shared.errors import (
    ApprovalError,
    DuplicateEvent,
    InvalidEventError,
    InvalidTransitionError,
    QuarantineError,
)
from shared.models.domain import CanonicalEvent, PointDelta, QuarantineRecord, RawProviderEvent
from shared.models.enums import AuditKind, QuarantineReason, QuarantineStatus
from shared.utils.health_server import start_health_server
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import EVENTS_INGESTED, INTAKE_LATENCY, start_metrics_server

from corrections.audit import AuditLog, new_audit_record
from corrections.notifier import Notifier, raise_alert
from ingest.dedup import DedupWindow
from ingest.quarantine import QuarantineStore
from ingest.validation import validate_event
from ingest.verification import CrossVerifier, VerdictKind
from scoring.resolver import AcceptResult, ScoringResolver

logger = get_logger(__name__)


class IntakeOutcome(str, Enum):
    ACCEPTED = "accepted"
    CORROBORATED = "corroborated"


@dataclass
class IntakeResult:
    outcome: IntakeOutcome
    match_id: str
    event_id: str
    sequence_number: Optional[int] = None
    scored: bool = False
    deltas: list[PointDelta] = field(default_factory=list)
    corroborates_event_id: Optional[str] = None
    released_quarantine_id: Optional[str] = None

    @classmethod
    def accepted(cls, result: AcceptResult) -> "IntakeResult":
        return cls(
            outcome=IntakeOutcome.ACCEPTED,
            match_id=result.event.match_id,
            event_id=result.event.event_id,
            sequence_number=result.sequence_number,
            scored=result.scored,
            deltas=result.deltas,
        )


class IngestionService:
    def __init__(
        self,
        resolver: ScoringResolver,
        dedup: DedupWindow,
        verifier: CrossVerifier,
        quarantine: QuarantineStore,
        audit: AuditLog,
        notifier: Notifier,
        settings: Settings | None = None,
    ) -> None:
        self._resolver = resolver
        self._dedup = dedup
        self._verifier = verifier
        self._quarantine = quarantine
        self._audit = audit
        self._notifier = notifier
        self._settings = settings or get_settings()

    @property
    def quarantine(self) -> QuarantineStore:
        return self._quarantine

    async def intake(self, raw: RawProviderEvent | dict[str, Any]) -> IntakeResult:
        """
        Accept one provider event.

        Returns the assigned sequence number, or a corroboration record when
        the event confirms an occurrence already reported by another provider.

        Raises:
            InvalidEventError: malformed input; nothing is recorded.
            DuplicateEvent: idempotency key already seen; logged and counted.
            QuarantineError: held for review; carries the quarantine id.
        """
        start = time.perf_counter()
        provider = raw.get("provider_id", "unknown") if isinstance(raw, dict) else raw.provider_id
        try:
            event = validate_event(raw, self._settings, known_sports=self._resolver.registry.sports())
        except InvalidEventError:
            EVENTS_INGESTED.labels(provider=str(provider), outcome="invalid").inc()
            raise

        try:
            await self._dedup.claim(event.provider_id, event.event_id)
        except DuplicateEvent:
            EVENTS_INGESTED.labels(provider=event.provider_id, outcome="duplicate").inc()
            logger.info(
                "duplicate_event_dropped",
                provider=event.provider_id,
                event_id=event.event_id,
                match_id=event.match_id,
            )
            raise

        try:
            result = await self._verify_and_accept(event)
        except QuarantineError:
            EVENTS_INGESTED.labels(provider=event.provider_id, outcome="quarantined").inc()
            raise
        except DuplicateEvent:
            # Already in the ledger; the dedup claim stays.
            EVENTS_INGESTED.labels(provider=event.provider_id, outcome="duplicate").inc()
            logger.info(
                "duplicate_event_dropped",
                provider=event.provider_id,
                event_id=event.event_id,
                match_id=event.match_id,
                layer="ledger",
            )
            raise
        except Exception:
            await self._dedup.release(event.provider_id, event.event_id)
            EVENTS_INGESTED.labels(provider=event.provider_id, outcome="failed").inc()
            raise
        EVENTS_INGESTED.labels(provider=event.provider_id, outcome=result.outcome.value).inc()
        INTAKE_LATENCY.labels(provider=event.provider_id).observe(time.perf_counter() - start)
        return result

    async def _verify_and_accept(self, event: CanonicalEvent) -> IntakeResult:
        state = await self._resolver.state(event.match_id)
        reason = self._verifier.check_tolerance(state, event)
        if reason is not None:
            raise await self._hold(event, reason)

        verdict = await self._verifier.verify(event)
        if verdict.kind == VerdictKind.CORROBORATION:
            result = IntakeResult(
                outcome=IntakeOutcome.CORROBORATED,
                match_id=event.match_id,
                event_id=event.event_id,
                corroborates_event_id=verdict.occurrence.event.event_id,
            )
            if verdict.release_quarantine_id:
                await self._release(verdict.release_quarantine_id, verdict.providers, event)
                result.released_quarantine_id = verdict.release_quarantine_id
            return result

        if verdict.kind == VerdictKind.QUARANTINE:
            exc = await self._hold(event, verdict.reason or QuarantineReason.UNCORROBORATED, verdict.providers)
            self._verifier.mark_quarantined(verdict.occurrence, exc.quarantine_id or "")
            raise exc

        try:
            return IntakeResult.accepted(await self._accept(event))
        except DuplicateEvent:
            raise
        except Exception:
            self._verifier.forget(verdict.occurrence)
            raise

    async def _accept(self, event: CanonicalEvent, bypass_checks: bool = False) -> AcceptResult:
        held: list[QuarantineReason] = []

        def guard(state, candidate: CanonicalEvent) -> None:
            if bypass_checks:
                return
            reason = self._verifier.check_tolerance(state, candidate)
            if reason is not None:
                held.append(reason)
                raise QuarantineError(reason.value)

        try:
            result = await self._resolver.accept_event(event, guard=guard)
        except QuarantineError:
            if not held:
                raise
            raise await self._hold(event, held[0]) from None
        except InvalidTransitionError:
            if bypass_checks:
                raise
            raise await self._hold(event, QuarantineReason.ILLEGAL_TRANSITION) from None
        logger.info(
            "event_accepted",
            match_id=event.match_id,
            event_id=event.event_id,
            provider=event.provider_id,
            sequence_number=result.sequence_number,
            deltas=len(result.deltas),
            scored=result.scored,
        )
        return result

    async def _hold(
        self, event: CanonicalEvent, reason: QuarantineReason, providers: Optional[list[str]] = None
    ) -> QuarantineError:
        record = await self._quarantine.hold(event, reason, providers)
        await self._audit.record(new_audit_record(
            AuditKind.QUARANTINE_HELD,
            match_id=event.match_id,
            subject_id=record.quarantine_id,
            actor="system",
            reason=reason.value,
            details={"event_id": event.event_id, "provider_id": event.provider_id},
        ))
        logger.warning(
            "event_quarantined",
            match_id=event.match_id,
            event_id=event.event_id,
            provider=event.provider_id,
            reason=reason.value,
            quarantine_id=record.quarantine_id,
        )
        await raise_alert(
            self._notifier,
            "event_quarantined",
            match_id=event.match_id,
            event_id=event.event_id,
            reason=reason.value,
            quarantine_id=record.quarantine_id,
        )
        return QuarantineError(reason.value, record.quarantine_id)

    # ── Operator decisions ──────────────────────────────────────────────

    async def approve_quarantined(self, quarantine_id: str, operator: str, note: str = "") -> IntakeResult:
        """Re-submit a held event through sequencing, skipping trust and tolerance checks."""
        record = await self._quarantine.get(quarantine_id)
        self._ensure_held(record)
        result = await self._accept(record.event, bypass_checks=True)
        await self._quarantine.decide(quarantine_id, QuarantineStatus.APPROVED, operator, note)
        self._verifier.mark_released(quarantine_id)
        await self._audit.record(new_audit_record(
            AuditKind.QUARANTINE_APPROVED,
            match_id=record.event.match_id,
            subject_id=quarantine_id,
            actor=operator,
            reason=note,
            details={"event_id": record.event.event_id, "sequence_number": result.sequence_number},
        ))
        return IntakeResult.accepted(result)

    async def reject_quarantined(self, quarantine_id: str, operator: str, note: str = "") -> QuarantineRecord:
        record = await self._quarantine.decide(quarantine_id, QuarantineStatus.REJECTED, operator, note)
        await self._audit.record(new_audit_record(
            AuditKind.QUARANTINE_REJECTED,
            match_id=record.event.match_id,
            subject_id=quarantine_id,
            actor=operator,
            reason=note,
            details={"event_id": record.event.event_id},
        ))
        return record

    async def _release(self, quarantine_id: str, providers: list[str], corroborating: CanonicalEvent) -> None:
        record = await self._quarantine.get(quarantine_id)
        self._ensure_held(record)
        result = await self._accept(record.event, bypass_checks=True)
        await self._quarantine.decide(
            quarantine_id,
            QuarantineStatus.CORROBORATED,
            f"provider:{corroborating.provider_id}",
            providers=providers,
        )
        await self._audit.record(new_audit_record(
            AuditKind.QUARANTINE_CORROBORATED,
            match_id=record.event.match_id,
            subject_id=quarantine_id,
            actor=f"provider:{corroborating.provider_id}",
            reason="corroborated",
            details={
                "event_id": record.event.event_id,
                "corroborating_event_id": corroborating.event_id,
                "providers": providers,
                "sequence_number": result.sequence_number,
            },
        ))

    @staticmethod
    def _ensure_held(record: QuarantineRecord) -> None:
        if record.status != QuarantineStatus.HELD:
            raise ApprovalError(f"quarantined event {record.quarantine_id} already {record.status.value}")


# ── Worker entrypoint ───────────────────────────────────────────────────


async def run_ingest_service(settings: Settings) -> None:
    from shared.bootstrap import build_context
    from ingest.worker import ProviderIngestWorker

    ctx = await build_context(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    providers = sorted(settings.provider_trust)
    workers = [ProviderIngestWorker.from_context(ctx, provider_id) for provider_id in providers]
    start_health_server(
        "ingest", settings.ingest_health_port, lambda: {w.provider_id: w.breaker.stats for w in workers}
    )
    logger.info("ingest_service_started", providers=providers)
    try:
        await asyncio.gather(*(w.run(stop) for w in workers))
    finally:
        await ctx.close()
        logger.info("ingest_service_stopped")


def main() -> None:
    settings = get_settings()
    setup_logging("ingest")
    if settings.metrics_enabled:
        start_metrics_server()
    asyncio.run(run_ingest_service(settings))


if __name__ == "__main__":
    main()
