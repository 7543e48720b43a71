"""Holding area for events that failed trust or ordering checks."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from shared.errors import ApprovalError, QuarantineNotFoundError
from shared.models.domain import CanonicalEvent, QuarantineRecord
from shared.models.enums import QuarantineReason, QuarantineStatus
from shared.utils.metrics import EVENTS_QUARANTINED, QUARANTINE_OPEN


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuarantineStore:
    """In-process quarantine; every decision is also written to the audit log by the caller."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._records: dict[str, QuarantineRecord] = {}
        self._clock = clock or _utcnow

    async def hold(
        self,
        event: CanonicalEvent,
        reason: QuarantineReason,
        providers: Optional[list[str]] = None,
    ) -> QuarantineRecord:
        record = QuarantineRecord(
            quarantine_id=f"q_{uuid.uuid4().hex[:16]}",
            event=event,
            reason=reason,
            held_at=self._clock(),
            corroborating_providers=providers or [event.provider_id],
        )
        self._records[record.quarantine_id] = record
        EVENTS_QUARANTINED.labels(reason=reason.value).inc()
        QUARANTINE_OPEN.inc()
        return record

    async def get(self, quarantine_id: str) -> QuarantineRecord:
        try:
            return self._records[quarantine_id]
        except KeyError:
            raise QuarantineNotFoundError(f"no quarantined event {quarantine_id}") from None

    async def list(
        self, match_id: Optional[str] = None, status: Optional[QuarantineStatus] = None
    ) -> list[QuarantineRecord]:
        records = [
            r for r in self._records.values()
            if (match_id is None or r.event.match_id == match_id)
            and (status is None or r.status == status)
        ]
        return sorted(records, key=lambda r: (r.held_at, r.quarantine_id))

    async def open_for_match(self, match_id: str) -> list[str]:
        """Dispute check: held events block match resolution."""
        held = await self.list(match_id=match_id, status=QuarantineStatus.HELD)
        return [f"quarantine:{r.quarantine_id}" for r in held]

    async def decide(
        self,
        quarantine_id: str,
        status: QuarantineStatus,
        decided_by: str,
        note: str = "",
        providers: Optional[list[str]] = None,
    ) -> QuarantineRecord:
        record = await self.get(quarantine_id)
        if record.status != QuarantineStatus.HELD:
            raise ApprovalError(f"quarantined event {quarantine_id} already {record.status.value}")
        record.status = status
        record.decided_by = decided_by
        record.decided_at = self._clock()
        record.note = note
        if providers:
            record.corroborating_providers = providers
        QUARANTINE_OPEN.dec()
        return record
