"""
Cross-verification of provider events.

Two independent checks run before an event is sequenced:

* Tolerance: the claimed minute/timestamp must be consistent with events
  already accepted for the match.
* Trust quorum: events from high-trust providers pass. A low-trust event needs
  ``corroboration_quorum`` distinct providers reporting the same occurrence
  (match, player, event type, minute within ``corroboration_window_minutes``).
  Intake waits up to ``corroboration_timeout_s``; without a quorum the event is
  quarantined, and a corroborating report that arrives later releases it.

A report that matches an occurrence another provider already reported is a
corroboration of that occurrence, never a second scoring event.
"""
from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from shared.config import Settings, get_settings
from shared.models.domain import CanonicalEvent, MatchProjection
from shared.models.enums import MatchStatus, QuarantineReason, TrustLevel
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class VerdictKind(str, Enum):
    ACCEPT = "accept"
    CORROBORATION = "corroboration"
    QUARANTINE = "quarantine"


class OccurrenceState(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    QUARANTINED = "quarantined"


@dataclass
class Occurrence:
    occurrence_id: int
    event: CanonicalEvent
    providers: set[str]
    state: OccurrenceState
    seen_at: float
    quarantine_id: Optional[str] = None
    waiter: Optional[asyncio.Future] = None


@dataclass
class Verdict:
    kind: VerdictKind
    occurrence: Occurrence
    reason: Optional[QuarantineReason] = None
    # Set when this report completes the quorum of a quarantined occurrence.
    release_quarantine_id: Optional[str] = None
    providers: list[str] = field(default_factory=list)


class CrossVerifier:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock or time.monotonic
        self._occurrences: dict[tuple[str, str, str], list[Occurrence]] = {}
        self._ids = itertools.count(1)

    def trust_of(self, provider_id: str) -> TrustLevel:
        try:
            return TrustLevel(self._settings.trust_of(provider_id))
        except ValueError:
            return TrustLevel.LOW

    # ── Tolerance ───────────────────────────────────────────────────────

    def check_tolerance(
        self, state: MatchProjection, event: CanonicalEvent
    ) -> Optional[QuarantineReason]:
        """Reason to quarantine, or None. Runs against the current match fold."""
        if state.status == MatchStatus.RESOLVED:
            return QuarantineReason.MATCH_CLOSED
        s = self._settings
        if state.max_minute >= 0 and state.max_minute - event.minute > s.minute_tolerance:
            return QuarantineReason.OUT_OF_ORDER
        if state.latest_event_at is not None:
            gap = (event.timestamp - state.latest_event_at).total_seconds()
            if gap < -s.timestamp_tolerance_s or gap > s.max_forward_gap_s:
                return QuarantineReason.TIMESTAMP_GAP
        return None

    # ── Trust quorum ────────────────────────────────────────────────────

    def _prune(self, now: float) -> None:
        horizon = self._settings.dedup_window_s
        for key in list(self._occurrences):
            kept = [o for o in self._occurrences[key] if now - o.seen_at < horizon]
            if kept:
                self._occurrences[key] = kept
            else:
                del self._occurrences[key]

    def _find(self, event: CanonicalEvent) -> Optional[Occurrence]:
        window = self._settings.corroboration_window_minutes
        for occurrence in self._occurrences.get(event.occurrence_key, []):
            if event.provider_id in occurrence.providers:
                continue
            if abs(occurrence.event.minute - event.minute) <= window:
                return occurrence
        return None

    def _register(self, event: CanonicalEvent, state: OccurrenceState, now: float) -> Occurrence:
        occurrence = Occurrence(
            occurrence_id=next(self._ids),
            event=event,
            providers={event.provider_id},
            state=state,
            seen_at=now,
        )
        self._occurrences.setdefault(event.occurrence_key, []).append(occurrence)
        return occurrence

    async def verify(self, event: CanonicalEvent) -> Verdict:
        now = self._clock()
        self._prune(now)
        quorum = self._settings.corroboration_quorum

        existing = self._find(event)
        if existing is not None:
            existing.providers.add(event.provider_id)
            verdict = Verdict(
                kind=VerdictKind.CORROBORATION,
                occurrence=existing,
                providers=sorted(existing.providers),
            )
            reached = len(existing.providers) >= quorum or self.trust_of(event.provider_id) == TrustLevel.HIGH
            if reached and existing.state == OccurrenceState.PENDING:
                existing.state = OccurrenceState.ACCEPTED
                if existing.waiter is not None and not existing.waiter.done():
                    existing.waiter.set_result(True)
            elif reached and existing.state == OccurrenceState.QUARANTINED:
                existing.state = OccurrenceState.ACCEPTED
                verdict.release_quarantine_id = existing.quarantine_id
            logger.info(
                "event_corroborated",
                match_id=event.match_id,
                event_id=event.event_id,
                provider=event.provider_id,
                corroborates=existing.event.event_id,
                providers=verdict.providers,
            )
            return verdict

        if self.trust_of(event.provider_id) == TrustLevel.HIGH or quorum <= 1:
            occurrence = self._register(event, OccurrenceState.ACCEPTED, now)
            return Verdict(kind=VerdictKind.ACCEPT, occurrence=occurrence, providers=[event.provider_id])

        occurrence = self._register(event, OccurrenceState.PENDING, now)
        occurrence.waiter = asyncio.get_running_loop().create_future()
        try:
            await asyncio.wait_for(
                asyncio.shield(occurrence.waiter), timeout=self._settings.corroboration_timeout_s
            )
        except asyncio.CancelledError:
            self.forget(occurrence)
            raise
        except asyncio.TimeoutError:
            if occurrence.state == OccurrenceState.PENDING:
                occurrence.state = OccurrenceState.QUARANTINED
                return Verdict(
                    kind=VerdictKind.QUARANTINE,
                    occurrence=occurrence,
                    reason=QuarantineReason.UNCORROBORATED,
                    providers=sorted(occurrence.providers),
                )
        finally:
            occurrence.waiter = None
        return Verdict(kind=VerdictKind.ACCEPT, occurrence=occurrence, providers=sorted(occurrence.providers))

    def mark_quarantined(self, occurrence: Occurrence, quarantine_id: str) -> None:
        occurrence.state = OccurrenceState.QUARANTINED
        occurrence.quarantine_id = quarantine_id

    def forget(self, occurrence: Occurrence) -> None:
        """Drop an occurrence whose event was refused downstream."""
        bucket = self._occurrences.get(occurrence.event.occurrence_key, [])
        if occurrence in bucket:
            bucket.remove(occurrence)

    def mark_released(self, quarantine_id: str) -> None:
        """An operator approved a quarantined occurrence; later reports corroborate it."""
        for bucket in self._occurrences.values():
            for occurrence in bucket:
                if occurrence.quarantine_id == quarantine_id:
                    occurrence.state = OccurrenceState.ACCEPTED
                    return
