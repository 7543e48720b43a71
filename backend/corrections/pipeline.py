"""
Correction pipeline.

A correction never edits history. Submitting records the request; simulating
runs the compensations against a shadow copy of the ledger and reports the
impact; once the approval chain is complete the compensating deltas are
appended under the match lease, projections are rebuilt, an audit record is
written and downstream consumers are notified. Rollback appends the inverse
of what was applied.
"""
from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional, Sequence

from shared.config import Settings, get_settings
from shared.errors import (
    CorrectionConflict,
    CorrectionNotFoundError,
    InvalidEventError,
    InvalidTransitionError,
    LeaseTimeoutError,
    MatchNotFoundError,
)
from shared.models.domain import (
    Approval,
    Correction,
    CorrectionRequest,
    ImpactReport,
    LedgerEntry,
    MatchProjection,
    PointDelta,
    quantize_points,
)
from shared.models.enums import (
    LIFECYCLE_EVENT_TYPES,
    ApproverRole,
    AuditKind,
    ChangeKind,
    CorrectionStatus,
    EntryKind,
)
from shared.utils.logging import get_logger
from shared.utils.metrics import CORRECTIONS

from corrections.approval import ApprovalPolicy
from corrections.audit import AuditLog, new_audit_record
from corrections.notifier import Notifier, publish_update, raise_alert
from projections.builder import ProjectionBuilder
from projections.fold import fold_match
from scoring.engine import MatchContext
from scoring.ledger import InMemoryLedgerStore, chain_entries, verify_chain
from scoring.resolver import ScoringResolver

logger = get_logger(__name__)

OPEN_STATUSES = frozenset({CorrectionStatus.PENDING, CorrectionStatus.SIMULATED, CorrectionStatus.APPROVED})


def summarize(projection: MatchProjection) -> dict[str, Any]:
    """Compact before/after state for audit records."""
    return {
        "ledger_version": projection.ledger_version,
        "total_points": str(projection.total_points),
        "players": {pid: str(p.total_points) for pid, p in sorted(projection.players.items())},
        "voided_event_ids": list(projection.voided_event_ids),
    }


class _EventHistory:
    """Where a target event stands in the ledger: its entry, net points and attribution."""

    def __init__(self, entries: Sequence[LedgerEntry], event_id: str) -> None:
        self.entry: Optional[LedgerEntry] = None
        self.net: dict[tuple[str, str], Decimal] = defaultdict(lambda: Decimal("0.00"))
        self.last_sequence: dict[tuple[str, str], int] = {}
        self.player_id: Optional[str] = None
        self.voided = False
        for entry in entries:
            if entry.kind == EntryKind.EVENT_ACCEPTED and self.entry is None:
                if entry.payload["event"]["event_id"] == event_id:
                    self.entry = entry
                    self.player_id = entry.event().player_id
            elif entry.kind in (EntryKind.POINT_DELTA, EntryKind.COMPENSATING_DELTA):
                delta = entry.delta()
                if delta.event_id != event_id:
                    continue
                key = (delta.player_id, delta.rule_id)
                self.net[key] = quantize_points(self.net[key] + delta.points)
                self.last_sequence[key] = entry.ledger_sequence
                if delta.voids_event_id == event_id:
                    self.voided = True
                if delta.restores_event_id == event_id:
                    self.voided = False
                    self.player_id = delta.player_id
        if self.entry is None:
            raise InvalidEventError("target_event_id", f"event {event_id} is not in the ledger")

    def live(self) -> list[tuple[tuple[str, str], Decimal]]:
        return sorted((k, v) for k, v in self.net.items() if v != 0)


class CorrectionPipeline:
    def __init__(
        self,
        resolver: ScoringResolver,
        builder: ProjectionBuilder,
        audit: AuditLog,
        notifier: Notifier,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._resolver = resolver
        self._builder = builder
        self._audit = audit
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._policy = ApprovalPolicy(self._settings.correction_admin_threshold)
        self._corrections: dict[str, Correction] = {}
        self._applying: set[str] = set()

    # ── Lookup ──────────────────────────────────────────────────────────

    def get(self, correction_id: str) -> Correction:
        try:
            return self._corrections[correction_id]
        except KeyError:
            raise CorrectionNotFoundError(f"no correction {correction_id}") from None

    def list(self, match_id: Optional[str] = None, status: Optional[CorrectionStatus] = None) -> list[Correction]:
        return [
            c for c in self._corrections.values()
            if (match_id is None or c.match_id == match_id) and (status is None or c.status == status)
        ]

    async def pending_for_match(self, match_id: str) -> list[str]:
        """Dispute check: unapplied corrections block match resolution."""
        return [f"correction:{c.correction_id}" for c in self.list(match_id) if c.status in OPEN_STATUSES]

    # ── Submit / simulate ───────────────────────────────────────────────

    async def _entries(self, match_id: str) -> list[LedgerEntry]:
        entries = await self._resolver.ledger.read(match_id)
        if not entries:
            raise MatchNotFoundError(f"no ledger for match {match_id}")
        verify_chain(match_id, entries)
        return entries

    async def submit(self, request: CorrectionRequest) -> Correction:
        entries = await self._entries(request.match_id)
        _EventHistory(entries, request.target_event_id)
        correction = Correction(
            correction_id=f"c_{uuid.uuid4().hex[:12]}",
            match_id=request.match_id,
            target_event_id=request.target_event_id,
            reason=request.reason,
            proposed_change=request.proposed_change,
            submitted_by=request.submitted_by,
            timestamp=self._clock(),
        )
        self._corrections[correction.correction_id] = correction
        CORRECTIONS.labels(status=CorrectionStatus.PENDING.value).inc()
        logger.info(
            "correction_submitted",
            correction_id=correction.correction_id,
            match_id=correction.match_id,
            target_event_id=correction.target_event_id,
            change=correction.proposed_change.kind.value,
            submitted_by=correction.submitted_by,
        )
        return correction

    def _compensations(self, correction: Correction, entries: Sequence[LedgerEntry]) -> list[PointDelta]:
        history = _EventHistory(entries, correction.target_event_id)
        event = history.entry.event()
        if event.event_type in LIFECYCLE_EVENT_TYPES:
            raise InvalidTransitionError(f"lifecycle event {event.event_id} cannot be corrected")
        if history.voided:
            raise InvalidTransitionError(f"event {event.event_id} is already voided")

        version = entries[0].match_info().ruleset_version
        change = correction.proposed_change
        cid = correction.correction_id

        def compensating(player_id: str, rule_id: str, points: Decimal, offsets: int, note: str, **marks: Any) -> PointDelta:
            return PointDelta(
                match_id=correction.match_id,
                player_id=player_id,
                event_id=event.event_id,
                event_type=event.event_type,
                rule_id=rule_id,
                points=quantize_points(points),
                explanation=f"{note} ({correction.reason})",
                applied_ruleset_version=version,
                compensates_sequence=offsets,
                correction_id=cid,
                **marks,
            )

        if change.kind == ChangeKind.ADJUST_POINTS:
            return [compensating(
                history.player_id,
                change.rule_id or "manual_adjustment",
                change.points,
                history.entry.ledger_sequence,
                f"adjust {event.event_type} by {quantize_points(change.points)}",
            )]

        if change.kind == ChangeKind.REASSIGN_PLAYER and change.new_player_id == history.player_id:
            raise InvalidTransitionError(f"event {event.event_id} is already attributed to {history.player_id}")

        deltas: list[PointDelta] = []
        for (player_id, rule_id), net in history.live():
            deltas.append(compensating(
                player_id, rule_id, -net, history.last_sequence[(player_id, rule_id)],
                f"void {event.event_type} {rule_id}",
            ))
        if not deltas:
            deltas.append(compensating(
                history.player_id, "void", Decimal("0"), history.entry.ledger_sequence,
                f"void unscored {event.event_type}",
            ))
        deltas[0] = deltas[0].model_copy(update={"voids_event_id": event.event_id})

        if change.kind == ChangeKind.REASSIGN_PLAYER:
            prior = fold_match(correction.match_id, entries, upto=history.entry.ledger_sequence - 1)
            moved = event.model_copy(update={"player_id": change.new_player_id})
            ruleset = self._resolver.registry.get(prior.sport_id, version)
            rescored = self._resolver.engine.evaluate(moved, MatchContext(prior), ruleset)
            restored = [
                compensating(
                    d.player_id, d.rule_id, d.points, history.entry.ledger_sequence,
                    f"reassign {event.event_type} to {change.new_player_id}: {d.explanation}",
                )
                for d in rescored
            ]
            if not restored:
                restored.append(compensating(
                    change.new_player_id, "reassign", Decimal("0"), history.entry.ledger_sequence,
                    f"reassign {event.event_type} to {change.new_player_id}",
                ))
            restored[0] = restored[0].model_copy(update={"restores_event_id": event.event_id})
            deltas.extend(restored)
        return deltas

    async def simulate(self, correction_id: str) -> ImpactReport:
        """Dry run against a shadow ledger. Nothing is written."""
        correction = self.get(correction_id)
        if correction.status not in (CorrectionStatus.PENDING, CorrectionStatus.SIMULATED):
            raise InvalidTransitionError(
                f"correction {correction_id} is {correction.status.value}, cannot simulate"
            )
        match_id = correction.match_id
        entries = await self._entries(match_id)
        deltas = self._compensations(correction, entries)

        shadow = InMemoryLedgerStore.from_entries(match_id, entries)
        head = entries[-1]
        drafts = [
            (EntryKind.COMPENSATING_DELTA, d.to_payload()) for d in deltas
        ]
        await shadow.append(
            match_id,
            chain_entries(match_id, head.ledger_sequence, head.entry_hash, drafts),
            expected_sequence=head.ledger_sequence,
        )
        before = fold_match(match_id, entries)
        after = fold_match(match_id, await shadow.read(match_id))

        player_deltas: dict[str, Decimal] = {}
        for player_id in sorted(set(before.players) | set(after.players)):
            was = before.players[player_id].total_points if player_id in before.players else Decimal("0.00")
            now = after.players[player_id].total_points if player_id in after.players else Decimal("0.00")
            if now != was:
                player_deltas[player_id] = quantize_points(now - was)

        impact = ImpactReport(
            ledger_version=head.ledger_sequence,
            before_total=before.total_points,
            after_total=after.total_points,
            player_deltas=player_deltas,
            compensations=[d.to_payload() for d in deltas],
        )
        correction.impact = impact
        correction.required_tiers = self._policy.required_tiers(impact)
        correction.status = CorrectionStatus.SIMULATED
        CORRECTIONS.labels(status=CorrectionStatus.SIMULATED.value).inc()
        logger.info(
            "correction_simulated",
            correction_id=correction_id,
            match_id=match_id,
            before_total=str(impact.before_total),
            after_total=str(impact.after_total),
            tiers=[t.value for t in correction.required_tiers],
        )
        return impact

    # ── Approve / reject ────────────────────────────────────────────────

    async def approve(
        self, correction_id: str, approver_id: str, role: ApproverRole, note: str = ""
    ) -> Correction:
        """Record one approval; the final one applies the correction."""
        correction = self.get(correction_id)
        if correction.status == CorrectionStatus.PENDING:
            await self.simulate(correction_id)
        if correction.status != CorrectionStatus.SIMULATED:
            raise InvalidTransitionError(
                f"correction {correction_id} is {correction.status.value}, cannot approve"
            )
        self._policy.check(correction, approver_id, role)
        correction.approver_chain.append(
            Approval(approver_id=approver_id, role=role, approved_at=self._clock(), note=note)
        )
        logger.info(
            "correction_approved",
            correction_id=correction_id,
            approver=approver_id,
            role=role.value,
            remaining=len(correction.required_tiers) - len(correction.approver_chain),
        )
        if not self._policy.is_satisfied(correction):
            return correction

        correction.status = CorrectionStatus.APPROVED
        CORRECTIONS.labels(status=CorrectionStatus.APPROVED.value).inc()
        try:
            before = await self._apply(correction)
        except Exception:
            # Nothing reached the ledger; the final approver retries once the match is free.
            correction.status = CorrectionStatus.SIMULATED
            correction.approver_chain.pop()
            raise
        approvers = [a.approver_id for a in correction.approver_chain]
        await self._after_commit(
            correction,
            before,
            AuditKind.CORRECTION_APPLIED,
            approvers[-1],
            correction.reason,
            {
                "target_event_id": correction.target_event_id,
                "change": correction.proposed_change.model_dump(mode="json"),
                "submitted_by": correction.submitted_by,
                "approvers": approvers,
                "ledger_sequences": correction.applied_sequences,
            },
        )
        return correction

    async def reject(self, correction_id: str, actor: str, reason: str) -> Correction:
        correction = self.get(correction_id)
        if correction.status not in OPEN_STATUSES:
            raise InvalidTransitionError(
                f"correction {correction_id} is {correction.status.value}, cannot reject"
            )
        correction.status = CorrectionStatus.REJECTED
        correction.rejection_reason = reason
        record = await self._audit.record(new_audit_record(
            AuditKind.CORRECTION_REJECTED,
            match_id=correction.match_id,
            subject_id=correction_id,
            actor=actor,
            reason=reason,
            details={"target_event_id": correction.target_event_id, "submitted_reason": correction.reason},
        ))
        correction.audit_id = record.audit_id
        CORRECTIONS.labels(status=CorrectionStatus.REJECTED.value).inc()
        return correction

    # ── Apply / rollback ────────────────────────────────────────────────

    async def _write(
        self,
        correction: Correction,
        build: Callable[[Sequence[LedgerEntry]], list[PointDelta]],
    ) -> tuple[MatchProjection, list[PointDelta]]:
        match_id = correction.match_id
        if match_id in self._applying:
            raise CorrectionConflict(f"another correction is being applied to match {match_id}")
        self._applying.add(match_id)
        try:
            async with self._resolver.lease(match_id):
                entries = await self._entries(match_id)
                deltas = build(entries)
                before = fold_match(match_id, entries)
                applied = await self._resolver.append_compensations(
                    match_id, deltas, review=f"correction:{correction.correction_id}"
                )
        except LeaseTimeoutError as exc:
            raise CorrectionConflict(f"match {match_id} is busy: {exc}") from exc
        finally:
            self._applying.discard(match_id)
        return before, applied

    async def _after_commit(
        self,
        correction: Correction,
        before: MatchProjection,
        kind: AuditKind,
        actor: str,
        reason: str,
        details: dict[str, Any],
    ) -> None:
        """
        Rebuild, audit and notify once compensations are in the ledger.

        The ledger append is the commit point; nothing here may undo or repeat
        it. Failures are logged and raised as operator alerts.
        """
        match_id = correction.match_id
        try:
            self._builder.invalidate(match_id)
            after = await self._builder.refresh(match_id)
        except Exception as exc:
            logger.error("correction_refresh_failed", correction_id=correction.correction_id, error=str(exc), exc_info=True)
            after = fold_match(match_id, await self._entries(match_id))

        try:
            record = await self._audit.record(new_audit_record(
                kind,
                match_id=match_id,
                subject_id=correction.correction_id,
                actor=actor,
                reason=reason,
                before_state=summarize(before),
                after_state=summarize(after),
                details=details,
            ))
        except Exception as exc:
            logger.error(
                "correction_audit_failed",
                correction_id=correction.correction_id,
                match_id=match_id,
                kind=kind.value,
                error=str(exc),
                exc_info=True,
            )
            await raise_alert(
                self._notifier,
                "correction_audit_failed",
                match_id=match_id,
                correction_id=correction.correction_id,
                audit_kind=kind.value,
                details=details,
            )
        else:
            correction.before_state = record.before_state
            correction.after_state = record.after_state
            correction.audit_id = record.audit_id

        delivered = await publish_update(self._notifier, match_id, {
            "type": kind.value,
            "correction_id": correction.correction_id,
            "ledger_version": after.ledger_version,
            "total_points": str(after.total_points),
        })
        if not delivered:
            await raise_alert(
                self._notifier,
                "correction_notify_failed",
                match_id=match_id,
                correction_id=correction.correction_id,
                ledger_version=after.ledger_version,
            )
        logger.info(
            kind.value,
            correction_id=correction.correction_id,
            match_id=match_id,
            actor=actor,
            total_before=str(before.total_points),
            total_after=str(after.total_points),
        )

    async def _apply(self, correction: Correction) -> MatchProjection:
        before, applied = await self._write(
            correction, lambda entries: self._compensations(correction, entries)
        )
        correction.status = CorrectionStatus.APPLIED
        correction.applied_sequences = [d.ledger_sequence for d in applied]
        CORRECTIONS.labels(status=CorrectionStatus.APPLIED.value).inc()
        return before

    async def rollback(self, correction_id: str, actor: str, reason: str) -> Correction:
        """Append the inverse of an applied correction, newest delta first."""
        correction = self.get(correction_id)
        if correction.status != CorrectionStatus.APPLIED:
            raise InvalidTransitionError(
                f"correction {correction_id} is {correction.status.value}, cannot roll back"
            )
        sequences = set(correction.applied_sequences)

        def inverse(entries: Sequence[LedgerEntry]) -> list[PointDelta]:
            applied = [e.delta() for e in entries if e.ledger_sequence in sequences]
            return [
                d.model_copy(update={
                    "ledger_sequence": 0,
                    "points": -d.points,
                    "explanation": f"rollback of {correction_id}: {d.explanation}",
                    "compensates_sequence": d.ledger_sequence,
                    "voids_event_id": d.restores_event_id,
                    "restores_event_id": d.voids_event_id,
                })
                for d in reversed(applied)
            ]

        before, applied = await self._write(correction, inverse)
        correction.status = CorrectionStatus.ROLLED_BACK
        CORRECTIONS.labels(status=CorrectionStatus.ROLLED_BACK.value).inc()
        await self._after_commit(
            correction,
            before,
            AuditKind.CORRECTION_ROLLED_BACK,
            actor,
            reason,
            {"ledger_sequences": [d.ledger_sequence for d in applied]},
        )
        return correction
