"""
Scoring resolver: the single logical writer of each match ledger.

All writes for a match happen under its lease. An accepted event, its point
deltas and any resulting status entries are appended in one atomic batch, so
a crash never leaves an event half-scored. Replaying the accepted events of a
match against its pinned ruleset reproduces the same ledger byte for byte.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

from shared.errors import DuplicateEvent, InvalidEventError, MatchNotFoundError, RuleEvaluationError
from shared.models.domain import (
    CanonicalEvent,
    LedgerEntry,
    MatchInfo,
    MatchProjection,
    PointDelta,
    StatusChange,
)
from shared.models.enums import LIFECYCLE_EVENT_TYPES, EntryKind, MatchStatus
from shared.utils.logging import get_logger
from shared.utils.metrics import RULE_FAILURES

from corrections.notifier import InMemoryNotifier, Notifier, raise_alert
from ingest.sequencer import MatchSequencer
from projections.fold import apply_entry
from scoring.engine import MatchContext, RuleEngine
from scoring.lease import LocalLeaseManager, MatchLeaseManager
from scoring.ledger import InMemoryLedgerStore, LedgerStore, chain_entries, verify_chain
from scoring.registry import RulesetRegistry
from scoring.state import ensure_open, ensure_resolvable, lifecycle_transition

logger = get_logger(__name__)

# Runs under the lease just before an event is sequenced; raises to refuse it.
AcceptGuard = Callable[[MatchProjection, CanonicalEvent], None]
# Returns human-readable reasons a match cannot be resolved yet.
DisputeCheck = Callable[[str], Awaitable[list[str]]]

Draft = tuple[EntryKind, dict[str, Any]]


@dataclass
class AcceptResult:
    event: CanonicalEvent
    sequence_number: int
    scored: bool
    status: MatchStatus
    under_review: bool
    deltas: list[PointDelta] = field(default_factory=list)
    entries: list[LedgerEntry] = field(default_factory=list)


class ScoringResolver:
    def __init__(
        self,
        ledger: LedgerStore,
        registry: RulesetRegistry,
        leases: MatchLeaseManager,
        engine: Optional[RuleEngine] = None,
        sequencer: Optional[MatchSequencer] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self._ledger = ledger
        self._registry = registry
        self._leases = leases
        self._engine = engine or RuleEngine()
        self._sequencer = sequencer or MatchSequencer()
        self._notifier = notifier or InMemoryNotifier()
        self._states: dict[str, MatchProjection] = {}
        # (provider_id, event_id) of every EVENT_ACCEPTED entry, per match
        self._accepted: dict[str, set[tuple[str, str]]] = {}
        self._dispute_checks: list[DisputeCheck] = []

    @property
    def ledger(self) -> LedgerStore:
        return self._ledger

    @property
    def registry(self) -> RulesetRegistry:
        return self._registry

    @property
    def engine(self) -> RuleEngine:
        return self._engine

    def lease(self, match_id: str):
        return self._leases.hold(match_id)

    def add_dispute_check(self, check: DisputeCheck) -> None:
        self._dispute_checks.append(check)

    # ── State ───────────────────────────────────────────────────────────

    async def state(self, match_id: str) -> MatchProjection:
        """Current fold of the match ledger (a copy; safe to hold)."""
        return (await self._load(match_id)).model_copy(deep=True)

    async def _load(self, match_id: str) -> MatchProjection:
        head = await self._ledger.head(match_id)
        cached = self._states.get(match_id)
        if head is None:
            cached = MatchProjection(match_id=match_id)
            self._states[match_id] = cached
            self._accepted[match_id] = set()
            self._sequencer.seed(match_id, 0)
            return cached
        if cached is not None and cached.head_hash == head.entry_hash:
            return cached

        if cached is not None and 0 < cached.ledger_version < head.ledger_sequence:
            tail = await self._ledger.read(match_id, after=cached.ledger_version)
            verify_chain(match_id, tail, prev_hash=cached.head_hash, start_sequence=cached.ledger_version + 1)
            projection = cached
        else:
            tail = await self._ledger.read(match_id)
            verify_chain(match_id, tail)
            projection = MatchProjection(match_id=match_id)
            self._accepted[match_id] = set()
        for entry in tail:
            self._fold(projection, entry)
        self._states[match_id] = projection
        self._sequencer.seed(match_id, projection.last_event_sequence)
        return projection

    async def _append(self, projection: MatchProjection, drafts: Sequence[Draft]) -> list[LedgerEntry]:
        match_id = projection.match_id
        entries = chain_entries(match_id, projection.ledger_version, projection.head_hash, drafts)
        try:
            await self._ledger.append(match_id, entries, expected_sequence=projection.ledger_version)
        except Exception:
            self._states.pop(match_id, None)
            raise
        for entry in entries:
            self._fold(projection, entry)
        logger.info(
            "ledger_appended",
            match_id=match_id,
            entries=len(entries),
            kinds=[e.kind.value for e in entries],
            head=projection.ledger_version,
        )
        return entries

    def _fold(self, projection: MatchProjection, entry: LedgerEntry) -> None:
        apply_entry(projection, entry)
        if entry.kind == EntryKind.EVENT_ACCEPTED:
            event = entry.payload["event"]
            self._accepted.setdefault(projection.match_id, set()).add((event["provider_id"], event["event_id"]))

    # ── Operations ──────────────────────────────────────────────────────

    async def open_match(
        self,
        match_id: str,
        sport_id: str,
        league_id: str = "",
        season_id: str = "",
        ruleset_version: Optional[int] = None,
    ) -> MatchProjection:
        async with self.lease(match_id):
            projection = await self._open_locked(match_id, sport_id, league_id, season_id, ruleset_version)
            return projection.model_copy(deep=True)

    async def _open_locked(
        self,
        match_id: str,
        sport_id: str,
        league_id: str,
        season_id: str,
        ruleset_version: Optional[int],
    ) -> MatchProjection:
        projection = await self._load(match_id)
        if projection.ledger_version > 0:
            return projection
        ruleset = (
            self._registry.get(sport_id, ruleset_version)
            if ruleset_version is not None
            else self._registry.latest(sport_id)
        )
        info = MatchInfo(
            match_id=match_id,
            sport_id=sport_id,
            league_id=league_id,
            season_id=season_id,
            ruleset_version=ruleset.version,
        )
        await self._append(projection, [(EntryKind.MATCH_OPENED, info.model_dump(mode="json"))])
        logger.info("match_opened", match_id=match_id, sport=sport_id, ruleset_version=ruleset.version)
        return projection

    async def accept_event(
        self, event: CanonicalEvent, guard: Optional[AcceptGuard] = None
    ) -> AcceptResult:
        """Sequence, score and append one event. Unknown matches open with the latest ruleset."""
        match_id = event.match_id
        failure: Optional[RuleEvaluationError] = None
        async with self.lease(match_id):
            projection = await self._open_locked(
                match_id,
                event.sport_id,
                str(event.metadata.get("league_id", "")),
                str(event.metadata.get("season_id", "")),
                None,
            )
            if projection.sport_id != event.sport_id:
                raise InvalidEventError(
                    "sport_id", f"match {match_id} is {projection.sport_id}, event says {event.sport_id}"
                )
            ensure_open(projection)
            if (event.provider_id, event.event_id) in self._accepted.get(match_id, ()):
                raise DuplicateEvent(event.provider_id, event.event_id)
            if guard is not None:
                guard(projection, event)

            sequence_number = self._sequencer.peek(match_id)
            accepted = event.model_copy(update={"sequence_number": sequence_number})
            deltas: list[PointDelta] = []
            status_drafts: list[Draft] = []

            if accepted.event_type in LIFECYCLE_EVENT_TYPES:
                new_status = lifecycle_transition(projection.status, accepted.event_type)
                change = StatusChange(status=new_status, reason=accepted.event_type)
                status_drafts.append((EntryKind.STATUS_CHANGED, change.model_dump(mode="json")))
            else:
                ruleset = self._registry.get(projection.sport_id, projection.ruleset_version)
                try:
                    deltas = self._engine.evaluate(accepted, MatchContext(projection), ruleset)
                except RuleEvaluationError as exc:
                    failure = exc
                    change = StatusChange(
                        status=projection.status,
                        under_review=True,
                        reason=f"rule_failure:{accepted.event_id}",
                    )
                    status_drafts.append((EntryKind.STATUS_CHANGED, change.model_dump(mode="json")))

            drafts: list[Draft] = [
                (EntryKind.EVENT_ACCEPTED, {"event": accepted.model_dump(mode="json"), "scored": failure is None}),
            ]
            drafts.extend((EntryKind.POINT_DELTA, d.to_payload()) for d in deltas)
            drafts.extend(status_drafts)
            entries = await self._append(projection, drafts)
            self._sequencer.commit(match_id, sequence_number)
            result = AcceptResult(
                event=accepted,
                sequence_number=sequence_number,
                scored=failure is None,
                status=projection.status,
                under_review=projection.under_review,
                deltas=[e.delta() for e in entries if e.kind == EntryKind.POINT_DELTA],
                entries=entries,
            )

        if failure is not None:
            RULE_FAILURES.labels(sport=event.sport_id).inc()
            logger.error(
                "rule_evaluation_failed",
                match_id=match_id,
                event_id=event.event_id,
                rule_id=failure.rule_id,
                error=str(failure),
            )
            await raise_alert(
                self._notifier,
                "rule_evaluation_failed",
                match_id=match_id,
                event_id=event.event_id,
                rule_id=failure.rule_id,
                detail=str(failure),
            )
        return result

    async def resolve_match(self, match_id: str, actor: str = "system") -> MatchProjection:
        async with self.lease(match_id):
            projection = await self._load(match_id)
            disputes: list[str] = []
            for check in self._dispute_checks:
                disputes.extend(await check(match_id))
            ensure_resolvable(projection, disputes)
            change = StatusChange(status=MatchStatus.RESOLVED, reason=f"resolved_by:{actor}")
            await self._append(projection, [(EntryKind.STATUS_CHANGED, change.model_dump(mode="json"))])
            logger.info("match_resolved", match_id=match_id, actor=actor)
            return projection.model_copy(deep=True)

    async def clear_review(self, match_id: str, reason: str = "") -> MatchProjection:
        """Clear one review reason, or all of them when ``reason`` is empty."""
        async with self.lease(match_id):
            projection = await self._load(match_id)
            change = StatusChange(status=projection.status, under_review=False, reason=reason)
            await self._append(projection, [(EntryKind.STATUS_CHANGED, change.model_dump(mode="json"))])
            logger.info("review_cleared", match_id=match_id, reason=reason or "all")
            return projection.model_copy(deep=True)

    async def append_compensations(
        self, match_id: str, deltas: Sequence[PointDelta], review: str = ""
    ) -> list[PointDelta]:
        """
        Append correction deltas; returns them with their ledger sequences.

        With ``review`` set, the deltas are bracketed by a review flag and its
        clear in the same batch, so the ledger records the review window and
        a failed append leaves neither behind.
        """
        async with self.lease(match_id):
            projection = await self._load(match_id)
            drafts: list[Draft] = [
                (EntryKind.COMPENSATING_DELTA if d.is_compensating else EntryKind.POINT_DELTA, d.to_payload())
                for d in deltas
            ]
            if review:
                flag = StatusChange(status=projection.status, under_review=True, reason=review)
                clear = StatusChange(status=projection.status, under_review=False, reason=review)
                drafts.insert(0, (EntryKind.STATUS_CHANGED, flag.model_dump(mode="json")))
                drafts.append((EntryKind.STATUS_CHANGED, clear.model_dump(mode="json")))
            entries = await self._append(projection, drafts)
            return [e.delta() for e in entries if e.kind != EntryKind.STATUS_CHANGED]

    # ── Replay ──────────────────────────────────────────────────────────

    async def replay(self, match: MatchInfo, events: Iterable[CanonicalEvent]) -> list[LedgerEntry]:
        """Rebuild a ledger from scratch in a throwaway store."""
        shadow = ScoringResolver(
            InMemoryLedgerStore(),
            self._registry,
            LocalLeaseManager(self._leases.timeout_s),
            engine=self._engine,
        )
        await shadow.open_match(
            match.match_id, match.sport_id, match.league_id, match.season_id, match.ruleset_version
        )
        for event in events:
            await shadow.accept_event(event.model_copy(update={"sequence_number": None}))
        return await shadow.ledger.read(match.match_id)

    async def replay_match(self, match_id: str) -> list[LedgerEntry]:
        """Replay the accepted events of a live match against its pinned ruleset."""
        entries = await self._ledger.read(match_id)
        if not entries:
            raise MatchNotFoundError(f"match {match_id} has no ledger")
        verify_chain(match_id, entries)
        genesis = entries[0]
        events = [e.event() for e in entries if e.kind == EntryKind.EVENT_ACCEPTED]
        return await self.replay(genesis.match_info(), events)
