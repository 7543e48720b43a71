"""
Pydantic v2 domain models shared across all Scorekeeper services.
These are the canonical wire/internal representations, not ORM models.
"""
from __future__ import annotations

import hashlib
import json
from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from shared.models.enums import (
    ApproverRole,
    AuditKind,
    ChangeKind,
    CorrectionStatus,
    EntryKind,
    MatchStatus,
    QuarantineReason,
    QuarantineStatus,
    TieBreakCriterion,
    TieBreakPhase,
)

POINTS_QUANTUM = Decimal("0.01")


def quantize_points(value: Any) -> Decimal:
    """Normalize any numeric input to a two-place Decimal."""
    return Decimal(str(value)).quantize(POINTS_QUANTUM, rounding=ROUND_HALF_EVEN)


def canonical_json(data: Any) -> str:
    """Stable JSON used for hashing and byte-level comparisons."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class FrozenModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True, frozen=True)


# ── Events ──────────────────────────────────────────────────────────────
class RawProviderEvent(DomainModel):
    """Intake shape produced by the provider normalizer."""
    event_id: str
    match_id: str
    player_id: str
    sport_id: str
    event_type: str
    timestamp: datetime
    minute: int
    provider_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class CanonicalEvent(FrozenModel):
    """Normalized sporting occurrence. Immutable once accepted."""
    event_id: str
    match_id: str
    player_id: str
    sport_id: str
    event_type: str
    timestamp: datetime
    minute: int
    provider_id: str
    sequence_number: Optional[int] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def occurrence_key(self) -> tuple[str, str, str]:
        """Identity of the real-world occurrence, independent of provider."""
        return (self.match_id, self.player_id, self.event_type)


class MatchInfo(FrozenModel):
    """Genesis payload of a match ledger; pins the ruleset version."""
    match_id: str
    sport_id: str
    league_id: str = ""
    season_id: str = ""
    ruleset_version: int


# ── Ledger ──────────────────────────────────────────────────────────────
class PointDelta(FrozenModel):
    """A scored increment. Compensating deltas reference the entry they offset."""
    ledger_sequence: int = 0
    match_id: str
    player_id: str
    event_id: str
    event_type: str = ""
    rule_id: str
    points: Decimal
    explanation: str
    applied_ruleset_version: int
    compensates_sequence: Optional[int] = None
    correction_id: Optional[str] = None
    voids_event_id: Optional[str] = None
    restores_event_id: Optional[str] = None

    @property
    def is_compensating(self) -> bool:
        return self.compensates_sequence is not None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"ledger_sequence"})


class StatusChange(FrozenModel):
    """Lifecycle transition and/or review overlay change; ``under_review`` None leaves the overlay alone."""
    status: MatchStatus
    under_review: Optional[bool] = None
    reason: str = ""


class LedgerEntry(FrozenModel):
    """One immutable, hash-chained ledger record."""
    match_id: str
    ledger_sequence: int
    kind: EntryKind
    payload: dict[str, Any]
    prev_hash: str
    entry_hash: str

    @staticmethod
    def compute_hash(
        match_id: str, ledger_sequence: int, kind: EntryKind, payload: dict[str, Any], prev_hash: str
    ) -> str:
        body = canonical_json({
            "match_id": match_id,
            "seq": ledger_sequence,
            "kind": kind.value,
            "payload": payload,
            "prev": prev_hash,
        })
        return sha256_hex(body)

    @classmethod
    def create(
        cls, match_id: str, ledger_sequence: int, kind: EntryKind, payload: dict[str, Any], prev_hash: str
    ) -> "LedgerEntry":
        return cls(
            match_id=match_id,
            ledger_sequence=ledger_sequence,
            kind=kind,
            payload=payload,
            prev_hash=prev_hash,
            entry_hash=cls.compute_hash(match_id, ledger_sequence, kind, payload, prev_hash),
        )

    def hash_is_valid(self) -> bool:
        return self.entry_hash == self.compute_hash(
            self.match_id, self.ledger_sequence, self.kind, self.payload, self.prev_hash
        )

    def event(self) -> CanonicalEvent:
        return CanonicalEvent.model_validate(self.payload["event"])

    def delta(self) -> PointDelta:
        return PointDelta.model_validate({**self.payload, "ledger_sequence": self.ledger_sequence})

    def match_info(self) -> MatchInfo:
        return MatchInfo.model_validate(self.payload)

    def status_change(self) -> StatusChange:
        return StatusChange.model_validate(self.payload)


# ── Projections ─────────────────────────────────────────────────────────
class BreakdownLine(DomainModel):
    ledger_sequence: int
    event_id: str
    rule_id: str
    points: Decimal
    explanation: str
    compensates_sequence: Optional[int] = None
    correction_id: Optional[str] = None


class PlayerMatchProjection(DomainModel):
    match_id: str
    player_id: str
    total_points: Decimal = Decimal("0.00")
    event_counts: dict[str, int] = Field(default_factory=dict)
    breakdown: list[BreakdownLine] = Field(default_factory=list)


class MatchProjection(DomainModel):
    """Read view folded from one match ledger."""
    match_id: str
    sport_id: str = ""
    league_id: str = ""
    season_id: str = ""
    ruleset_version: int = 0
    status: MatchStatus = MatchStatus.SCHEDULED
    under_review: bool = False
    review_reasons: list[str] = Field(default_factory=list)
    ledger_version: int = 0
    head_hash: str = ""
    event_count: int = 0
    last_event_sequence: int = 0
    max_minute: int = -1
    latest_event_at: Optional[datetime] = None
    total_points: Decimal = Decimal("0.00")
    players: dict[str, PlayerMatchProjection] = Field(default_factory=dict)
    voided_event_ids: list[str] = Field(default_factory=list)
    unscored_event_ids: list[str] = Field(default_factory=list)

    def fingerprint(self) -> str:
        return sha256_hex(canonical_json(self.model_dump(mode="json")))


class PlayerSeasonProjection(DomainModel):
    player_id: str
    season_id: str
    games_played: int = 0
    total_points: Decimal = Decimal("0.00")
    average_points_per_game: Decimal = Decimal("0.00")
    event_counts: dict[str, int] = Field(default_factory=dict)
    match_points: dict[str, Decimal] = Field(default_factory=dict)

    def fingerprint(self) -> str:
        return sha256_hex(canonical_json(self.model_dump(mode="json")))


class ProjectionSnapshot(DomainModel):
    """Known-good checkpoint of a match projection."""
    match_id: str
    ledger_version: int
    head_hash: str
    projection: MatchProjection


# ── Quarantine ──────────────────────────────────────────────────────────
class QuarantineRecord(DomainModel):
    quarantine_id: str
    event: CanonicalEvent
    reason: QuarantineReason
    status: QuarantineStatus = QuarantineStatus.HELD
    held_at: datetime
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    note: str = ""
    corroborating_providers: list[str] = Field(default_factory=list)


# ── Corrections ─────────────────────────────────────────────────────────
class ProposedChange(DomainModel):
    kind: ChangeKind
    new_player_id: Optional[str] = None
    points: Optional[Decimal] = None
    rule_id: Optional[str] = None

    @model_validator(mode="after")
    def check_arguments(self) -> "ProposedChange":
        if self.kind == ChangeKind.REASSIGN_PLAYER and not self.new_player_id:
            raise ValueError("reassign_player requires new_player_id")
        if self.kind == ChangeKind.ADJUST_POINTS and self.points is None:
            raise ValueError("adjust_points requires points")
        return self


class CorrectionRequest(DomainModel):
    match_id: str
    target_event_id: str
    reason: str = Field(min_length=1)
    proposed_change: ProposedChange
    submitted_by: str = Field(min_length=1)


class Approval(DomainModel):
    approver_id: str
    role: ApproverRole
    approved_at: datetime
    note: str = ""


class ImpactReport(DomainModel):
    """Dry-run result computed against a shadow ledger."""
    ledger_version: int
    before_total: Decimal
    after_total: Decimal
    player_deltas: dict[str, Decimal] = Field(default_factory=dict)
    compensations: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def magnitude(self) -> Decimal:
        """Largest absolute swing, for the match or any single player."""
        swings = [abs(self.after_total - self.before_total)]
        swings.extend(abs(v) for v in self.player_deltas.values())
        return max(swings)


class Correction(DomainModel):
    correction_id: str
    match_id: str
    target_event_id: str
    reason: str
    proposed_change: ProposedChange
    submitted_by: str
    timestamp: datetime
    status: CorrectionStatus = CorrectionStatus.PENDING
    required_tiers: list[ApproverRole] = Field(default_factory=list)
    approver_chain: list[Approval] = Field(default_factory=list)
    impact: Optional[ImpactReport] = None
    before_state: Optional[dict[str, Any]] = None
    after_state: Optional[dict[str, Any]] = None
    applied_sequences: list[int] = Field(default_factory=list)
    rejection_reason: Optional[str] = None
    audit_id: Optional[str] = None


class AuditRecord(FrozenModel):
    """Immutable audit trail entry for corrections and quarantine decisions."""
    audit_id: str
    kind: AuditKind
    match_id: str
    subject_id: str
    actor: str
    at: datetime
    reason: str = ""
    before_state: Optional[dict[str, Any]] = None
    after_state: Optional[dict[str, Any]] = None
    details: dict[str, Any] = Field(default_factory=dict)


# ── Tie-break ───────────────────────────────────────────────────────────
class CriterionSpec(DomainModel):
    kind: TieBreakCriterion
    metric: Optional[str] = None


class TieBreakConfig(DomainModel):
    league_id: str
    phase: TieBreakPhase = TieBreakPhase.REGULAR_SEASON
    criteria: list[CriterionSpec]
    extension_minutes: int = 30

    @model_validator(mode="after")
    def check_criteria(self) -> "TieBreakConfig":
        playoff_only = {TieBreakCriterion.VIRTUAL_EXTENSION, TieBreakCriterion.SUDDEN_DEATH}
        for spec in self.criteria:
            if self.phase == TieBreakPhase.REGULAR_SEASON and spec.kind in playoff_only:
                raise ValueError(f"{spec.kind.value} is only available in the playoff phase")
            if spec.kind == TieBreakCriterion.ADVANCED_METRIC and not spec.metric:
                raise ValueError("advanced_metric requires a metric name")
        return self


class Roster(DomainModel):
    """Fantasy team composition, owned by league/roster management."""
    team_id: str
    starters: list[str] = Field(default_factory=list)
    reserves: list[str] = Field(default_factory=list)
    key_player_id: Optional[str] = None


class HeadToHeadResult(DomainModel):
    round_id: str
    home_team_id: str
    away_team_id: str
    winner_team_id: Optional[str] = None


class TeamSummary(DomainModel):
    """Tie-break inputs for one team, derived from projections."""
    team_id: str
    total_points: Decimal = Decimal("0.00")
    reserve_points: Decimal = Decimal("0.00")
    key_player_points: Decimal = Decimal("0.00")
    head_to_head_wins: dict[str, int] = Field(default_factory=dict)
    advanced_metrics: dict[str, Decimal] = Field(default_factory=dict)
    starter_points_per_minute: list[Decimal] = Field(default_factory=list)
    starter_best_performances: list[Decimal] = Field(default_factory=list)


class TieBreakRequest(DomainModel):
    config: TieBreakConfig
    season_id: str
    round_id: str
    teams: list[TeamSummary]

    @model_validator(mode="after")
    def check_teams(self) -> "TieBreakRequest":
        ids = [t.team_id for t in self.teams]
        if len(set(ids)) != len(ids):
            raise ValueError("team ids must be unique")
        return self


class TieBreakStep(DomainModel):
    criterion: TieBreakCriterion
    groups: list[list[str]]


class TieBreakResult(DomainModel):
    ranking: list[str]
    steps: list[TieBreakStep] = Field(default_factory=list)
    decided_by: dict[str, TieBreakCriterion] = Field(default_factory=dict)
    seed: Optional[str] = None
