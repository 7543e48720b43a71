"""
Data-driven scoring rules.

A ruleset is plain data: each rule names the event type it scores, an
optional tagged condition tree, a tagged weight, and bonus thresholds. New
sports are onboarded by publishing a ruleset, never by subclassing.

Example rule (JSON)::

    {
      "rule_id": "soccer.goal",
      "event_type": "goal",
      "base_points": "10",
      "condition": {"type": "not", "condition": {"type": "metadata_equals", "key": "penalty", "value": true}},
      "weight": {"type": "minute_band", "bands": [{"start": 90, "end": 200, "factor": "1.5"}]},
      "bonus_thresholds": [{"count": 3, "points": "5", "label": "hat-trick"}]
    }
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from shared.errors import RuleEvaluationError
from shared.models.domain import CanonicalEvent, canonical_json, sha256_hex

if TYPE_CHECKING:
    from scoring.engine import MatchContext


class _RuleModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ── Conditions ──────────────────────────────────────────────────────────


class MetadataEquals(_RuleModel):
    type: Literal["metadata_equals"] = "metadata_equals"
    key: str
    value: Any

    def matches(self, event: CanonicalEvent, context: "MatchContext") -> bool:
        return event.metadata.get(self.key) == self.value


class MetadataIn(_RuleModel):
    type: Literal["metadata_in"] = "metadata_in"
    key: str
    values: list[Any]

    def matches(self, event: CanonicalEvent, context: "MatchContext") -> bool:
        return event.metadata.get(self.key) in self.values


class MinuteRange(_RuleModel):
    """Inclusive minute window; ``end`` of None means open-ended."""

    type: Literal["minute_range"] = "minute_range"
    start: int = 0
    end: Optional[int] = None

    def matches(self, event: CanonicalEvent, context: "MatchContext") -> bool:
        if event.minute < self.start:
            return False
        return self.end is None or event.minute <= self.end


class AggregateAtLeast(_RuleModel):
    """The player already has ``count`` events of ``event_type`` before this one."""

    type: Literal["aggregate_at_least"] = "aggregate_at_least"
    event_type: str
    count: int

    def matches(self, event: CanonicalEvent, context: "MatchContext") -> bool:
        return context.event_count(event.player_id, self.event_type) >= self.count


class AllOf(_RuleModel):
    type: Literal["all"] = "all"
    conditions: list["Condition"]

    def matches(self, event: CanonicalEvent, context: "MatchContext") -> bool:
        return all(c.matches(event, context) for c in self.conditions)


class AnyOf(_RuleModel):
    type: Literal["any"] = "any"
    conditions: list["Condition"]

    def matches(self, event: CanonicalEvent, context: "MatchContext") -> bool:
        return any(c.matches(event, context) for c in self.conditions)


class Not(_RuleModel):
    type: Literal["not"] = "not"
    condition: "Condition"

    def matches(self, event: CanonicalEvent, context: "MatchContext") -> bool:
        return not self.condition.matches(event, context)


Condition = Annotated[
    Union[MetadataEquals, MetadataIn, MinuteRange, AggregateAtLeast, AllOf, AnyOf, Not],
    Field(discriminator="type"),
]

AllOf.model_rebuild()
AnyOf.model_rebuild()
Not.model_rebuild()


# ── Weights ─────────────────────────────────────────────────────────────


def _to_decimal(rule_id: str, key: str, raw: Any) -> Decimal:
    if isinstance(raw, bool):
        raise RuleEvaluationError(rule_id, f"metadata '{key}' is not numeric")
    try:
        return Decimal(str(raw))
    except (InvalidOperation, ValueError) as exc:
        raise RuleEvaluationError(rule_id, f"metadata '{key}' is not numeric: {raw!r}") from exc


class ConstantWeight(_RuleModel):
    type: Literal["constant"] = "constant"
    factor: Decimal = Decimal("1")

    def multiplier(self, rule_id: str, event: CanonicalEvent) -> Decimal:
        return self.factor


class MetadataScaledWeight(_RuleModel):
    """Multiply by a numeric metadata value; a missing value is a rule failure."""

    type: Literal["metadata_scaled"] = "metadata_scaled"
    key: str
    factor: Decimal = Decimal("1")

    def multiplier(self, rule_id: str, event: CanonicalEvent) -> Decimal:
        if self.key not in event.metadata:
            raise RuleEvaluationError(rule_id, f"missing weight input '{self.key}'")
        return _to_decimal(rule_id, self.key, event.metadata[self.key]) * self.factor


class MinuteBand(_RuleModel):
    start: int
    end: int
    factor: Decimal


class MinuteBandWeight(_RuleModel):
    """First band containing the event minute wins; otherwise ``default``."""

    type: Literal["minute_band"] = "minute_band"
    bands: list[MinuteBand]
    default: Decimal = Decimal("1")

    def multiplier(self, rule_id: str, event: CanonicalEvent) -> Decimal:
        for band in self.bands:
            if band.start <= event.minute <= band.end:
                return band.factor
        return self.default


class MetadataLookupWeight(_RuleModel):
    type: Literal["metadata_lookup"] = "metadata_lookup"
    key: str
    table: dict[str, Decimal]
    default: Optional[Decimal] = None

    def multiplier(self, rule_id: str, event: CanonicalEvent) -> Decimal:
        raw = event.metadata.get(self.key)
        if raw is not None and str(raw) in self.table:
            return self.table[str(raw)]
        if self.default is not None:
            return self.default
        raise RuleEvaluationError(rule_id, f"no weight for {self.key}={raw!r}")


Weight = Annotated[
    Union[ConstantWeight, MetadataScaledWeight, MinuteBandWeight, MetadataLookupWeight],
    Field(discriminator="type"),
]


# ── Rules and rulesets ──────────────────────────────────────────────────


class BonusThreshold(_RuleModel):
    """Fires once, on the event that brings the player's count to ``count``."""

    count: int = Field(ge=1)
    points: Decimal
    label: str = ""


class ScoringRule(_RuleModel):
    rule_id: str
    event_type: str
    base_points: Decimal
    condition: Optional[Condition] = None
    weight: Weight = Field(default_factory=ConstantWeight)
    bonus_thresholds: list[BonusThreshold] = Field(default_factory=list)
    description: str = ""


class ScoringRuleSet(_RuleModel):
    sport_id: str
    version: int = Field(ge=1)
    rules: list[ScoringRule]
    description: str = ""

    def content_hash(self) -> str:
        return sha256_hex(canonical_json(self.model_dump(mode="json")))

    def rules_for(self, event_type: str) -> list[ScoringRule]:
        return [r for r in self.rules if r.event_type == event_type]
