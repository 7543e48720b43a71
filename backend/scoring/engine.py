"""
Rule engine: (event, match context, ruleset) -> point delta drafts.

Evaluation is deterministic and side-effect free. The context is always the
fold of the ledger prefix strictly before the event being scored.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation

from shared.errors import RuleEvaluationError
from shared.models.domain import CanonicalEvent, MatchProjection, PointDelta, quantize_points

from scoring.rules import ScoringRule, ScoringRuleSet


class MatchContext:
    """Running per-player aggregates, read from a match projection."""

    def __init__(self, projection: MatchProjection) -> None:
        self._projection = projection

    @classmethod
    def empty(cls, match_id: str) -> "MatchContext":
        return cls(MatchProjection(match_id=match_id))

    @property
    def match_id(self) -> str:
        return self._projection.match_id

    def event_count(self, player_id: str, event_type: str) -> int:
        player = self._projection.players.get(player_id)
        if player is None:
            return 0
        return player.event_counts.get(event_type, 0)


class RuleEngine:
    """Evaluates every matching rule of a pinned ruleset against one event."""

    def evaluate(
        self, event: CanonicalEvent, context: MatchContext, ruleset: ScoringRuleSet
    ) -> list[PointDelta]:
        deltas: list[PointDelta] = []
        for rule in ruleset.rules_for(event.event_type):
            deltas.extend(self._evaluate_rule(rule, event, context, ruleset.version))
        return deltas

    def _evaluate_rule(
        self, rule: ScoringRule, event: CanonicalEvent, context: MatchContext, version: int
    ) -> list[PointDelta]:
        try:
            if rule.condition is not None and not rule.condition.matches(event, context):
                return []
            multiplier = rule.weight.multiplier(rule.rule_id, event)
            points = quantize_points(rule.base_points * multiplier)
        except RuleEvaluationError:
            raise
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise RuleEvaluationError(rule.rule_id, str(exc)) from exc

        drafts: list[PointDelta] = []
        if rule.base_points != 0 or not rule.bonus_thresholds:
            drafts.append(self._draft(
                event, rule.rule_id, points, version,
                f"{event.event_type} at {event.minute}': {rule.base_points} x {multiplier} = {points}",
            ))

        running = context.event_count(event.player_id, event.event_type) + 1
        for threshold in rule.bonus_thresholds:
            if threshold.count == running:
                label = threshold.label or f"{threshold.count} x {event.event_type}"
                drafts.append(self._draft(
                    event, f"{rule.rule_id}:bonus:{threshold.count}",
                    quantize_points(threshold.points), version,
                    f"bonus {label}: +{quantize_points(threshold.points)}",
                ))
        return drafts

    @staticmethod
    def _draft(
        event: CanonicalEvent, rule_id: str, points: Decimal, version: int, explanation: str
    ) -> PointDelta:
        return PointDelta(
            match_id=event.match_id,
            player_id=event.player_id,
            event_id=event.event_id,
            event_type=event.event_type,
            rule_id=rule_id,
            points=points,
            explanation=explanation,
            applied_ruleset_version=version,
        )
