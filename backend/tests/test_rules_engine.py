"""
Rule engine and ruleset registry tests.

Run: pytest backend/tests/test_rules_engine.py -v
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from pydantic import ValidationError

from shared.errors import RuleEvaluationError, RulesetConflictError, RulesetNotFoundError
from shared.models.domain import CanonicalEvent, MatchProjection, PlayerMatchProjection
from scoring.defaults import SOCCER_V1
from scoring.engine import MatchContext, RuleEngine
from scoring.registry import RulesetRegistry
from scoring.rules import ScoringRuleSet

CUP_RULES = {
    "sport_id": "soccer",
    "version": 2,
    "rules": [
        {
            "rule_id": "cup.goal",
            "event_type": "goal",
            "base_points": "10",
            "condition": {"type": "not", "condition": {"type": "metadata_equals", "key": "penalty", "value": True}},
            "weight": {"type": "minute_band", "bands": [{"start": 90, "end": 200, "factor": "1.5"}]},
        },
        {
            "rule_id": "cup.penalty_goal",
            "event_type": "goal",
            "base_points": "6",
            "condition": {"type": "metadata_equals", "key": "penalty", "value": True},
        },
        {
            "rule_id": "cup.long_range",
            "event_type": "goal",
            "base_points": "1",
            "condition": {
                "type": "all",
                "conditions": [
                    {"type": "minute_range", "start": 0, "end": 90},
                    {"type": "metadata_in", "key": "zone", "values": ["outside_box", "halfway"]},
                ],
            },
            "weight": {"type": "metadata_scaled", "key": "distance_m", "factor": "0.1"},
        },
        {
            "rule_id": "cup.keeper_save",
            "event_type": "save",
            "base_points": "1",
            "weight": {"type": "metadata_lookup", "key": "difficulty", "table": {"easy": "0.5", "hard": "2"}},
        },
        {
            "rule_id": "cup.late_assist",
            "event_type": "assist",
            "base_points": "3",
            "condition": {
                "type": "any",
                "conditions": [
                    {"type": "minute_range", "start": 80},
                    {"type": "aggregate_at_least", "event_type": "assist", "count": 2},
                ],
            },
        },
    ],
}


def _event(event_type: str = "goal", minute: int = 10, player_id: str = "p1", **metadata) -> CanonicalEvent:
    return CanonicalEvent(
        event_id=f"{event_type}-{minute}",
        match_id="m1",
        player_id=player_id,
        sport_id="soccer",
        event_type=event_type,
        timestamp=datetime(2026, 3, 14, 15, minute % 60, tzinfo=timezone.utc),
        minute=minute,
        provider_id="opta",
        sequence_number=1,
        metadata=metadata,
    )


def _context(**counts: int) -> MatchContext:
    projection = MatchProjection(match_id="m1")
    projection.players["p1"] = PlayerMatchProjection(match_id="m1", player_id="p1", event_counts=dict(counts))
    return MatchContext(projection)


@pytest.fixture
def engine() -> RuleEngine:
    return RuleEngine()


@pytest.fixture
def soccer() -> ScoringRuleSet:
    return ScoringRuleSet.model_validate(SOCCER_V1)


@pytest.fixture
def cup() -> ScoringRuleSet:
    return ScoringRuleSet.model_validate(CUP_RULES)


# ── Default soccer rules ────────────────────────────────────────────────

def test_goal_scores_ten(engine: RuleEngine, soccer: ScoringRuleSet) -> None:
    deltas = engine.evaluate(_event(), MatchContext.empty("m1"), soccer)
    assert [(d.rule_id, d.points) for d in deltas] == [("soccer.goal", Decimal("10.00"))]
    assert deltas[0].applied_ruleset_version == 1
    assert deltas[0].event_type == "goal"
    assert "goal at 10'" in deltas[0].explanation


def test_hat_trick_bonus_fires_on_third_goal(engine: RuleEngine, soccer: ScoringRuleSet) -> None:
    deltas = engine.evaluate(_event(minute=70), _context(goal=2), soccer)
    assert [(d.rule_id, d.points) for d in deltas] == [
        ("soccer.goal", Decimal("10.00")),
        ("soccer.goal:bonus:3", Decimal("5.00")),
    ]
    assert "hat-trick" in deltas[1].explanation


def test_hat_trick_bonus_fires_once(engine: RuleEngine, soccer: ScoringRuleSet) -> None:
    deltas = engine.evaluate(_event(minute=80), _context(goal=3), soccer)
    assert [d.rule_id for d in deltas] == ["soccer.goal"]


def test_zero_base_rule_only_emits_bonuses(engine: RuleEngine, soccer: ScoringRuleSet) -> None:
    assert engine.evaluate(_event("save"), MatchContext.empty("m1"), soccer) == []
    third = engine.evaluate(_event("save", minute=30), _context(save=2), soccer)
    assert [(d.rule_id, d.points) for d in third] == [("soccer.save:bonus:3", Decimal("1.00"))]


def test_unscored_event_type_yields_nothing(engine: RuleEngine, soccer: ScoringRuleSet) -> None:
    assert engine.evaluate(_event("corner"), MatchContext.empty("m1"), soccer) == []


def test_evaluation_is_deterministic(engine: RuleEngine, soccer: ScoringRuleSet) -> None:
    event, context = _event(minute=70), _context(goal=2)
    assert engine.evaluate(event, context, soccer) == engine.evaluate(event, context, soccer)


# ── Conditions and weights ──────────────────────────────────────────────

def test_minute_band_weight(engine: RuleEngine, cup: ScoringRuleSet) -> None:
    regular = engine.evaluate(_event(minute=30), MatchContext.empty("m1"), cup)
    stoppage = engine.evaluate(_event(minute=93), MatchContext.empty("m1"), cup)
    assert [d.points for d in regular] == [Decimal("10.00")]
    assert [d.points for d in stoppage] == [Decimal("15.00")]


def test_not_condition_routes_penalties(engine: RuleEngine, cup: ScoringRuleSet) -> None:
    deltas = engine.evaluate(_event(minute=30, penalty=True), MatchContext.empty("m1"), cup)
    assert [(d.rule_id, d.points) for d in deltas] == [("cup.penalty_goal", Decimal("6.00"))]


def test_all_condition_with_metadata_scaled_weight(engine: RuleEngine, cup: ScoringRuleSet) -> None:
    deltas = engine.evaluate(_event(minute=30, zone="outside_box", distance_m=25), MatchContext.empty("m1"), cup)
    assert [(d.rule_id, d.points) for d in deltas] == [
        ("cup.goal", Decimal("10.00")),
        ("cup.long_range", Decimal("2.50")),
    ]


def test_missing_weight_input_is_rule_failure(engine: RuleEngine, cup: ScoringRuleSet) -> None:
    with pytest.raises(RuleEvaluationError) as exc:
        engine.evaluate(_event(minute=30, zone="halfway"), MatchContext.empty("m1"), cup)
    assert exc.value.rule_id == "cup.long_range"


def test_non_numeric_weight_input_is_rule_failure(engine: RuleEngine, cup: ScoringRuleSet) -> None:
    with pytest.raises(RuleEvaluationError):
        engine.evaluate(_event(minute=30, zone="halfway", distance_m="far"), MatchContext.empty("m1"), cup)


def test_metadata_lookup_weight(engine: RuleEngine, cup: ScoringRuleSet) -> None:
    deltas = engine.evaluate(_event("save", difficulty="hard"), MatchContext.empty("m1"), cup)
    assert [d.points for d in deltas] == [Decimal("2.00")]
    with pytest.raises(RuleEvaluationError):
        engine.evaluate(_event("save", difficulty="impossible"), MatchContext.empty("m1"), cup)


def test_any_condition_with_aggregate(engine: RuleEngine, cup: ScoringRuleSet) -> None:
    assert engine.evaluate(_event("assist", minute=20), MatchContext.empty("m1"), cup) == []
    assert len(engine.evaluate(_event("assist", minute=85), MatchContext.empty("m1"), cup)) == 1
    assert len(engine.evaluate(_event("assist", minute=20), _context(assist=2), cup)) == 1


def test_unknown_condition_type_is_rejected() -> None:
    broken = {
        "sport_id": "soccer",
        "version": 3,
        "rules": [{"rule_id": "x", "event_type": "goal", "base_points": "1", "condition": {"type": "weather"}}],
    }
    with pytest.raises(ValidationError):
        ScoringRuleSet.model_validate(broken)


# ── Registry ────────────────────────────────────────────────────────────

def test_registry_defaults_cover_three_sports() -> None:
    registry = RulesetRegistry.with_defaults()
    assert registry.sports() == {"soccer", "basketball", "hockey"}
    assert registry.latest("soccer").version == 1


def test_registry_latest_tracks_new_versions() -> None:
    registry = RulesetRegistry.with_defaults()
    registry.publish(CUP_RULES)
    assert registry.versions("soccer") == [1, 2]
    assert registry.latest("soccer").version == 2
    assert registry.get("soccer", 1).rules[0].rule_id == "soccer.goal"


def test_published_version_is_immutable() -> None:
    registry = RulesetRegistry.with_defaults()
    registry.publish(SOCCER_V1)
    changed = {**SOCCER_V1, "description": "edited"}
    with pytest.raises(RulesetConflictError):
        registry.publish(changed)


def test_missing_ruleset() -> None:
    registry = RulesetRegistry()
    with pytest.raises(RulesetNotFoundError):
        registry.latest("soccer")
    with pytest.raises(RulesetNotFoundError):
        registry.get("soccer", 9)


def test_registry_loads_rulesets_from_file(tmp_path: Path) -> None:
    path = tmp_path / "rules.json"
    path.write_text(json.dumps([CUP_RULES]), encoding="utf-8")
    registry = RulesetRegistry.with_defaults(str(path))
    assert registry.latest("soccer").version == 2


def test_registry_rejects_malformed_file(tmp_path: Path) -> None:
    path = tmp_path / "rules.json"
    path.write_text(json.dumps({"sport_id": "soccer", "version": 0, "rules": []}), encoding="utf-8")
    with pytest.raises(RulesetConflictError):
        RulesetRegistry().load_file(path)
