"""
Tie-break resolver tests.

Run: pytest backend/tests/test_tiebreak.py -v
"""
from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from shared.models.domain import (
    CriterionSpec,
    HeadToHeadResult,
    PlayerSeasonProjection,
    Roster,
    TeamSummary,
    TieBreakConfig,
    TieBreakRequest,
)
from shared.models.enums import TieBreakCriterion, TieBreakPhase
from tiebreak.criteria import build_team_summaries
from tiebreak.resolver import TieBreakResolver, derive_seed


def _config(*kinds: TieBreakCriterion, phase: TieBreakPhase = TieBreakPhase.REGULAR_SEASON, **kwargs) -> TieBreakConfig:
    return TieBreakConfig(
        league_id="premier-fantasy",
        phase=phase,
        criteria=[CriterionSpec(kind=k, metric=kwargs.get("metric")) for k in kinds],
        extension_minutes=kwargs.get("extension_minutes", 30),
    )


def _team(team_id: str, total: str = "100", **fields) -> TeamSummary:
    return TeamSummary(team_id=team_id, total_points=Decimal(total), **fields)


def _request(config: TieBreakConfig, *teams: TeamSummary, round_id: str = "r10") -> TieBreakRequest:
    return TieBreakRequest(config=config, season_id="2026", round_id=round_id, teams=list(teams))


@pytest.fixture
def resolver() -> TieBreakResolver:
    return TieBreakResolver()


# ── Criteria ────────────────────────────────────────────────────────────

def test_equal_reserves_fall_through_to_head_to_head(resolver: TieBreakResolver) -> None:
    config = _config(TieBreakCriterion.RESERVE_TOTAL, TieBreakCriterion.HEAD_TO_HEAD)
    result = resolver.resolve(_request(
        config,
        _team("lions", reserve_points=Decimal("31.5"), head_to_head_wins={}),
        _team("bears", reserve_points=Decimal("31.5"), head_to_head_wins={"lions": 1}),
    ))
    assert result.ranking == ["bears", "lions"]
    assert result.decided_by == {
        "bears": TieBreakCriterion.HEAD_TO_HEAD,
        "lions": TieBreakCriterion.HEAD_TO_HEAD,
    }
    assert [s.criterion for s in result.steps] == [TieBreakCriterion.RESERVE_TOTAL, TieBreakCriterion.HEAD_TO_HEAD]
    assert result.steps[0].groups == [["bears", "lions"]]
    assert result.seed is None


def test_total_points_rank_before_criteria(resolver: TieBreakResolver) -> None:
    config = _config(TieBreakCriterion.KEY_PLAYER)
    result = resolver.resolve(_request(
        config,
        _team("a", "90"),
        _team("b", "120", key_player_points=Decimal("5")),
        _team("c", "120", key_player_points=Decimal("9")),
    ))
    assert result.ranking == ["c", "b", "a"]
    assert "a" not in result.decided_by
    assert result.decided_by["c"] == TieBreakCriterion.KEY_PLAYER


def test_head_to_head_only_counts_teams_still_tied(resolver: TieBreakResolver) -> None:
    config = _config(TieBreakCriterion.HEAD_TO_HEAD)
    result = resolver.resolve(_request(
        config,
        _team("a", head_to_head_wins={"z": 5}),
        _team("b", head_to_head_wins={"a": 1}),
        _team("z", "50"),
    ))
    assert result.ranking == ["b", "a", "z"]


def test_advanced_metric(resolver: TieBreakResolver) -> None:
    config = _config(TieBreakCriterion.ADVANCED_METRIC, metric="xg")
    result = resolver.resolve(_request(
        config,
        _team("a", advanced_metrics={"xg": Decimal("14.2")}),
        _team("b", advanced_metrics={"xg": Decimal("17.9")}),
    ))
    assert result.ranking == ["b", "a"]


def test_playoff_virtual_extension_then_sudden_death(resolver: TieBreakResolver) -> None:
    config = _config(
        TieBreakCriterion.VIRTUAL_EXTENSION, TieBreakCriterion.SUDDEN_DEATH, phase=TieBreakPhase.PLAYOFF,
    )
    result = resolver.resolve(_request(
        config,
        _team("a", starter_points_per_minute=[Decimal("0.1"), Decimal("0.1")],
              starter_best_performances=[Decimal("20"), Decimal("18")]),
        _team("b", starter_points_per_minute=[Decimal("0.2")],
              starter_best_performances=[Decimal("20"), Decimal("19")]),
        _team("c", starter_points_per_minute=[Decimal("0.05")]),
    ))
    assert result.ranking == ["b", "a", "c"]
    assert result.decided_by == {
        "c": TieBreakCriterion.VIRTUAL_EXTENSION,
        "b": TieBreakCriterion.SUDDEN_DEATH,
        "a": TieBreakCriterion.SUDDEN_DEATH,
    }


# ── Seeded draw ─────────────────────────────────────────────────────────

def test_unbroken_tie_uses_seeded_draw(resolver: TieBreakResolver) -> None:
    config = _config(TieBreakCriterion.RESERVE_TOTAL)
    teams = [_team(t) for t in ("a", "b", "c", "d")]
    first = resolver.resolve(_request(config, *teams))
    again = resolver.resolve(_request(config, *reversed(teams)))

    assert first.ranking == again.ranking
    assert sorted(first.ranking) == ["a", "b", "c", "d"]
    assert first.seed == derive_seed("premier-fantasy", "2026", "r10")
    assert set(first.decided_by.values()) == {TieBreakCriterion.SEEDED_DRAW}
    assert first.steps[-1].criterion == TieBreakCriterion.SEEDED_DRAW


def test_seed_depends_on_round() -> None:
    assert derive_seed("l", "2026", "r1") != derive_seed("l", "2026", "r2")
    assert derive_seed("l", "2026", "r1") == derive_seed("l", "2026", "r1")


def test_explicit_draw_criterion(resolver: TieBreakResolver) -> None:
    config = _config(TieBreakCriterion.SEEDED_DRAW, TieBreakCriterion.KEY_PLAYER)
    result = resolver.resolve(_request(config, _team("a"), _team("b", key_player_points=Decimal("40"))))
    assert [s.criterion for s in result.steps] == [TieBreakCriterion.SEEDED_DRAW]
    assert result.seed is not None


# ── Validation ──────────────────────────────────────────────────────────

def test_playoff_criteria_refused_in_regular_season() -> None:
    with pytest.raises(ValidationError):
        _config(TieBreakCriterion.SUDDEN_DEATH)


def test_advanced_metric_needs_a_name() -> None:
    with pytest.raises(ValidationError):
        _config(TieBreakCriterion.ADVANCED_METRIC)


def test_team_ids_must_be_unique() -> None:
    with pytest.raises(ValidationError):
        _request(_config(TieBreakCriterion.RESERVE_TOTAL), _team("a"), _team("a"))


# ── Inputs from projections ─────────────────────────────────────────────

def test_team_summaries_from_season_projections() -> None:
    seasons = [
        PlayerSeasonProjection(player_id="p1", season_id="2026", games_played=2, total_points=Decimal("30"),
                               average_points_per_game=Decimal("15"),
                               match_points={"m1": Decimal("10"), "m2": Decimal("20")}),
        PlayerSeasonProjection(player_id="p2", season_id="2026", games_played=1, total_points=Decimal("9"),
                               average_points_per_game=Decimal("9"), match_points={"m1": Decimal("9")}),
        PlayerSeasonProjection(player_id="p3", season_id="2026", total_points=Decimal("4")),
    ]
    rosters = [
        Roster(team_id="lions", starters=["p1", "p2"], reserves=["p3"], key_player_id="p1"),
        Roster(team_id="bears", starters=["p2", "ghost"]),
    ]
    results = [
        HeadToHeadResult(round_id="r1", home_team_id="lions", away_team_id="bears", winner_team_id="bears"),
        HeadToHeadResult(round_id="r2", home_team_id="bears", away_team_id="lions"),
    ]
    lions, bears = build_team_summaries(seasons, rosters, results, regulation_minutes=90)

    assert lions.total_points == Decimal("39.00")
    assert lions.reserve_points == Decimal("4.00")
    assert lions.key_player_points == Decimal("30")
    assert lions.starter_best_performances == [Decimal("20"), Decimal("9")]
    assert lions.starter_points_per_minute[1] == Decimal("9") / 90
    assert lions.head_to_head_wins == {}
    assert bears.head_to_head_wins == {"lions": 1}
    assert bears.total_points == Decimal("9.00")
    assert bears.starter_best_performances == [Decimal("9"), Decimal("0.00")]
