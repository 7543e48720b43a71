"""
Tie-break criteria and their inputs.

Each criterion maps a team to a sort key; higher keys rank first. Keys only
depend on the team summaries supplied, never on time or external state.
"""
from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import Callable, Iterable, Mapping, Optional, Sequence

from shared.models.domain import (
    CriterionSpec,
    HeadToHeadResult,
    PlayerSeasonProjection,
    Roster,
    TeamSummary,
    TieBreakConfig,
    quantize_points,
)
from shared.models.enums import TieBreakCriterion

KeyFunc = Callable[[TeamSummary, Sequence[str]], object]

ZERO = Decimal("0.00")


def reserve_total(team: TeamSummary, group: Sequence[str]) -> Decimal:
    return team.reserve_points


def key_player(team: TeamSummary, group: Sequence[str]) -> Decimal:
    return team.key_player_points


def head_to_head(team: TeamSummary, group: Sequence[str]) -> int:
    """Wins against the other teams still tied in this group."""
    return sum(team.head_to_head_wins.get(other, 0) for other in group if other != team.team_id)


def advanced_metric(metric: str) -> KeyFunc:
    def key(team: TeamSummary, group: Sequence[str]) -> Decimal:
        return team.advanced_metrics.get(metric, ZERO)

    return key


def virtual_extension(extension_minutes: int) -> KeyFunc:
    """Projected points over ``extension_minutes`` extra minutes at the starters' season rates."""

    def key(team: TeamSummary, group: Sequence[str]) -> Decimal:
        rate = sum(team.starter_points_per_minute, ZERO)
        return quantize_points(rate * extension_minutes)

    return key


def sudden_death(team: TeamSummary, group: Sequence[str]) -> tuple[Decimal, ...]:
    """Best starter first, then the next best, until one team is ahead."""
    return tuple(sorted(team.starter_best_performances, reverse=True))


def key_for(spec: CriterionSpec, config: TieBreakConfig) -> Optional[KeyFunc]:
    """Sort key for a criterion; None for the seeded draw, which is not key-based."""
    if spec.kind == TieBreakCriterion.RESERVE_TOTAL:
        return reserve_total
    if spec.kind == TieBreakCriterion.KEY_PLAYER:
        return key_player
    if spec.kind == TieBreakCriterion.HEAD_TO_HEAD:
        return head_to_head
    if spec.kind == TieBreakCriterion.ADVANCED_METRIC:
        return advanced_metric(spec.metric or "")
    if spec.kind == TieBreakCriterion.VIRTUAL_EXTENSION:
        return virtual_extension(config.extension_minutes)
    if spec.kind == TieBreakCriterion.SUDDEN_DEATH:
        return sudden_death
    return None


# ── Inputs ──────────────────────────────────────────────────────────────


def build_team_summaries(
    season_projections: Iterable[PlayerSeasonProjection],
    rosters: Iterable[Roster],
    head_to_head_results: Iterable[HeadToHeadResult] = (),
    regulation_minutes: int = 90,
    advanced_metrics: Optional[Mapping[str, Mapping[str, Decimal]]] = None,
) -> list[TeamSummary]:
    """Derive tie-break inputs for each roster from player season projections."""
    players = {p.player_id: p for p in season_projections}
    wins: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for result in head_to_head_results:
        if result.winner_team_id is None:
            continue
        loser = result.away_team_id if result.winner_team_id == result.home_team_id else result.home_team_id
        wins[result.winner_team_id][loser] += 1

    def points(player_id: str) -> Decimal:
        season = players.get(player_id)
        return season.total_points if season else ZERO

    summaries: list[TeamSummary] = []
    for roster in rosters:
        rates: list[Decimal] = []
        bests: list[Decimal] = []
        for player_id in roster.starters:
            season = players.get(player_id)
            if season is None:
                rates.append(ZERO)
                bests.append(ZERO)
                continue
            rates.append(season.average_points_per_game / regulation_minutes)
            bests.append(max(season.match_points.values(), default=ZERO))
        summaries.append(TeamSummary(
            team_id=roster.team_id,
            total_points=quantize_points(sum((points(p) for p in roster.starters), ZERO)),
            reserve_points=quantize_points(sum((points(p) for p in roster.reserves), ZERO)),
            key_player_points=points(roster.key_player_id) if roster.key_player_id else ZERO,
            head_to_head_wins=dict(wins.get(roster.team_id, {})),
            advanced_metrics=dict((advanced_metrics or {}).get(roster.team_id, {})),
            starter_points_per_minute=rates,
            starter_best_performances=bests,
        ))
    return summaries
