"""
Deterministic tie-break resolution.

Criteria run in configured order. Each one splits every still-tied group by
its key; groups of one are settled and remember the criterion that settled
them. Whatever is still tied after the last criterion goes to a seeded draw
whose seed is SHA-256 over ``league_id:season_id:round_id``, so the same
inputs always produce the same ranking.
"""
from __future__ import annotations

import hashlib
import random
from itertools import groupby
from typing import Sequence

from shared.models.domain import TeamSummary, TieBreakRequest, TieBreakResult, TieBreakStep
from shared.models.enums import TieBreakCriterion
from shared.utils.logging import get_logger

from tiebreak.criteria import KeyFunc, key_for

logger = get_logger(__name__)


def derive_seed(league_id: str, season_id: str, round_id: str) -> str:
    return hashlib.sha256(f"{league_id}:{season_id}:{round_id}".encode("utf-8")).hexdigest()


def partition(group: Sequence[str], teams: dict[str, TeamSummary], key: KeyFunc) -> list[list[str]]:
    """Split one tied group into sub-groups ordered by descending key."""
    keyed = sorted(((key(teams[t], group), t) for t in group), key=lambda kt: (kt[0], kt[1]), reverse=True)
    out: list[list[str]] = []
    for _value, members in groupby(keyed, key=lambda kt: kt[0]):
        out.append(sorted(t for _k, t in members))
    return out


class TieBreakResolver:
    def resolve(self, request: TieBreakRequest) -> TieBreakResult:
        config = request.config
        teams = {t.team_id: t for t in request.teams}

        # Anything not tied on total points is ranked by total first.
        groups = partition(sorted(teams), teams, lambda team, _group: team.total_points)
        result = TieBreakResult(ranking=[])
        by_total = {g[0] for g in groups if len(g) == 1}

        for spec in config.criteria:
            if all(len(g) == 1 for g in groups):
                break
            if spec.kind == TieBreakCriterion.SEEDED_DRAW:
                groups = self._draw(request, groups, result)
            else:
                key = key_for(spec, config)
                groups = [sub for g in groups for sub in (partition(g, teams, key) if len(g) > 1 else [g])]
            self._settle(groups, spec.kind, result, by_total)
            result.steps.append(TieBreakStep(criterion=spec.kind, groups=[list(g) for g in groups]))

        if any(len(g) > 1 for g in groups):
            groups = self._draw(request, groups, result)
            self._settle(groups, TieBreakCriterion.SEEDED_DRAW, result, by_total)
            result.steps.append(TieBreakStep(
                criterion=TieBreakCriterion.SEEDED_DRAW, groups=[list(g) for g in groups]
            ))

        result.ranking = [g[0] for g in groups]
        logger.info(
            "tiebreak_resolved",
            league_id=config.league_id,
            season_id=request.season_id,
            round_id=request.round_id,
            ranking=result.ranking,
            decided_by={t: c.value for t, c in result.decided_by.items()},
        )
        return result

    @staticmethod
    def _settle(
        groups: list[list[str]], criterion: TieBreakCriterion, result: TieBreakResult, skip: set[str]
    ) -> None:
        for group in groups:
            if len(group) == 1 and group[0] not in result.decided_by and group[0] not in skip:
                result.decided_by[group[0]] = criterion

    @staticmethod
    def _draw(request: TieBreakRequest, groups: list[list[str]], result: TieBreakResult) -> list[list[str]]:
        seed = derive_seed(request.config.league_id, request.season_id, request.round_id)
        rng = random.Random(int(seed, 16))
        drawn: list[list[str]] = []
        for group in groups:
            if len(group) == 1:
                drawn.append(group)
                continue
            order = sorted(group)
            rng.shuffle(order)
            logger.info(
                "tiebreak_seeded_draw",
                league_id=request.config.league_id,
                season_id=request.season_id,
                round_id=request.round_id,
                seed=seed,
                tied=sorted(group),
                order=order,
            )
            drawn.extend([t] for t in order)
        result.seed = seed
        return drawn
