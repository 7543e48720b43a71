"""
Tie-break endpoints.

POST /v1/tiebreak/resolve         Rank tied teams from supplied summaries.
POST /v1/tiebreak/resolve-season  Derive summaries from season projections, then rank.
"""
from __future__ import annotations

import asyncio
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from shared.models.domain import HeadToHeadResult, Roster, TieBreakConfig, TieBreakRequest, TieBreakResult

from api.dependencies import get_builder, get_tiebreak
from projections.builder import ProjectionBuilder
from tiebreak.criteria import build_team_summaries
from tiebreak.resolver import TieBreakResolver

router = APIRouter(prefix="/v1/tiebreak", tags=["tiebreak"])


class SeasonTieBreakBody(BaseModel):
    config: TieBreakConfig
    season_id: str
    round_id: str
    rosters: list[Roster]
    head_to_head: list[HeadToHeadResult] = Field(default_factory=list)
    advanced_metrics: dict[str, dict[str, Decimal]] = Field(default_factory=dict)
    regulation_minutes: int = Field(default=90, gt=0)


@router.post("/resolve")
async def resolve_tiebreak(
    body: TieBreakRequest, resolver: TieBreakResolver = Depends(get_tiebreak)
) -> TieBreakResult:
    return resolver.resolve(body)


@router.post("/resolve-season")
async def resolve_season_tiebreak(
    body: SeasonTieBreakBody,
    resolver: TieBreakResolver = Depends(get_tiebreak),
    builder: ProjectionBuilder = Depends(get_builder),
) -> TieBreakResult:
    player_ids = sorted({
        p
        for r in body.rosters
        for p in [*r.starters, *r.reserves, *([r.key_player_id] if r.key_player_id else [])]
    })
    seasons = await asyncio.gather(*(builder.get_player_season(p, body.season_id) for p in player_ids))
    teams = build_team_summaries(
        seasons, body.rosters, body.head_to_head, body.regulation_minutes, body.advanced_metrics
    )
    request = TieBreakRequest(config=body.config, season_id=body.season_id, round_id=body.round_id, teams=teams)
    return resolver.resolve(request)
