"""
Player endpoints.

GET /v1/players/{player_id}/seasons/{season_id}  Season aggregate across matches.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from shared.models.domain import PlayerSeasonProjection

from api.dependencies import get_builder
from projections.builder import ProjectionBuilder

router = APIRouter(prefix="/v1/players", tags=["players"])


@router.get("/{player_id}/seasons/{season_id}")
async def get_player_season(
    player_id: str,
    season_id: str,
    builder: ProjectionBuilder = Depends(get_builder),
) -> PlayerSeasonProjection:
    return await builder.get_player_season(player_id, season_id)
