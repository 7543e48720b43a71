"""
Match endpoints.

GET  /v1/matches/{id}/projection           Match projection, optionally as of a ledger version.
GET  /v1/matches/{id}/players/{player_id}  One player's breakdown in the match.
GET  /v1/matches/{id}/ledger               Raw ledger entries and chain verification.
POST /v1/matches                           Open a match ledger pinned to a ruleset version.
POST /v1/matches/{id}/resolve              Close the match once nothing is disputed.
POST /v1/matches/{id}/replay               Replay against the pinned ruleset and compare heads.
"""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from shared.errors import LedgerCorruptionError, MatchNotFoundError
from shared.models.domain import MatchProjection, PlayerMatchProjection

from api.dependencies import get_builder, get_resolver
from projections.builder import ProjectionBuilder
from scoring.ledger import verify_chain
from scoring.resolver import ScoringResolver

router = APIRouter(prefix="/v1/matches", tags=["matches"])


class OpenMatchBody(BaseModel):
    match_id: str
    sport_id: str
    league_id: str = ""
    season_id: str = ""
    ruleset_version: Optional[int] = None


class ResolveBody(BaseModel):
    actor: str = "system"


@router.post("", status_code=201)
async def open_match(
    body: OpenMatchBody, resolver: ScoringResolver = Depends(get_resolver)
) -> MatchProjection:
    return await resolver.open_match(
        body.match_id, body.sport_id, body.league_id, body.season_id, body.ruleset_version
    )


@router.get("/{match_id}/projection")
async def get_match_projection(
    match_id: str,
    as_of: Optional[int] = Query(default=None, ge=1),
    builder: ProjectionBuilder = Depends(get_builder),
) -> MatchProjection:
    return await builder.get_match(match_id, as_of=as_of)


@router.get("/{match_id}/players/{player_id}")
async def get_player_in_match(
    match_id: str,
    player_id: str,
    as_of: Optional[int] = Query(default=None, ge=1),
    builder: ProjectionBuilder = Depends(get_builder),
) -> PlayerMatchProjection:
    return await builder.get_player(match_id, player_id, as_of=as_of)


@router.get("/{match_id}/ledger")
async def get_ledger(
    match_id: str,
    after: int = Query(default=0, ge=0),
    resolver: ScoringResolver = Depends(get_resolver),
) -> dict[str, Any]:
    entries = await resolver.ledger.read(match_id)
    if not entries:
        raise MatchNotFoundError(f"no ledger for match {match_id}")
    verified, broken_at, error = True, None, None
    try:
        verify_chain(match_id, entries)
    except LedgerCorruptionError as exc:
        verified, broken_at, error = False, exc.ledger_sequence, str(exc)
    return {
        "match_id": match_id,
        "head": entries[-1].ledger_sequence,
        "head_hash": entries[-1].entry_hash,
        "verified": verified,
        "broken_at": broken_at,
        "error": error,
        "entries": [e.model_dump(mode="json") for e in entries if e.ledger_sequence > after],
    }


@router.post("/{match_id}/resolve")
async def resolve_match(
    match_id: str,
    body: ResolveBody,
    resolver: ScoringResolver = Depends(get_resolver),
    builder: ProjectionBuilder = Depends(get_builder),
) -> MatchProjection:
    await resolver.resolve_match(match_id, actor=body.actor)
    return await builder.refresh(match_id)


@router.post("/{match_id}/replay")
async def replay_match(
    match_id: str, resolver: ScoringResolver = Depends(get_resolver)
) -> dict[str, Any]:
    """Deterministic replay check: the replayed ledger's event and delta entries must match."""
    live = await resolver.ledger.read(match_id)
    replayed = await resolver.replay_match(match_id)
    scoring_kinds = {"match_opened", "event_accepted", "point_delta"}

    def scoring_payloads(entries):
        return [(e.kind.value, e.payload) for e in entries if e.kind.value in scoring_kinds]

    return {
        "match_id": match_id,
        "live_head": live[-1].ledger_sequence,
        "replayed_head": replayed[-1].ledger_sequence,
        "matches": scoring_payloads(live) == scoring_payloads(replayed),
    }
