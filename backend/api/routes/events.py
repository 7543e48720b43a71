"""
Event intake endpoints.

POST /v1/events            Submit one canonical provider event.
POST /v1/events/enqueue    Queue an event for the provider's ingest worker.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Response

from shared.bootstrap import EngineContext
from shared.errors import DuplicateEvent, QuarantineError

from api.dependencies import get_context, get_ingestion
from ingest.service import IngestionService, IntakeOutcome

router = APIRouter(prefix="/v1/events", tags=["events"])


@router.post("", status_code=201)
async def submit_event(
    response: Response,
    payload: dict[str, Any] = Body(...),
    ingestion: IngestionService = Depends(get_ingestion),
) -> dict[str, Any]:
    """
    201 with the assigned sequence number, 202 when held in quarantine,
    200 for a duplicate or a corroborating report. Malformed input is 422
    with the offending field.
    """
    try:
        result = await ingestion.intake(payload)
    except DuplicateEvent as exc:
        response.status_code = 200
        return {"duplicate": True, "provider_id": exc.provider_id, "event_id": exc.event_id}
    except QuarantineError as exc:
        response.status_code = 202
        return {"quarantined": True, "reason": exc.reason, "quarantine_id": exc.quarantine_id}

    if result.outcome == IntakeOutcome.CORROBORATED:
        response.status_code = 200
        return {
            "corroborated": True,
            "corroborates_event_id": result.corroborates_event_id,
            "released_quarantine_id": result.released_quarantine_id,
        }
    return {
        "sequence_number": result.sequence_number,
        "match_id": result.match_id,
        "event_id": result.event_id,
        "scored": result.scored,
        "deltas": [d.model_dump(mode="json") for d in result.deltas],
    }


@router.post("/enqueue", status_code=202)
async def enqueue_event(
    payload: dict[str, Any] = Body(...),
    ctx: EngineContext = Depends(get_context),
) -> dict[str, Any]:
    provider_id = str(payload.get("provider_id") or "unknown")
    message_id = await ctx.queue.put(provider_id, payload)
    return {"queued": True, "provider_id": provider_id, "message_id": message_id}
