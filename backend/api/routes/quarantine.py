"""
Quarantine endpoints.

GET  /v1/quarantine                 Held and decided events.
POST /v1/quarantine/{id}/approve    Re-submit through sequencing.
POST /v1/quarantine/{id}/reject     Discard with a note.
"""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from shared.models.domain import QuarantineRecord
from shared.models.enums import QuarantineStatus

from api.dependencies import get_ingestion
from ingest.service import IngestionService

router = APIRouter(prefix="/v1/quarantine", tags=["quarantine"])


class OperatorBody(BaseModel):
    operator: str = Field(min_length=1)
    note: str = ""


@router.get("")
async def list_quarantine(
    match_id: Optional[str] = Query(default=None),
    status: Optional[QuarantineStatus] = Query(default=None),
    ingestion: IngestionService = Depends(get_ingestion),
) -> list[QuarantineRecord]:
    return await ingestion.quarantine.list(match_id=match_id, status=status)


@router.post("/{quarantine_id}/approve")
async def approve_quarantined(
    quarantine_id: str,
    body: OperatorBody,
    ingestion: IngestionService = Depends(get_ingestion),
) -> dict[str, Any]:
    result = await ingestion.approve_quarantined(quarantine_id, body.operator, body.note)
    return {
        "quarantine_id": quarantine_id,
        "sequence_number": result.sequence_number,
        "scored": result.scored,
    }


@router.post("/{quarantine_id}/reject")
async def reject_quarantined(
    quarantine_id: str,
    body: OperatorBody,
    ingestion: IngestionService = Depends(get_ingestion),
) -> QuarantineRecord:
    return await ingestion.reject_quarantined(quarantine_id, body.operator, body.note)
