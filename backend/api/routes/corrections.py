"""
Correction endpoints.

POST /v1/corrections                  Submit a correction request.
GET  /v1/corrections                  List corrections, optionally per match.
GET  /v1/corrections/{id}             One correction with its approval chain.
POST /v1/corrections/{id}/simulate    Dry run against a shadow ledger.
POST /v1/corrections/{id}/approve     Add an approval; the final one applies.
POST /v1/corrections/{id}/reject      Reject with a reason.
POST /v1/corrections/{id}/rollback    Append the inverse of an applied correction.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from shared.models.domain import Correction, CorrectionRequest, ImpactReport
from shared.models.enums import ApproverRole, CorrectionStatus

from api.dependencies import get_corrections
from corrections.pipeline import CorrectionPipeline

router = APIRouter(prefix="/v1/corrections", tags=["corrections"])


class ApproveBody(BaseModel):
    approver_id: str = Field(min_length=1)
    role: ApproverRole
    note: str = ""


class DecisionBody(BaseModel):
    actor: str = Field(min_length=1)
    reason: str = Field(min_length=1)


@router.post("", status_code=201)
async def submit_correction(
    body: CorrectionRequest, pipeline: CorrectionPipeline = Depends(get_corrections)
) -> Correction:
    return await pipeline.submit(body)


@router.get("")
async def list_corrections(
    match_id: Optional[str] = Query(default=None),
    status: Optional[CorrectionStatus] = Query(default=None),
    pipeline: CorrectionPipeline = Depends(get_corrections),
) -> list[Correction]:
    return pipeline.list(match_id=match_id, status=status)


@router.get("/{correction_id}")
async def get_correction(
    correction_id: str, pipeline: CorrectionPipeline = Depends(get_corrections)
) -> Correction:
    return pipeline.get(correction_id)


@router.post("/{correction_id}/simulate")
async def simulate_correction(
    correction_id: str, pipeline: CorrectionPipeline = Depends(get_corrections)
) -> ImpactReport:
    return await pipeline.simulate(correction_id)


@router.post("/{correction_id}/approve")
async def approve_correction(
    correction_id: str,
    body: ApproveBody,
    pipeline: CorrectionPipeline = Depends(get_corrections),
) -> Correction:
    return await pipeline.approve(correction_id, body.approver_id, body.role, body.note)


@router.post("/{correction_id}/reject")
async def reject_correction(
    correction_id: str,
    body: DecisionBody,
    pipeline: CorrectionPipeline = Depends(get_corrections),
) -> Correction:
    return await pipeline.reject(correction_id, body.actor, body.reason)


@router.post("/{correction_id}/rollback")
async def rollback_correction(
    correction_id: str,
    body: DecisionBody,
    pipeline: CorrectionPipeline = Depends(get_corrections),
) -> Correction:
    return await pipeline.rollback(correction_id, body.actor, body.reason)
