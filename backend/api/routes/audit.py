"""
Audit export.

GET /v1/audit?match_id=&kind=  Correction and quarantine decisions, oldest first.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from shared.models.domain import AuditRecord
from shared.models.enums import AuditKind

from api.dependencies import get_audit
from corrections.audit import AuditLog

router = APIRouter(prefix="/v1/audit", tags=["audit"])


@router.get("")
async def export_audit(
    match_id: Optional[str] = Query(default=None),
    kind: Optional[list[AuditKind]] = Query(default=None),
    audit: AuditLog = Depends(get_audit),
) -> list[AuditRecord]:
    return await audit.list(match_id=match_id, kinds=kind)
