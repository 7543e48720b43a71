"""
Immutable audit trail for corrections and quarantine decisions.

Records are written once and never updated; the export is ordered by time.
"""
from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import select

from shared.models.domain import AuditRecord
from shared.models.enums import AuditKind
from shared.models.orm import AuditRecordORM
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger

logger = get_logger(__name__)


def new_audit_record(
    kind: AuditKind,
    match_id: str,
    subject_id: str,
    actor: str,
    reason: str = "",
    before_state: Optional[dict[str, Any]] = None,
    after_state: Optional[dict[str, Any]] = None,
    details: Optional[dict[str, Any]] = None,
    at: Optional[datetime] = None,
) -> AuditRecord:
    return AuditRecord(
        audit_id=f"a_{uuid.uuid4().hex}",
        kind=kind,
        match_id=match_id,
        subject_id=subject_id,
        actor=actor,
        at=at or datetime.now(timezone.utc),
        reason=reason,
        before_state=before_state,
        after_state=after_state,
        details=details or {},
    )


class AuditLog(ABC):
    async def record(self, record: AuditRecord) -> AuditRecord:
        await self._write(record)
        logger.info(
            "audit_recorded",
            audit_id=record.audit_id,
            kind=record.kind.value,
            match_id=record.match_id,
            subject_id=record.subject_id,
            actor=record.actor,
        )
        return record

    @abstractmethod
    async def _write(self, record: AuditRecord) -> None:
        ...

    @abstractmethod
    async def list(
        self, match_id: Optional[str] = None, kinds: Optional[Iterable[AuditKind]] = None
    ) -> list[AuditRecord]:
        ...


class InMemoryAuditLog(AuditLog):
    def __init__(self) -> None:
        self._records: list[AuditRecord] = []

    async def _write(self, record: AuditRecord) -> None:
        self._records.append(record)

    async def list(
        self, match_id: Optional[str] = None, kinds: Optional[Iterable[AuditKind]] = None
    ) -> list[AuditRecord]:
        wanted = set(kinds) if kinds else None
        return [
            r for r in self._records
            if (match_id is None or r.match_id == match_id) and (wanted is None or r.kind in wanted)
        ]


class SqlAuditLog(AuditLog):
    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def _write(self, record: AuditRecord) -> None:
        data = record.model_dump(mode="json")
        async with self._db.write_session() as session:
            session.add(AuditRecordORM(
                audit_id=record.audit_id,
                kind=record.kind.value,
                match_id=record.match_id,
                subject_id=record.subject_id,
                actor=record.actor,
                at=record.at,
                reason=record.reason,
                before_state=data["before_state"],
                after_state=data["after_state"],
                details=data["details"],
            ))

    async def list(
        self, match_id: Optional[str] = None, kinds: Optional[Iterable[AuditKind]] = None
    ) -> list[AuditRecord]:
        stmt = select(AuditRecordORM).order_by(AuditRecordORM.at, AuditRecordORM.audit_id)
        if match_id is not None:
            stmt = stmt.where(AuditRecordORM.match_id == match_id)
        if kinds:
            stmt = stmt.where(AuditRecordORM.kind.in_([k.value for k in kinds]))
        async with self._db.read_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            AuditRecord(
                audit_id=row.audit_id,
                kind=AuditKind(row.kind),
                match_id=row.match_id,
                subject_id=row.subject_id,
                actor=row.actor,
                at=row.at,
                reason=row.reason,
                before_state=row.before_state,
                after_state=row.after_state,
                details=row.details or {},
            )
            for row in rows
        ]
