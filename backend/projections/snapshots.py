"""Projection checkpoints used to bound replay and to survive ledger damage."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import select

from shared.models.domain import MatchProjection, ProjectionSnapshot
from shared.models.orm import ProjectionSnapshotORM
from shared.utils.database import DatabaseManager


class SnapshotStore(ABC):
    @abstractmethod
    async def save(self, snapshot: ProjectionSnapshot) -> None:
        ...

    @abstractmethod
    async def latest(self, match_id: str, at_or_before: Optional[int] = None) -> Optional[ProjectionSnapshot]:
        ...


class InMemorySnapshotStore(SnapshotStore):
    def __init__(self) -> None:
        self._snapshots: dict[str, dict[int, ProjectionSnapshot]] = {}

    async def save(self, snapshot: ProjectionSnapshot) -> None:
        stored = snapshot.model_copy(deep=True)
        self._snapshots.setdefault(snapshot.match_id, {})[snapshot.ledger_version] = stored

    async def latest(self, match_id: str, at_or_before: Optional[int] = None) -> Optional[ProjectionSnapshot]:
        versions = [
            v for v in self._snapshots.get(match_id, {})
            if at_or_before is None or v <= at_or_before
        ]
        if not versions:
            return None
        return self._snapshots[match_id][max(versions)].model_copy(deep=True)


class SqlSnapshotStore(SnapshotStore):
    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def save(self, snapshot: ProjectionSnapshot) -> None:
        async with self._db.write_session() as session:
            await session.merge(ProjectionSnapshotORM(
                match_id=snapshot.match_id,
                ledger_version=snapshot.ledger_version,
                head_hash=snapshot.head_hash,
                projection=snapshot.projection.model_dump(mode="json"),
            ))

    async def latest(self, match_id: str, at_or_before: Optional[int] = None) -> Optional[ProjectionSnapshot]:
        stmt = (
            select(ProjectionSnapshotORM)
            .where(ProjectionSnapshotORM.match_id == match_id)
            .order_by(ProjectionSnapshotORM.ledger_version.desc())
            .limit(1)
        )
        if at_or_before is not None:
            stmt = stmt.where(ProjectionSnapshotORM.ledger_version <= at_or_before)
        async with self._db.read_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return None
        return ProjectionSnapshot(
            match_id=row.match_id,
            ledger_version=row.ledger_version,
            head_hash=row.head_hash,
            projection=MatchProjection.model_validate(row.projection),
        )
