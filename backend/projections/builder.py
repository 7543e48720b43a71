"""
Projection builder.

Match projections are rebuilt from genesis or kept current incrementally; both
paths run the same fold step, so their fingerprints agree for the same ledger
prefix. Every ``projection_snapshot_interval`` entries a checkpoint is saved.
When a ledger segment cannot be read or fails chain verification, the builder
restarts from the newest checkpoint and replays the part of the tail that
still verifies.
"""
from __future__ import annotations

import asyncio
from typing import Iterable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from shared.config import Settings, get_settings
from shared.errors import LedgerCorruptionError, MatchNotFoundError, ProjectionRebuildFailure
from shared.models.domain import (
    LedgerEntry,
    MatchProjection,
    PlayerMatchProjection,
    PlayerSeasonProjection,
    ProjectionSnapshot,
)
from shared.utils.logging import get_logger
from shared.utils.metrics import PROJECTION_REBUILDS

from projections.fold import apply_entry, fold_player_season
from projections.snapshots import InMemorySnapshotStore, SnapshotStore
from scoring.ledger import LedgerStore, valid_prefix, verify_chain

logger = get_logger(__name__)

_UNAVAILABLE = (LedgerCorruptionError, SQLAlchemyError, OSError)


class ProjectionBuilder:
    def __init__(
        self,
        ledger: LedgerStore,
        snapshots: Optional[SnapshotStore] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._ledger = ledger
        self._snapshots = snapshots or InMemorySnapshotStore()
        self._settings = settings or get_settings()
        self._cache: dict[str, MatchProjection] = {}

    @property
    def snapshots(self) -> SnapshotStore:
        return self._snapshots

    async def _fold(self, projection: MatchProjection, entries: Sequence[LedgerEntry]) -> MatchProjection:
        interval = self._settings.projection_snapshot_interval
        for entry in entries:
            apply_entry(projection, entry)
            if interval > 0 and entry.ledger_sequence % interval == 0:
                await self._snapshots.save(ProjectionSnapshot(
                    match_id=projection.match_id,
                    ledger_version=projection.ledger_version,
                    head_hash=projection.head_hash,
                    projection=projection,
                ))
        return projection

    async def rebuild(self, match_id: str, as_of: Optional[int] = None) -> MatchProjection:
        """Fold the match ledger from genesis, up to ``as_of`` when given."""
        try:
            entries = await self._ledger.read(match_id, upto=as_of)
            verify_chain(match_id, entries)
        except _UNAVAILABLE as exc:
            return await self._from_snapshot(match_id, as_of, exc)
        if not entries:
            raise MatchNotFoundError(f"no ledger for match {match_id}")

        projection = await self._fold(MatchProjection(match_id=match_id), entries)
        PROJECTION_REBUILDS.labels(mode="full").inc()
        if as_of is None:
            self._cache[match_id] = projection.model_copy(deep=True)
        logger.debug("projection_rebuilt", match_id=match_id, version=projection.ledger_version, as_of=as_of)
        return projection

    async def apply(self, projection: MatchProjection, new_entries: Sequence[LedgerEntry]) -> MatchProjection:
        """Extend a projection with entries appended after its version. The input is left untouched."""
        verify_chain(
            projection.match_id,
            new_entries,
            prev_hash=projection.head_hash or None,
            start_sequence=projection.ledger_version + 1,
        )
        updated = await self._fold(projection.model_copy(deep=True), new_entries)
        PROJECTION_REBUILDS.labels(mode="incremental").inc()
        return updated

    async def _from_snapshot(
        self, match_id: str, as_of: Optional[int], cause: Exception
    ) -> MatchProjection:
        snapshot = await self._snapshots.latest(match_id, at_or_before=as_of)
        if snapshot is None:
            logger.error("projection_rebuild_failed", match_id=match_id, error=str(cause))
            raise ProjectionRebuildFailure(
                f"match {match_id}: ledger unavailable and no snapshot to fall back to ({cause})"
            ) from cause

        try:
            tail = await self._ledger.read(match_id, after=snapshot.ledger_version, upto=as_of)
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("projection_tail_unreadable", match_id=match_id, error=str(exc))
            tail = []
        good = valid_prefix(match_id, tail, snapshot.head_hash, snapshot.ledger_version + 1)
        projection = snapshot.projection
        for entry in good:
            apply_entry(projection, entry)
        PROJECTION_REBUILDS.labels(mode="snapshot_fallback").inc()
        logger.warning(
            "projection_snapshot_fallback",
            match_id=match_id,
            snapshot_version=snapshot.ledger_version,
            replayed=len(good),
            skipped=len(tail) - len(good),
            error=str(cause),
        )
        return projection

    async def refresh(self, match_id: str) -> MatchProjection:
        """Bring the cached projection up to the ledger head."""
        cached = self._cache.get(match_id)
        if cached is None:
            return await self.rebuild(match_id)
        try:
            tail = await self._ledger.read(match_id, after=cached.ledger_version)
            if not tail:
                return cached.model_copy(deep=True)
            projection = await self.apply(cached, tail)
        except _UNAVAILABLE as exc:
            logger.warning("projection_incremental_failed", match_id=match_id, error=str(exc))
            self._cache.pop(match_id, None)
            return await self.rebuild(match_id)
        self._cache[match_id] = projection
        return projection.model_copy(deep=True)

    def invalidate(self, match_id: str) -> None:
        self._cache.pop(match_id, None)

    async def rebuild_many(self, match_ids: Iterable[str]) -> dict[str, MatchProjection]:
        """Partitions are independent, so they fold concurrently."""
        ids = list(dict.fromkeys(match_ids))
        projections = await asyncio.gather(*(self.rebuild(m) for m in ids))
        return dict(zip(ids, projections))

    # ── Queries ─────────────────────────────────────────────────────────

    async def get_match(self, match_id: str, as_of: Optional[int] = None) -> MatchProjection:
        if as_of is None:
            return await self.refresh(match_id)
        return await self.rebuild(match_id, as_of=as_of)

    async def get_player(
        self, match_id: str, player_id: str, as_of: Optional[int] = None
    ) -> PlayerMatchProjection:
        projection = await self.get_match(match_id, as_of=as_of)
        player = projection.players.get(player_id)
        if player is None:
            return PlayerMatchProjection(match_id=match_id, player_id=player_id)
        return player

    async def get_player_season(self, player_id: str, season_id: str) -> PlayerSeasonProjection:
        match_ids = await self._ledger.match_ids()
        projections = await asyncio.gather(*(self.get_match(m) for m in match_ids))
        return fold_player_season(projections, player_id, season_id)

    async def season_projections(self, season_id: str) -> list[MatchProjection]:
        match_ids = await self._ledger.match_ids()
        projections = await asyncio.gather(*(self.get_match(m) for m in match_ids))
        return [p for p in projections if p.season_id == season_id]
