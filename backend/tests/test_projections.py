"""
Projection builder tests: full vs incremental equivalence, point-in-time views,
snapshot fallback and season aggregation.

Run: pytest backend/tests/test_projections.py -v
"""
from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest

from shared.bootstrap import EngineContext
from shared.config import Settings
from shared.errors import MatchNotFoundError, ProjectionRebuildFailure
from shared.models.domain import ProjectionSnapshot
from shared.utils.database import DatabaseManager
from projections.builder import ProjectionBuilder
from projections.snapshots import InMemorySnapshotStore, SqlSnapshotStore
from scoring.ledger import InMemoryLedgerStore


async def _goals(ctx: EngineContext, make_event, *minutes: int, match_id: str = "m1", **metadata) -> None:
    for minute in minutes:
        await ctx.ingestion.intake(make_event(f"{match_id}-g{minute}", minute=minute, match_id=match_id, **metadata))


# ── Equivalence ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_incremental_matches_full_rebuild(ctx: EngineContext, settings: Settings, make_event) -> None:
    await _goals(ctx, make_event, 5, 15)
    first = await ctx.builder.get_match("m1")
    assert first.total_points == Decimal("20.00")

    await _goals(ctx, make_event, 25, 35)
    await ctx.ingestion.intake(make_event("y1", event_type="yellow_card", player_id="p2", minute=40))
    incremental = await ctx.builder.get_match("m1")

    fresh = await ProjectionBuilder(ctx.ledger, InMemorySnapshotStore(), settings).rebuild("m1")
    assert incremental.fingerprint() == fresh.fingerprint()
    assert (await ctx.resolver.state("m1")).fingerprint() == fresh.fingerprint()
    assert fresh.total_points == Decimal("43.00")
    assert fresh.players["p1"].total_points == Decimal("45.00")


@pytest.mark.asyncio
async def test_rebuild_is_stable(ctx: EngineContext, make_event) -> None:
    await _goals(ctx, make_event, 5, 15, 25)
    a = await ctx.builder.rebuild("m1")
    b = await ctx.builder.rebuild("m1")
    assert a.fingerprint() == b.fingerprint()


@pytest.mark.asyncio
async def test_point_in_time_view(ctx: EngineContext, make_event) -> None:
    await _goals(ctx, make_event, 5, 15)
    early = await ctx.builder.get_match("m1", as_of=3)
    assert early.ledger_version == 3
    assert early.total_points == Decimal("10.00")
    assert (await ctx.builder.get_match("m1")).total_points == Decimal("20.00")


@pytest.mark.asyncio
async def test_unknown_match(ctx: EngineContext) -> None:
    with pytest.raises(MatchNotFoundError):
        await ctx.builder.rebuild("nope")


@pytest.mark.asyncio
async def test_player_view(ctx: EngineContext, make_event) -> None:
    await _goals(ctx, make_event, 5)
    player = await ctx.builder.get_player("m1", "p1")
    assert player.total_points == Decimal("10.00")
    assert player.breakdown[0].rule_id == "soccer.goal"
    bench = await ctx.builder.get_player("m1", "p9")
    assert bench.total_points == Decimal("0.00")
    assert bench.breakdown == []


# ── Snapshots ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_corrupt_segment_falls_back_to_snapshot(ctx: EngineContext, settings: Settings, make_event) -> None:
    await _goals(ctx, make_event, 5, 15)
    await ctx.builder.rebuild("m1")  # checkpoint at entry 5
    await _goals(ctx, make_event, 25, 35)

    entries = await ctx.ledger.read("m1")
    assert len(entries) == 10
    entries[7] = entries[7].model_copy(update={"payload": {**entries[7].payload, "points": "500"}})
    damaged = ProjectionBuilder(InMemoryLedgerStore.from_entries("m1", entries), ctx.snapshots, settings)

    projection = await damaged.rebuild("m1")
    assert projection.ledger_version == 7
    assert projection.total_points == Decimal("30.00")


@pytest.mark.asyncio
async def test_corrupt_ledger_without_snapshot_fails(settings: Settings, ctx: EngineContext, make_event) -> None:
    await _goals(ctx, make_event, 5)
    entries = await ctx.ledger.read("m1")
    entries[1] = entries[1].model_copy(update={"prev_hash": "f" * 64})
    damaged = ProjectionBuilder(InMemoryLedgerStore.from_entries("m1", entries), InMemorySnapshotStore(), settings)
    with pytest.raises(ProjectionRebuildFailure):
        await damaged.rebuild("m1")


@pytest.mark.asyncio
async def test_sql_snapshot_store(tmp_path: Path, ctx: EngineContext, make_event) -> None:
    await _goals(ctx, make_event, 5, 15)
    projection = await ctx.builder.rebuild("m1")
    db = DatabaseManager(Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'snap.db'}"))
    await db.connect()
    await db.create_schema()
    try:
        store = SqlSnapshotStore(db)
        await store.save(ProjectionSnapshot(
            match_id="m1", ledger_version=5, head_hash=projection.head_hash, projection=projection,
        ))
        latest = await store.latest("m1")
        assert latest is not None
        assert latest.projection.fingerprint() == projection.fingerprint()
        assert await store.latest("m1", at_or_before=4) is None
    finally:
        await db.disconnect()


# ── Seasons ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_player_season_aggregates_matches(ctx: EngineContext, make_event) -> None:
    await ctx.ingestion.intake(make_event("s", event_type="match_start", player_id="match", season_id="2026"))
    await _goals(ctx, make_event, 20, season_id="2026")
    await ctx.ingestion.intake(make_event("e", event_type="match_end", player_id="match", minute=45))
    await _goals(ctx, make_event, 10, 30, match_id="m2", season_id="2026")
    await _goals(ctx, make_event, 10, match_id="m3", season_id="2025")

    season = await ctx.builder.get_player_season("p1", "2026")
    assert season.total_points == Decimal("30.00")
    assert season.match_points == {"m1": Decimal("10.00"), "m2": Decimal("20.00")}
    assert season.games_played == 1
    assert season.event_counts == {"goal": 3}

    rebuilt = await ctx.builder.rebuild_many(["m2", "m1", "m2"])
    assert list(rebuilt) == ["m2", "m1"]
    assert [p.match_id for p in await ctx.builder.season_projections("2026")] == ["m1", "m2"]
