"""
Scoring resolver tests: sequencing, lifecycle, rule failures, leases and replay.

Run: pytest backend/tests/test_resolver.py -v
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from hypothesis import HealthCheck, given, settings as hypothesis_settings, strategies as st

from shared.errors import DuplicateEvent, InvalidEventError, InvalidTransitionError, LeaseTimeoutError
from shared.models.domain import CanonicalEvent
from shared.models.enums import EntryKind, MatchStatus
from corrections.notifier import InMemoryNotifier
from scoring.defaults import SOCCER_V1
from scoring.lease import LocalLeaseManager
from scoring.ledger import InMemoryLedgerStore, verify_chain
from scoring.registry import RulesetRegistry
from scoring.resolver import ScoringResolver

KICKOFF = datetime(2026, 3, 14, 15, 0, tzinfo=timezone.utc)


def _event(event_id: str, event_type: str = "goal", player_id: str = "p1", minute: int = 10,
           match_id: str = "m1", **metadata) -> CanonicalEvent:
    return CanonicalEvent(
        event_id=event_id,
        match_id=match_id,
        player_id=player_id,
        sport_id="soccer",
        event_type=event_type,
        timestamp=KICKOFF + timedelta(minutes=minute),
        minute=minute,
        provider_id="opta",
        metadata=metadata,
    )


def _resolver(registry: RulesetRegistry | None = None, notifier: InMemoryNotifier | None = None) -> ScoringResolver:
    return ScoringResolver(
        InMemoryLedgerStore(),
        registry or RulesetRegistry.with_defaults(),
        LocalLeaseManager(1.0),
        notifier=notifier or InMemoryNotifier(),
    )


# ── Acceptance and scoring ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_two_goals_score_twenty_with_two_breakdown_lines() -> None:
    resolver = _resolver()
    first = await resolver.accept_event(_event("e1", minute=12))
    second = await resolver.accept_event(_event("e2", minute=55))

    assert (first.sequence_number, second.sequence_number) == (1, 2)
    state = await resolver.state("m1")
    player = state.players["p1"]
    assert player.total_points == Decimal("20.00")
    assert [(line.rule_id, line.points) for line in player.breakdown] == [
        ("soccer.goal", Decimal("10.00")),
        ("soccer.goal", Decimal("10.00")),
    ]
    assert player.event_counts == {"goal": 2}


@pytest.mark.asyncio
async def test_event_and_deltas_are_one_atomic_batch() -> None:
    resolver = _resolver()
    result = await resolver.accept_event(_event("e1"))
    assert [e.kind for e in result.entries] == [EntryKind.EVENT_ACCEPTED, EntryKind.POINT_DELTA]
    entries = await resolver.ledger.read("m1")
    assert [e.kind for e in entries] == [EntryKind.MATCH_OPENED, EntryKind.EVENT_ACCEPTED, EntryKind.POINT_DELTA]
    verify_chain("m1", entries)


@pytest.mark.asyncio
async def test_event_already_in_ledger_is_refused() -> None:
    resolver = _resolver()
    await resolver.accept_event(_event("e1"))
    with pytest.raises(DuplicateEvent):
        await resolver.accept_event(_event("e1", minute=11))

    # A writer that starts cold reads the accepted keys back from the ledger.
    restarted = ScoringResolver(resolver.ledger, resolver.registry, LocalLeaseManager(1.0))
    with pytest.raises(DuplicateEvent):
        await restarted.accept_event(_event("e1"))
    state = await restarted.state("m1")
    assert state.event_count == 1
    assert state.total_points == Decimal("10.00")


@pytest.mark.asyncio
async def test_concurrent_events_get_contiguous_sequence_numbers() -> None:
    resolver = _resolver()
    results = await asyncio.gather(*(
        resolver.accept_event(_event(f"e{i}", player_id=f"p{i % 3}", minute=i)) for i in range(20)
    ))
    assert sorted(r.sequence_number for r in results) == list(range(1, 21))
    verify_chain("m1", await resolver.ledger.read("m1"))


@pytest.mark.asyncio
async def test_match_pins_ruleset_at_open() -> None:
    registry = RulesetRegistry.with_defaults()
    resolver = _resolver(registry)
    await resolver.open_match("m1", "soccer", season_id="2026")
    registry.publish({**SOCCER_V1, "version": 2, "rules": [
        {"rule_id": "soccer.goal", "event_type": "goal", "base_points": "12"},
    ]})

    pinned = await resolver.accept_event(_event("e1"))
    fresh = await resolver.accept_event(_event("e2", match_id="m2"))
    assert pinned.deltas[0].points == Decimal("10.00")
    assert fresh.deltas[0].points == Decimal("12.00")
    assert (await resolver.state("m1")).ruleset_version == 1


@pytest.mark.asyncio
async def test_sport_mismatch_is_invalid() -> None:
    resolver = _resolver()
    await resolver.open_match("m1", "hockey")
    with pytest.raises(InvalidEventError) as exc:
        await resolver.accept_event(_event("e1"))
    assert exc.value.field == "sport_id"


# ── Lifecycle ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_lifecycle_runs_to_resolved() -> None:
    resolver = _resolver()
    await resolver.accept_event(_event("start", "match_start", minute=0))
    assert (await resolver.state("m1")).status == MatchStatus.IN_PROGRESS
    await resolver.accept_event(_event("e1", minute=30))
    await resolver.accept_event(_event("end", "match_end", minute=90))
    assert (await resolver.state("m1")).status == MatchStatus.FINISHED

    resolved = await resolver.resolve_match("m1", actor="ops")
    assert resolved.status == MatchStatus.RESOLVED
    with pytest.raises(InvalidTransitionError):
        await resolver.accept_event(_event("late", minute=91))


@pytest.mark.asyncio
async def test_illegal_lifecycle_transition() -> None:
    resolver = _resolver()
    with pytest.raises(InvalidTransitionError):
        await resolver.accept_event(_event("end", "match_end", minute=90))


@pytest.mark.asyncio
async def test_only_finished_matches_resolve() -> None:
    resolver = _resolver()
    await resolver.accept_event(_event("start", "match_start", minute=0))
    with pytest.raises(InvalidTransitionError):
        await resolver.resolve_match("m1")


@pytest.mark.asyncio
async def test_open_disputes_block_resolution() -> None:
    resolver = _resolver()

    async def disputes(match_id: str) -> list[str]:
        return ["correction:c_1"]

    resolver.add_dispute_check(disputes)
    await resolver.accept_event(_event("start", "match_start", minute=0))
    await resolver.accept_event(_event("end", "match_end", minute=90))
    with pytest.raises(InvalidTransitionError, match="correction:c_1"):
        await resolver.resolve_match("m1")


# ── Rule failures ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_rule_failure_flags_match_under_review() -> None:
    registry = RulesetRegistry()
    registry.publish({"sport_id": "soccer", "version": 1, "rules": [
        {"rule_id": "soccer.xg_goal", "event_type": "goal", "base_points": "10",
         "weight": {"type": "metadata_scaled", "key": "xg"}},
    ]})
    notifier = InMemoryNotifier()
    resolver = _resolver(registry, notifier)

    result = await resolver.accept_event(_event("e1"))
    assert result.scored is False
    assert result.under_review is True
    assert result.deltas == []

    state = await resolver.state("m1")
    assert state.review_reasons == ["rule_failure:e1"]
    assert state.unscored_event_ids == ["e1"]
    assert state.total_points == Decimal("0.00")
    assert [kind for kind, _payload in notifier.alerts] == ["rule_evaluation_failed"]

    # Other events keep flowing.
    ok = await resolver.accept_event(_event("e2", minute=20, xg="0.5"))
    assert ok.deltas[0].points == Decimal("5.00")

    await resolver.accept_event(_event("start", "match_start", minute=0))
    await resolver.accept_event(_event("end", "match_end", minute=90))
    with pytest.raises(InvalidTransitionError, match="rule_failure:e1"):
        await resolver.resolve_match("m1")
    await resolver.clear_review("m1", "rule_failure:e1")
    assert (await resolver.resolve_match("m1")).status == MatchStatus.RESOLVED


@pytest.mark.asyncio
async def test_unreachable_alert_channel_does_not_undo_acceptance() -> None:
    registry = RulesetRegistry()
    registry.publish({"sport_id": "soccer", "version": 1, "rules": [
        {"rule_id": "soccer.xg_goal", "event_type": "goal", "base_points": "10",
         "weight": {"type": "metadata_scaled", "key": "xg"}},
    ]})
    notifier = InMemoryNotifier()
    notifier.alert = AsyncMock(side_effect=ConnectionError("pubsub down"))
    resolver = _resolver(registry, notifier)

    result = await resolver.accept_event(_event("e1"))
    assert result.scored is False
    notifier.alert.assert_awaited_once()
    with pytest.raises(DuplicateEvent):
        await resolver.accept_event(_event("e1"))
    kinds = [e.kind for e in await resolver.ledger.read("m1")]
    assert kinds.count(EntryKind.EVENT_ACCEPTED) == 1


# ── Leases ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_busy_lease_times_out() -> None:
    leases = LocalLeaseManager(timeout_s=0.05)
    entered = asyncio.Event()
    release = asyncio.Event()

    async def holder() -> None:
        async with leases.hold("m1"):
            entered.set()
            await release.wait()

    task = asyncio.create_task(holder())
    await entered.wait()
    with pytest.raises(LeaseTimeoutError):
        async with leases.hold("m1"):
            pass
    async with leases.hold("m2"):
        pass
    release.set()
    await task
    async with leases.hold("m1"):
        pass


@pytest.mark.asyncio
async def test_lease_is_reentrant_within_a_task() -> None:
    leases = LocalLeaseManager(timeout_s=0.05)
    async with leases.hold("m1"):
        assert leases.is_held("m1")
        async with leases.hold("m1"):
            pass
    assert not leases.is_held("m1")


# ── Replay ──────────────────────────────────────────────────────────────

SCORING_TYPES = ["goal", "assist", "yellow_card", "red_card", "save", "own_goal", "clean_sheet"]


@hypothesis_settings(max_examples=30, deadline=None, suppress_health_check=[HealthCheck.too_slow])
@given(st.lists(
    st.tuples(st.sampled_from(SCORING_TYPES), st.sampled_from(["p1", "p2", "p3"]), st.integers(0, 95)),
    min_size=1,
    max_size=12,
))
def test_replay_reproduces_ledger_byte_for_byte(plays: list[tuple[str, str, int]]) -> None:
    async def scenario():
        resolver = _resolver()
        for i, (event_type, player_id, minute) in enumerate(plays):
            await resolver.accept_event(_event(f"e{i}", event_type, player_id, minute))
        return await resolver.ledger.read("m1"), await resolver.replay_match("m1")

    original, replayed = asyncio.run(scenario())
    assert [e.entry_hash for e in replayed] == [e.entry_hash for e in original]
