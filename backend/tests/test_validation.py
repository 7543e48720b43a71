"""
Intake validation and idempotency tests.

Run: pytest backend/tests/test_validation.py -v
"""
from __future__ import annotations

import pytest

from shared.config import Settings
from shared.errors import DuplicateEvent, InvalidEventError, OutOfSequenceError
from ingest.dedup import InMemoryDedupWindow
from ingest.sequencer import MatchSequencer
from ingest.validation import validate_event


# ── validate_event ──────────────────────────────────────────────────────

def test_valid_event_is_normalized(settings: Settings, make_event) -> None:
    raw = make_event("e1", event_type="GOAL", sport_id="Soccer")
    event = validate_event(raw, settings)
    assert event.event_type == "goal"
    assert event.sport_id == "soccer"
    assert event.sequence_number is None
    assert event.timestamp.tzinfo is not None


def test_provider_sequence_number_is_refused(settings: Settings, make_event) -> None:
    raw = make_event("e1")
    raw["sequence_number"] = 7
    with pytest.raises(InvalidEventError) as exc:
        validate_event(raw, settings)
    assert exc.value.field == "sequence_number"


def test_missing_field_is_named(settings: Settings, make_event) -> None:
    raw = make_event("e1")
    del raw["player_id"]
    with pytest.raises(InvalidEventError) as exc:
        validate_event(raw, settings)
    assert exc.value.field == "player_id"


def test_blank_provider_is_refused(settings: Settings, make_event) -> None:
    with pytest.raises(InvalidEventError) as exc:
        validate_event(make_event("e1", provider_id="   "), settings)
    assert exc.value.field == "provider_id"


@pytest.mark.parametrize("minute", [-1, 201])
def test_minute_out_of_range(settings: Settings, make_event, minute: int) -> None:
    with pytest.raises(InvalidEventError) as exc:
        validate_event(make_event("e1", minute=minute), settings)
    assert exc.value.field == "minute"


def test_naive_timestamp_is_refused(settings: Settings, make_event) -> None:
    raw = make_event("e1")
    raw["timestamp"] = "2026-03-14T15:10:00"
    with pytest.raises(InvalidEventError) as exc:
        validate_event(raw, settings)
    assert exc.value.field == "timestamp"


def test_unknown_sport_is_refused(settings: Settings, make_event) -> None:
    with pytest.raises(InvalidEventError) as exc:
        validate_event(make_event("e1", sport_id="curling"), settings, known_sports={"soccer"})
    assert exc.value.field == "sport_id"


def test_invalid_event_serializes_field() -> None:
    err = InvalidEventError("minute", "must be within 0..200")
    assert err.to_dict()["field"] == "minute"
    assert err.to_dict()["error"] == "invalid_event"


# ── Dedup window ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_second_claim_is_duplicate() -> None:
    window = InMemoryDedupWindow(ttl_s=60, max_keys=100)
    await window.claim("opta", "e1")
    with pytest.raises(DuplicateEvent):
        await window.claim("opta", "e1")


@pytest.mark.asyncio
async def test_key_includes_provider() -> None:
    window = InMemoryDedupWindow(ttl_s=60, max_keys=100)
    await window.claim("opta", "e1")
    await window.claim("scout", "e1")
    assert len(window) == 2


@pytest.mark.asyncio
async def test_keys_expire_after_window() -> None:
    now = [0.0]
    window = InMemoryDedupWindow(ttl_s=10, max_keys=100, clock=lambda: now[0])
    await window.claim("opta", "e1")
    now[0] = 11.0
    await window.claim("opta", "e1")


@pytest.mark.asyncio
async def test_oldest_key_evicted_at_capacity() -> None:
    window = InMemoryDedupWindow(ttl_s=60, max_keys=2)
    for event_id in ("e1", "e2", "e3"):
        await window.claim("opta", event_id)
    assert len(window) == 2
    await window.claim("opta", "e1")


@pytest.mark.asyncio
async def test_released_key_can_be_claimed_again() -> None:
    window = InMemoryDedupWindow(ttl_s=60, max_keys=100)
    await window.claim("opta", "e1")
    await window.release("opta", "e1")
    await window.claim("opta", "e1")


# ── Sequencer ───────────────────────────────────────────────────────────

def test_sequencer_hands_out_contiguous_numbers() -> None:
    seq = MatchSequencer()
    assert seq.peek("m1") == 1
    seq.commit("m1", 1)
    seq.commit("m1", 2)
    assert seq.last("m1") == 2
    assert seq.peek("m2") == 1


def test_sequencer_refuses_gaps() -> None:
    seq = MatchSequencer()
    seq.seed("m1", 4)
    with pytest.raises(OutOfSequenceError):
        seq.commit("m1", 6)
    seq.commit("m1", 5)
