"""
API route tests against an in-memory engine context (no Postgres or Redis).

Run: pytest backend/tests/test_api.py -v
"""
from __future__ import annotations

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from shared.bootstrap import build_in_memory_context
from shared.config import Settings
from api.app import create_app


@pytest.fixture
def client(settings: Settings) -> TestClient:
    app = create_app(context=build_in_memory_context(settings))
    with TestClient(app) as c:
        yield c


def _submit(client: TestClient, payload: dict):
    return client.post("/v1/events", json=payload)


# ── System ──────────────────────────────────────────────────────────────

def test_health_returns_ok(client: TestClient) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "service": "api"}


def test_ready_without_backing_services(client: TestClient) -> None:
    r = client.get("/ready")
    assert r.json() == {"status": "ok", "redis": True, "database": True}


def test_request_id_is_echoed(client: TestClient) -> None:
    r = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert r.headers["X-Request-ID"] == "abc123"
    assert client.get("/health").headers["X-Request-ID"]


# ── Events ──────────────────────────────────────────────────────────────

def test_event_intake_status_codes(client: TestClient, make_event) -> None:
    r = _submit(client, make_event("g1", minute=12))
    assert r.status_code == 201
    body = r.json()
    assert body["sequence_number"] == 1
    assert body["scored"] is True
    assert Decimal(body["deltas"][0]["points"]) == Decimal("10")

    r = _submit(client, make_event("g1", minute=12))
    assert r.status_code == 200
    assert r.json()["duplicate"] is True

    r = _submit(client, make_event("bad", minute=-4))
    assert r.status_code == 422
    assert r.json()["field"] == "minute"
    assert "request_id" in r.json()


def test_low_trust_event_is_quarantined_then_approved(client: TestClient, make_event) -> None:
    r = _submit(client, make_event("s1", provider_id="scout", minute=20))
    assert r.status_code == 202
    quarantine_id = r.json()["quarantine_id"]
    assert r.json()["reason"] == "uncorroborated"

    held = client.get("/v1/quarantine", params={"status": "held"}).json()
    assert [q["quarantine_id"] for q in held] == [quarantine_id]

    r = client.post(f"/v1/quarantine/{quarantine_id}/approve", json={"operator": "ops-1"})
    assert r.status_code == 200
    assert r.json()["scored"] is True

    r = client.post(f"/v1/quarantine/{quarantine_id}/approve", json={"operator": "ops-1"})
    assert r.status_code == 403

    kinds = [a["kind"] for a in client.get("/v1/audit", params={"match_id": "m1"}).json()]
    assert kinds == ["quarantine_held", "quarantine_approved"]


def test_enqueue_accepts_for_worker(client: TestClient, make_event) -> None:
    r = client.post("/v1/events/enqueue", json=make_event("g1"))
    assert r.status_code == 202
    assert r.json()["provider_id"] == "opta"


# ── Matches ─────────────────────────────────────────────────────────────

def test_projection_and_ledger(client: TestClient, make_event) -> None:
    for i, minute in enumerate((5, 15, 25), start=1):
        _submit(client, make_event(f"g{i}", minute=minute))

    projection = client.get("/v1/matches/m1/projection").json()
    assert Decimal(projection["total_points"]) == Decimal("35")
    assert projection["players"]["p1"]["event_counts"] == {"goal": 3}

    early = client.get("/v1/matches/m1/projection", params={"as_of": 3}).json()
    assert Decimal(early["total_points"]) == Decimal("10")

    player = client.get("/v1/matches/m1/players/p1").json()
    assert [b["rule_id"] for b in player["breakdown"]][-1] == "soccer.goal:bonus:3"

    ledger = client.get("/v1/matches/m1/ledger").json()
    assert ledger["verified"] is True
    assert ledger["head"] == len(ledger["entries"]) == 8
    assert client.get("/v1/matches/m1/ledger", params={"after": 6}).json()["entries"][0]["ledger_sequence"] == 7

    replay = client.post("/v1/matches/m1/replay").json()
    assert replay["matches"] is True


def test_unknown_match_is_404(client: TestClient) -> None:
    r = client.get("/v1/matches/nope/ledger")
    assert r.status_code == 404
    assert r.json()["error"] == "match_not_found"


def test_open_and_resolve_match(client: TestClient, make_event) -> None:
    r = client.post("/v1/matches", json={"match_id": "m9", "sport_id": "soccer", "season_id": "2026"})
    assert r.status_code == 201
    assert r.json()["ruleset_version"] == 1

    r = client.post("/v1/matches/m9/resolve", json={})
    assert r.status_code == 409

    for event_id, event_type, minute in (("s", "match_start", 0), ("e", "match_end", 25)):
        _submit(client, make_event(event_id, event_type=event_type, player_id="match", minute=minute, match_id="m9"))
    r = client.post("/v1/matches/m9/resolve", json={"actor": "ops-1"})
    assert r.status_code == 200
    assert r.json()["status"] == "resolved"


def test_player_season(client: TestClient, make_event) -> None:
    _submit(client, make_event("g1", season_id="2026"))
    _submit(client, make_event("g2", match_id="m2", season_id="2026"))
    season = client.get("/v1/players/p1/seasons/2026").json()
    assert Decimal(season["total_points"]) == Decimal("20")
    assert sorted(season["match_points"]) == ["m1", "m2"]


# ── Corrections ─────────────────────────────────────────────────────────

def test_correction_flow(client: TestClient, make_event) -> None:
    _submit(client, make_event("g1", minute=12))
    _submit(client, make_event("g2", minute=31))

    r = client.post("/v1/corrections", json={
        "match_id": "m1",
        "target_event_id": "g2",
        "reason": "VAR_OVERTURNED",
        "proposed_change": {"kind": "void_event"},
        "submitted_by": "desk-1",
    })
    assert r.status_code == 201
    correction_id = r.json()["correction_id"]

    impact = client.post(f"/v1/corrections/{correction_id}/simulate").json()
    assert Decimal(impact["after_total"]) == Decimal("10")

    r = client.post(f"/v1/corrections/{correction_id}/approve", json={"approver_id": "c1", "role": "commissioner"})
    assert r.json()["status"] == "simulated"
    r = client.post(f"/v1/corrections/{correction_id}/approve", json={"approver_id": "c1", "role": "admin"})
    assert r.status_code == 403
    r = client.post(f"/v1/corrections/{correction_id}/approve", json={"approver_id": "a1", "role": "admin"})
    assert r.json()["status"] == "applied"

    projection = client.get("/v1/matches/m1/projection").json()
    assert Decimal(projection["total_points"]) == Decimal("10")
    assert projection["voided_event_ids"] == ["g2"]

    listed = client.get("/v1/corrections", params={"match_id": "m1", "status": "applied"}).json()
    assert [c["correction_id"] for c in listed] == [correction_id]
    [record] = client.get("/v1/audit", params={"kind": "correction_applied"}).json()
    assert record["subject_id"] == correction_id


def test_correction_not_found(client: TestClient) -> None:
    assert client.get("/v1/corrections/missing").status_code == 404


def test_correction_body_is_validated(client: TestClient) -> None:
    r = client.post("/v1/corrections", json={
        "match_id": "m1",
        "target_event_id": "g1",
        "reason": "typo",
        "proposed_change": {"kind": "adjust_points"},
        "submitted_by": "desk-1",
    })
    assert r.status_code == 422


# ── Tie-break ───────────────────────────────────────────────────────────

def test_tiebreak_resolve(client: TestClient) -> None:
    r = client.post("/v1/tiebreak/resolve", json={
        "config": {
            "league_id": "premier-fantasy",
            "criteria": [{"kind": "reserve_total"}, {"kind": "head_to_head"}],
        },
        "season_id": "2026",
        "round_id": "r10",
        "teams": [
            {"team_id": "lions", "total_points": "120", "reserve_points": "31.5"},
            {"team_id": "bears", "total_points": "120", "reserve_points": "31.5", "head_to_head_wins": {"lions": 1}},
        ],
    })
    assert r.status_code == 200
    assert r.json()["ranking"] == ["bears", "lions"]
    assert r.json()["decided_by"]["bears"] == "head_to_head"


def test_tiebreak_refuses_playoff_criteria_in_regular_season(client: TestClient) -> None:
    r = client.post("/v1/tiebreak/resolve", json={
        "config": {"league_id": "l", "criteria": [{"kind": "sudden_death"}]},
        "season_id": "2026",
        "round_id": "r1",
        "teams": [],
    })
    assert r.status_code == 422


def test_season_tiebreak_from_projections(client: TestClient, make_event) -> None:
    _submit(client, make_event("g1", player_id="p1", season_id="2026"))
    _submit(client, make_event("g2", player_id="p2", minute=20, season_id="2026"))
    r = client.post("/v1/tiebreak/resolve-season", json={
        "config": {"league_id": "l", "criteria": [{"kind": "key_player"}]},
        "season_id": "2026",
        "round_id": "r1",
        "rosters": [
            {"team_id": "a", "starters": ["p1"], "key_player_id": "p1"},
            {"team_id": "b", "starters": ["p2"]},
        ],
    })
    assert r.status_code == 200
    assert r.json()["ranking"] == ["a", "b"]
