"""Shared fixtures: an in-memory engine and a provider event factory."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from shared.bootstrap import EngineContext, build_in_memory_context
from shared.config import Settings

KICKOFF = datetime(2026, 3, 14, 15, 0, tzinfo=timezone.utc)

EventFactory = Callable[..., dict[str, Any]]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        provider_trust={"opta": "high", "statsfeed": "high", "scout": "low", "fanwire": "low"},
        corroboration_timeout_s=0.05,
        lease_timeout_s=1.0,
        projection_snapshot_interval=5,
        metrics_enabled=False,
    )


@pytest.fixture
def ctx(settings: Settings) -> EngineContext:
    return build_in_memory_context(settings)


@pytest.fixture
def make_event() -> EventFactory:
    """Raw provider payloads; the timestamp follows the match minute."""

    def factory(
        event_id: str,
        event_type: str = "goal",
        player_id: str = "p1",
        minute: int = 10,
        match_id: str = "m1",
        provider_id: str = "opta",
        sport_id: str = "soccer",
        **metadata: Any,
    ) -> dict[str, Any]:
        return {
            "event_id": event_id,
            "match_id": match_id,
            "player_id": player_id,
            "sport_id": sport_id,
            "event_type": event_type,
            "timestamp": (KICKOFF + timedelta(minutes=minute)).isoformat(),
            "minute": minute,
            "provider_id": provider_id,
            "metadata": metadata,
        }

    return factory
