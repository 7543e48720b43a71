"""
Match state machine.

    SCHEDULED -> IN_PROGRESS -> FINISHED -> RESOLVED

``UNDER_REVIEW`` is an overlay flag on the projection, not a status: it is set
on rule failure or while a correction applies, and cleared explicitly.
RESOLVED is terminal and requires FINISHED with nothing under dispute.
"""
from __future__ import annotations

from typing import Iterable

from shared.errors import InvalidTransitionError
from shared.models.domain import MatchProjection
from shared.models.enums import EventType, MatchStatus

_LIFECYCLE: dict[str, tuple[frozenset[MatchStatus], MatchStatus]] = {
    EventType.MATCH_START.value: (frozenset({MatchStatus.SCHEDULED}), MatchStatus.IN_PROGRESS),
    EventType.MATCH_END.value: (frozenset({MatchStatus.IN_PROGRESS}), MatchStatus.FINISHED),
}


def lifecycle_transition(current: MatchStatus, event_type: str) -> MatchStatus:
    """Next status for a lifecycle event, or raise if it is illegal from ``current``."""
    allowed, target = _LIFECYCLE[event_type]
    if current not in allowed:
        raise InvalidTransitionError(f"{event_type} not allowed while match is {current.value}")
    return target


def ensure_open(projection: MatchProjection) -> None:
    if projection.status.is_terminal:
        raise InvalidTransitionError(f"match {projection.match_id} is resolved and closed to events")


def ensure_resolvable(projection: MatchProjection, disputes: Iterable[str]) -> None:
    if projection.status != MatchStatus.FINISHED:
        raise InvalidTransitionError(
            f"match {projection.match_id} is {projection.status.value}, only finished matches resolve"
        )
    blockers = list(disputes)
    if projection.under_review:
        blockers.extend(f"review:{r}" for r in projection.review_reasons or ["unspecified"])
    if blockers:
        raise InvalidTransitionError(
            f"match {projection.match_id} has open disputes: {', '.join(sorted(blockers))}"
        )
