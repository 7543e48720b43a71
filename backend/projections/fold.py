"""
Pure left folds from ledger entries to read views.

``apply_entry`` is the single step shared by full rebuilds, incremental
updates and the resolver's running match context, so every path produces the
same projection for the same ledger prefix.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional

from shared.models.domain import (
    BreakdownLine,
    LedgerEntry,
    MatchProjection,
    PlayerMatchProjection,
    PlayerSeasonProjection,
    quantize_points,
)
from shared.models.enums import LIFECYCLE_EVENT_TYPES, EntryKind, MatchStatus

COMPLETED_STATUSES = frozenset({MatchStatus.FINISHED, MatchStatus.RESOLVED})


def _player(projection: MatchProjection, player_id: str) -> PlayerMatchProjection:
    player = projection.players.get(player_id)
    if player is None:
        player = PlayerMatchProjection(match_id=projection.match_id, player_id=player_id)
        projection.players[player_id] = player
    return player


def _bump(counts: dict[str, int], event_type: str, step: int) -> None:
    value = counts.get(event_type, 0) + step
    if value:
        counts[event_type] = value
    else:
        counts.pop(event_type, None)


def apply_entry(projection: MatchProjection, entry: LedgerEntry) -> None:
    """Fold one entry into ``projection`` in place."""
    if entry.kind == EntryKind.MATCH_OPENED:
        info = entry.match_info()
        projection.sport_id = info.sport_id
        projection.league_id = info.league_id
        projection.season_id = info.season_id
        projection.ruleset_version = info.ruleset_version

    elif entry.kind == EntryKind.EVENT_ACCEPTED:
        event = entry.event()
        projection.event_count += 1
        projection.last_event_sequence = event.sequence_number or projection.last_event_sequence
        projection.max_minute = max(projection.max_minute, event.minute)
        if projection.latest_event_at is None or event.timestamp > projection.latest_event_at:
            projection.latest_event_at = event.timestamp
        if event.event_type not in LIFECYCLE_EVENT_TYPES:
            _bump(_player(projection, event.player_id).event_counts, event.event_type, 1)
            if not entry.payload.get("scored", True):
                projection.unscored_event_ids.append(event.event_id)

    elif entry.kind in (EntryKind.POINT_DELTA, EntryKind.COMPENSATING_DELTA):
        delta = entry.delta()
        player = _player(projection, delta.player_id)
        points = quantize_points(delta.points)
        player.total_points = quantize_points(player.total_points + points)
        projection.total_points = quantize_points(projection.total_points + points)
        player.breakdown.append(BreakdownLine(
            ledger_sequence=entry.ledger_sequence,
            event_id=delta.event_id,
            rule_id=delta.rule_id,
            points=points,
            explanation=delta.explanation,
            compensates_sequence=delta.compensates_sequence,
            correction_id=delta.correction_id,
        ))
        if delta.voids_event_id and delta.voids_event_id not in projection.voided_event_ids:
            projection.voided_event_ids.append(delta.voids_event_id)
            if delta.voids_event_id in projection.unscored_event_ids:
                projection.unscored_event_ids.remove(delta.voids_event_id)
            _bump(player.event_counts, delta.event_type, -1)
        if delta.restores_event_id and delta.restores_event_id in projection.voided_event_ids:
            projection.voided_event_ids.remove(delta.restores_event_id)
            _bump(player.event_counts, delta.event_type, 1)

    elif entry.kind == EntryKind.STATUS_CHANGED:
        change = entry.status_change()
        projection.status = change.status
        if change.under_review is True:
            projection.under_review = True
            if change.reason and change.reason not in projection.review_reasons:
                projection.review_reasons.append(change.reason)
        elif change.under_review is False:
            if not change.reason:
                projection.review_reasons.clear()
            elif change.reason in projection.review_reasons:
                projection.review_reasons.remove(change.reason)
            projection.under_review = bool(projection.review_reasons)

    projection.ledger_version = entry.ledger_sequence
    projection.head_hash = entry.entry_hash


def fold_match(
    match_id: str, entries: Iterable[LedgerEntry], upto: Optional[int] = None
) -> MatchProjection:
    projection = MatchProjection(match_id=match_id)
    for entry in entries:
        if upto is not None and entry.ledger_sequence > upto:
            break
        apply_entry(projection, entry)
    return projection


def fold_player_season(
    projections: Iterable[MatchProjection], player_id: str, season_id: str
) -> PlayerSeasonProjection:
    """
    Season view for one player. Matches are visited in match_id order, so the
    result does not depend on the order partitions were rebuilt in.
    """
    season = PlayerSeasonProjection(player_id=player_id, season_id=season_id)
    total = Decimal("0.00")
    for projection in sorted(projections, key=lambda p: p.match_id):
        if projection.season_id != season_id:
            continue
        player = projection.players.get(player_id)
        if player is None:
            continue
        if projection.status in COMPLETED_STATUSES and (player.event_counts or player.breakdown):
            season.games_played += 1
        total += player.total_points
        season.match_points[projection.match_id] = player.total_points
        for event_type, count in sorted(player.event_counts.items()):
            _bump(season.event_counts, event_type, count)
    season.total_points = quantize_points(total)
    if season.games_played:
        season.average_points_per_game = quantize_points(total / season.games_played)
    return season
