"""Built-in rulesets published at startup."""
from __future__ import annotations

from typing import Any

# Soccer points follow the match-scoring projection of the legacy event store.
SOCCER_V1: dict[str, Any] = {
    "sport_id": "soccer",
    "version": 1,
    "description": "Standard soccer scoring",
    "rules": [
        {
            "rule_id": "soccer.goal",
            "event_type": "goal",
            "base_points": "10",
            "bonus_thresholds": [{"count": 3, "points": "5", "label": "hat-trick"}],
        },
        {"rule_id": "soccer.assist", "event_type": "assist", "base_points": "5"},
        {"rule_id": "soccer.yellow_card", "event_type": "yellow_card", "base_points": "-2"},
        {"rule_id": "soccer.red_card", "event_type": "red_card", "base_points": "-5"},
        {"rule_id": "soccer.own_goal", "event_type": "own_goal", "base_points": "-3"},
        {"rule_id": "soccer.penalty_miss", "event_type": "penalty_miss", "base_points": "-3"},
        {"rule_id": "soccer.penalty_save", "event_type": "penalty_save", "base_points": "5"},
        {"rule_id": "soccer.clean_sheet", "event_type": "clean_sheet", "base_points": "4"},
        {
            "rule_id": "soccer.save",
            "event_type": "save",
            "base_points": "0",
            "bonus_thresholds": [{"count": 3, "points": "1"}, {"count": 6, "points": "1"}],
        },
    ],
}

BASKETBALL_V1: dict[str, Any] = {
    "sport_id": "basketball",
    "version": 1,
    "description": "Standard basketball scoring",
    "rules": [
        {"rule_id": "basketball.basket", "event_type": "basket", "base_points": "2"},
        {"rule_id": "basketball.three_pointer", "event_type": "three_pointer", "base_points": "3"},
        {"rule_id": "basketball.free_throw", "event_type": "free_throw", "base_points": "1"},
        {"rule_id": "basketball.rebound", "event_type": "rebound", "base_points": "1.2"},
        {"rule_id": "basketball.assist", "event_type": "assist", "base_points": "1.5"},
        {"rule_id": "basketball.steal", "event_type": "steal", "base_points": "3"},
        {"rule_id": "basketball.block", "event_type": "block", "base_points": "3"},
        {"rule_id": "basketball.turnover", "event_type": "turnover", "base_points": "-1"},
    ],
}

HOCKEY_V1: dict[str, Any] = {
    "sport_id": "hockey",
    "version": 1,
    "description": "Standard hockey scoring",
    "rules": [
        {
            "rule_id": "hockey.goal",
            "event_type": "goal",
            "base_points": "6",
            "bonus_thresholds": [{"count": 3, "points": "3", "label": "hat-trick"}],
        },
        {"rule_id": "hockey.assist", "event_type": "assist", "base_points": "4"},
        {"rule_id": "hockey.shot_on_goal", "event_type": "shot_on_goal", "base_points": "0.9"},
        {"rule_id": "hockey.block", "event_type": "block", "base_points": "1"},
        {"rule_id": "hockey.save", "event_type": "save", "base_points": "0.6"},
    ],
}

DEFAULT_RULESETS: list[dict[str, Any]] = [SOCCER_V1, BASKETBALL_V1, HOCKEY_V1]
