"""Domain enumerations for the Scorekeeper platform."""
from __future__ import annotations

from enum import Enum


class Sport(str, Enum):
    SOCCER = "soccer"
    BASKETBALL = "basketball"
    HOCKEY = "hockey"
    BASEBALL = "baseball"
    FOOTBALL = "football"


class EventType(str, Enum):
    """Well-known event types. Rulesets may score any other string too."""
    GOAL = "goal"
    ASSIST = "assist"
    YELLOW_CARD = "yellow_card"
    RED_CARD = "red_card"
    OWN_GOAL = "own_goal"
    PENALTY_MISS = "penalty_miss"
    PENALTY_SAVE = "penalty_save"
    CLEAN_SHEET = "clean_sheet"
    MATCH_START = "match_start"
    MATCH_END = "match_end"
    BASKET = "basket"
    THREE_POINTER = "three_pointer"
    FREE_THROW = "free_throw"
    REBOUND = "rebound"
    TURNOVER = "turnover"
    STEAL = "steal"
    BLOCK = "block"
    SAVE = "save"
    SHOT_ON_GOAL = "shot_on_goal"


# Event types that drive the match state machine rather than scoring.
LIFECYCLE_EVENT_TYPES = frozenset({EventType.MATCH_START.value, EventType.MATCH_END.value})


class MatchStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    RESOLVED = "resolved"

    @property
    def is_terminal(self) -> bool:
        return self == MatchStatus.RESOLVED


class EntryKind(str, Enum):
    MATCH_OPENED = "match_opened"
    EVENT_ACCEPTED = "event_accepted"
    POINT_DELTA = "point_delta"
    COMPENSATING_DELTA = "compensating_delta"
    STATUS_CHANGED = "status_changed"


class TrustLevel(str, Enum):
    HIGH = "high"
    LOW = "low"


class QuarantineReason(str, Enum):
    UNCORROBORATED = "uncorroborated"
    OUT_OF_ORDER = "out_of_order"
    TIMESTAMP_GAP = "timestamp_gap"
    MATCH_CLOSED = "match_closed"
    ILLEGAL_TRANSITION = "illegal_transition"


class QuarantineStatus(str, Enum):
    HELD = "held"
    APPROVED = "approved"
    REJECTED = "rejected"
    CORROBORATED = "corroborated"


class ChangeKind(str, Enum):
    VOID_EVENT = "void_event"
    REASSIGN_PLAYER = "reassign_player"
    ADJUST_POINTS = "adjust_points"


class CorrectionStatus(str, Enum):
    PENDING = "pending"
    SIMULATED = "simulated"
    APPROVED = "approved"
    APPLIED = "applied"
    REJECTED = "rejected"
    ROLLED_BACK = "rolled_back"


class ApproverRole(str, Enum):
    """Approval tiers, ordered by authority."""
    COMMISSIONER = "commissioner"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return {ApproverRole.COMMISSIONER: 1, ApproverRole.ADMIN: 2}[self]


class AuditKind(str, Enum):
    CORRECTION_APPLIED = "correction_applied"
    CORRECTION_REJECTED = "correction_rejected"
    CORRECTION_ROLLED_BACK = "correction_rolled_back"
    QUARANTINE_HELD = "quarantine_held"
    QUARANTINE_APPROVED = "quarantine_approved"
    QUARANTINE_REJECTED = "quarantine_rejected"
    QUARANTINE_CORROBORATED = "quarantine_corroborated"
    MATCH_UNDER_REVIEW = "match_under_review"


class TieBreakPhase(str, Enum):
    REGULAR_SEASON = "regular_season"
    PLAYOFF = "playoff"


class TieBreakCriterion(str, Enum):
    RESERVE_TOTAL = "reserve_total"
    KEY_PLAYER = "key_player"
    HEAD_TO_HEAD = "head_to_head"
    ADVANCED_METRIC = "advanced_metric"
    VIRTUAL_EXTENSION = "virtual_extension"
    SUDDEN_DEATH = "sudden_death"
    SEEDED_DRAW = "seeded_draw"
