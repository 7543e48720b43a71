"""
Error taxonomy for the scoring engine.

Ingestion errors are raised per event and never fail a batch; resolver
errors flag only the affected match. Every class carries enough context for
the audit trail and for the API error handler.
"""
from __future__ import annotations

from typing import Any, Optional


class ScoringEngineError(Exception):
    """Base class for all engine errors."""

    code = "engine_error"

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": str(self)}


# ── Ingestion ───────────────────────────────────────────────────────────


class InvalidEventError(ScoringEngineError):
    """Malformed or missing field; the event never enters the ledger."""

    code = "invalid_event"

    def __init__(self, field: str, message: str = "") -> None:
        self.field = field
        super().__init__(f"invalid field '{field}'" + (f": {message}" if message else ""))

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "field": self.field, "detail": str(self)}


class DuplicateEvent(ScoringEngineError):
    """Exact idempotency-key match; dropped and logged."""

    code = "duplicate_event"

    def __init__(self, provider_id: str, event_id: str) -> None:
        self.provider_id = provider_id
        self.event_id = event_id
        super().__init__(f"duplicate event {provider_id}/{event_id}")


class QuarantineError(ScoringEngineError):
    """Event held for manual review; never auto-scored."""

    code = "quarantined"

    def __init__(self, reason: str, quarantine_id: Optional[str] = None) -> None:
        self.reason = reason
        self.quarantine_id = quarantine_id
        super().__init__(f"event quarantined: {reason}")

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "reason": self.reason, "quarantine_id": self.quarantine_id}


# ── Rules ───────────────────────────────────────────────────────────────


class RuleEvaluationError(ScoringEngineError):
    """Ruleset misconfiguration or missing context for a rule."""

    code = "rule_evaluation_failed"

    def __init__(self, rule_id: str, message: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"rule '{rule_id}': {message}")


class RulesetNotFoundError(ScoringEngineError):
    code = "ruleset_not_found"


class RulesetConflictError(ScoringEngineError):
    """A published ruleset version cannot be replaced."""

    code = "ruleset_conflict"


# ── Ledger / resolver ───────────────────────────────────────────────────


class OutOfSequenceError(ScoringEngineError):
    """Append rejected because it does not extend the current head."""

    code = "out_of_sequence"

    def __init__(self, match_id: str, expected: int, actual: int) -> None:
        self.match_id = match_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"match {match_id}: expected sequence {expected}, got {actual}")


class LedgerCorruptionError(ScoringEngineError):
    """Hash chain or sequencing broken in a stored ledger segment."""

    code = "ledger_corrupt"

    def __init__(self, match_id: str, ledger_sequence: int, message: str) -> None:
        self.match_id = match_id
        self.ledger_sequence = ledger_sequence
        super().__init__(f"match {match_id} entry {ledger_sequence}: {message}")


class InvalidTransitionError(ScoringEngineError):
    code = "invalid_transition"


class LeaseTimeoutError(ScoringEngineError):
    """The per-match writer lease could not be acquired in time."""

    code = "lease_timeout"

    def __init__(self, match_id: str, timeout_s: float) -> None:
        self.match_id = match_id
        self.timeout_s = timeout_s
        super().__init__(f"lease for match {match_id} not acquired within {timeout_s}s")


class MatchNotFoundError(ScoringEngineError):
    code = "match_not_found"


# ── Projections ─────────────────────────────────────────────────────────


class ProjectionRebuildFailure(ScoringEngineError):
    """Fold failed and no known-good snapshot was available."""

    code = "projection_rebuild_failed"


# ── Corrections ─────────────────────────────────────────────────────────


class CorrectionConflict(ScoringEngineError):
    """Concurrent edit on the same match; the caller retries."""

    code = "correction_conflict"


class CorrectionNotFoundError(ScoringEngineError):
    code = "correction_not_found"


class ApprovalError(ScoringEngineError):
    """Approver lacks the required tier, or the correction is not approvable."""

    code = "approval_error"


class QuarantineNotFoundError(ScoringEngineError):
    code = "quarantine_not_found"
