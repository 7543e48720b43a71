"""
Intake validation: RawProviderEvent -> CanonicalEvent.

Any problem is reported as ``InvalidEventError`` naming the first offending
field; invalid events never reach dedup, sequencing or the ledger.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional

from pydantic import ValidationError

from shared.config import Settings, get_settings
from shared.errors import InvalidEventError
from shared.models.domain import CanonicalEvent, RawProviderEvent
from shared.models.enums import Sport

REQUIRED_TEXT_FIELDS = ("event_id", "match_id", "player_id", "sport_id", "event_type", "provider_id")


def validate_event(
    raw: RawProviderEvent | dict[str, Any],
    settings: Optional[Settings] = None,
    known_sports: Optional[Iterable[str]] = None,
) -> CanonicalEvent:
    settings = settings or get_settings()
    if isinstance(raw, dict):
        if "sequence_number" in raw:
            raise InvalidEventError("sequence_number", "assigned at acceptance, not by providers")
        try:
            raw = RawProviderEvent.model_validate(raw)
        except ValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(p) for p in first["loc"]) or "event"
            raise InvalidEventError(field, first["msg"]) from None

    values = raw.model_dump()
    for name in REQUIRED_TEXT_FIELDS:
        text = values[name].strip()
        if not text:
            raise InvalidEventError(name, "must not be empty")
        values[name] = text

    values["event_type"] = values["event_type"].lower()
    values["sport_id"] = values["sport_id"].lower()

    sports = set(known_sports) if known_sports is not None else {s.value for s in Sport}
    if values["sport_id"] not in sports:
        raise InvalidEventError("sport_id", f"unknown sport '{values['sport_id']}'")

    if not 0 <= raw.minute <= settings.max_minute:
        raise InvalidEventError("minute", f"must be within 0..{settings.max_minute}")

    if raw.timestamp.tzinfo is None or raw.timestamp.utcoffset() is None:
        raise InvalidEventError("timestamp", "must be timezone-aware")

    return CanonicalEvent(**values)
