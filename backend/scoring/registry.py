"""
Versioned ruleset registry.

Published versions are immutable. Re-publishing identical content is a no-op;
different content under an existing (sport, version) raises.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from shared.errors import RulesetConflictError, RulesetNotFoundError
from shared.utils.logging import get_logger

from scoring.defaults import DEFAULT_RULESETS
from scoring.rules import ScoringRuleSet

logger = get_logger(__name__)


class RulesetRegistry:
    def __init__(self) -> None:
        self._rulesets: dict[tuple[str, int], ScoringRuleSet] = {}

    @classmethod
    def with_defaults(cls, rulesets_path: Optional[str] = None) -> "RulesetRegistry":
        registry = cls()
        registry.publish_many(DEFAULT_RULESETS)
        if rulesets_path:
            registry.load_file(rulesets_path)
        return registry

    def publish(self, ruleset: ScoringRuleSet | dict[str, Any]) -> ScoringRuleSet:
        if isinstance(ruleset, dict):
            ruleset = ScoringRuleSet.model_validate(ruleset)
        key = (ruleset.sport_id, ruleset.version)
        existing = self._rulesets.get(key)
        if existing is not None:
            if existing.content_hash() != ruleset.content_hash():
                raise RulesetConflictError(
                    f"ruleset {ruleset.sport_id} v{ruleset.version} is already published with different content"
                )
            return existing
        self._rulesets[key] = ruleset
        logger.info(
            "ruleset_published",
            sport=ruleset.sport_id,
            version=ruleset.version,
            rules=len(ruleset.rules),
        )
        return ruleset

    def publish_many(self, rulesets: Iterable[ScoringRuleSet | dict[str, Any]]) -> None:
        for ruleset in rulesets:
            self.publish(ruleset)

    def load_file(self, path: str | Path) -> int:
        """Publish every ruleset in a JSON file (a list, or a single object)."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        items = data if isinstance(data, list) else [data]
        try:
            rulesets = [ScoringRuleSet.model_validate(item) for item in items]
        except ValidationError as exc:
            raise RulesetConflictError(f"invalid ruleset file {path}: {exc}") from exc
        self.publish_many(rulesets)
        return len(rulesets)

    def get(self, sport_id: str, version: int) -> ScoringRuleSet:
        try:
            return self._rulesets[(sport_id, version)]
        except KeyError:
            raise RulesetNotFoundError(f"no ruleset {sport_id} v{version}") from None

    def latest(self, sport_id: str) -> ScoringRuleSet:
        versions = [v for (s, v) in self._rulesets if s == sport_id]
        if not versions:
            raise RulesetNotFoundError(f"no ruleset published for sport '{sport_id}'")
        return self._rulesets[(sport_id, max(versions))]

    def sports(self) -> set[str]:
        return {s for (s, _v) in self._rulesets}

    def versions(self, sport_id: str) -> list[int]:
        return sorted(v for (s, v) in self._rulesets if s == sport_id)
