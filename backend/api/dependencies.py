"""
Dependency injection for the API service.
Provides the engine context and its components to route handlers.
"""
from __future__ import annotations

from shared.bootstrap import EngineContext

from corrections.audit import AuditLog
from corrections.pipeline import CorrectionPipeline
from ingest.service import IngestionService
from projections.builder import ProjectionBuilder
from scoring.resolver import ScoringResolver
from tiebreak.resolver import TieBreakResolver

# Module-level singleton, initialized at startup
_context: EngineContext | None = None


def init_dependencies(context: EngineContext) -> None:
    """Initialize the module-level engine context. Called once at startup."""
    global _context
    _context = context


def get_context() -> EngineContext:
    """FastAPI dependency: returns the shared EngineContext."""
    if _context is None:
        raise RuntimeError("EngineContext not initialized, call init_dependencies first")
    return _context


def get_ingestion() -> IngestionService:
    return get_context().ingestion


def get_resolver() -> ScoringResolver:
    return get_context().resolver


def get_builder() -> ProjectionBuilder:
    return get_context().builder


def get_corrections() -> CorrectionPipeline:
    return get_context().corrections


def get_audit() -> AuditLog:
    return get_context().audit


def get_tiebreak() -> TieBreakResolver:
    return get_context().tiebreak
