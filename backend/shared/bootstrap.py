"""
Wiring for the engine components.

``build_in_memory_context`` assembles a single-process engine (tests, local
runs). ``build_context`` uses Postgres for the ledger, audit trail and
snapshots and Redis for dedup, leases, provider queues and notifications.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from shared.config import Settings, get_settings
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger
from shared.utils.redis_manager import RedisManager

from corrections.audit import AuditLog, InMemoryAuditLog, SqlAuditLog
from corrections.notifier import InMemoryNotifier, Notifier, RedisNotifier
from corrections.pipeline import CorrectionPipeline
from ingest.dedup import DedupWindow, InMemoryDedupWindow, RedisDedupWindow
from ingest.quarantine import QuarantineStore
from ingest.queue import InMemoryProviderQueue, ProviderQueue, RedisProviderQueue
from ingest.sequencer import MatchSequencer
from ingest.service import IngestionService
from ingest.verification import CrossVerifier
from projections.builder import ProjectionBuilder
from projections.snapshots import InMemorySnapshotStore, SnapshotStore, SqlSnapshotStore
from scoring.lease import LocalLeaseManager, MatchLeaseManager, RedisLeaseManager
from scoring.ledger import InMemoryLedgerStore, LedgerStore, SqlLedgerStore
from scoring.registry import RulesetRegistry
from scoring.resolver import ScoringResolver
from tiebreak.resolver import TieBreakResolver

logger = get_logger(__name__)


@dataclass
class EngineContext:
    settings: Settings
    registry: RulesetRegistry
    ledger: LedgerStore
    leases: MatchLeaseManager
    sequencer: MatchSequencer
    notifier: Notifier
    resolver: ScoringResolver
    dedup: DedupWindow
    verifier: CrossVerifier
    quarantine: QuarantineStore
    audit: AuditLog
    snapshots: SnapshotStore
    builder: ProjectionBuilder
    corrections: CorrectionPipeline
    ingestion: IngestionService
    tiebreak: TieBreakResolver
    queue: ProviderQueue
    redis: Optional[RedisManager] = None
    db: Optional[DatabaseManager] = None

    async def close(self) -> None:
        if self.db is not None:
            await self.db.disconnect()
        if self.redis is not None:
            await self.redis.disconnect()


def _assemble(
    settings: Settings,
    ledger: LedgerStore,
    leases: MatchLeaseManager,
    notifier: Notifier,
    dedup: DedupWindow,
    audit: AuditLog,
    snapshots: SnapshotStore,
    queue: ProviderQueue,
) -> EngineContext:
    registry = RulesetRegistry.with_defaults(settings.rulesets_path)
    sequencer = MatchSequencer()
    resolver = ScoringResolver(ledger, registry, leases, sequencer=sequencer, notifier=notifier)
    verifier = CrossVerifier(settings)
    quarantine = QuarantineStore()
    builder = ProjectionBuilder(ledger, snapshots, settings)
    corrections = CorrectionPipeline(resolver, builder, audit, notifier, settings)
    resolver.add_dispute_check(quarantine.open_for_match)
    resolver.add_dispute_check(corrections.pending_for_match)
    ingestion = IngestionService(resolver, dedup, verifier, quarantine, audit, notifier, settings)
    return EngineContext(
        settings=settings,
        registry=registry,
        ledger=ledger,
        leases=leases,
        sequencer=sequencer,
        notifier=notifier,
        resolver=resolver,
        dedup=dedup,
        verifier=verifier,
        quarantine=quarantine,
        audit=audit,
        snapshots=snapshots,
        builder=builder,
        corrections=corrections,
        ingestion=ingestion,
        tiebreak=TieBreakResolver(),
        queue=queue,
    )


def build_in_memory_context(settings: Optional[Settings] = None) -> EngineContext:
    settings = settings or get_settings()
    return _assemble(
        settings,
        ledger=InMemoryLedgerStore(),
        leases=LocalLeaseManager(settings.lease_timeout_s),
        notifier=InMemoryNotifier(),
        dedup=InMemoryDedupWindow.from_settings(settings),
        audit=InMemoryAuditLog(),
        snapshots=InMemorySnapshotStore(),
        queue=InMemoryProviderQueue(),
    )


async def build_context(settings: Optional[Settings] = None) -> EngineContext:
    settings = settings or get_settings()
    redis = RedisManager(settings)
    db = DatabaseManager(settings)
    await redis.connect()
    await db.connect()
    if settings.database_url.startswith("sqlite"):
        await db.create_schema()

    ctx = _assemble(
        settings,
        ledger=SqlLedgerStore(db),
        leases=RedisLeaseManager(redis, settings),
        notifier=RedisNotifier(redis),
        dedup=RedisDedupWindow(redis, settings),
        audit=SqlAuditLog(db),
        snapshots=SqlSnapshotStore(db),
        queue=RedisProviderQueue(redis),
    )
    ctx.redis = redis
    ctx.db = db
    logger.info("engine_context_ready", instance_id=settings.instance_id, rulesets=ctx.registry.sports())
    return ctx
