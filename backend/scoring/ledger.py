"""
Append-only, hash-chained match ledger.

Each match has its own chain starting at ``GENESIS_HASH``. ``append`` only
extends the current head: callers pass the sequence they believe is the head
and a mismatch raises ``OutOfSequenceError`` without writing anything.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from shared.errors import LedgerCorruptionError, OutOfSequenceError
from shared.models.domain import LedgerEntry
from shared.models.enums import EntryKind
from shared.models.orm import LedgerEntryORM
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger
from shared.utils.metrics import LEDGER_APPENDS

logger = get_logger(__name__)

GENESIS_HASH = "0" * 64


def chain_entries(
    match_id: str,
    head_sequence: int,
    head_hash: Optional[str],
    drafts: Iterable[tuple[EntryKind, dict[str, Any]]],
) -> list[LedgerEntry]:
    """Turn (kind, payload) drafts into entries chained onto the given head."""
    seq = head_sequence
    prev = head_hash or GENESIS_HASH
    entries: list[LedgerEntry] = []
    for kind, payload in drafts:
        seq += 1
        entry = LedgerEntry.create(match_id, seq, kind, payload, prev)
        entries.append(entry)
        prev = entry.entry_hash
    return entries


def verify_chain(
    match_id: str,
    entries: Sequence[LedgerEntry],
    prev_hash: Optional[str] = None,
    start_sequence: Optional[int] = None,
) -> None:
    """Raise ``LedgerCorruptionError`` at the first broken link."""
    if not entries:
        return
    expected_seq = start_sequence if start_sequence is not None else entries[0].ledger_sequence
    expected_prev = prev_hash
    if expected_prev is None and expected_seq == 1:
        expected_prev = GENESIS_HASH
    for entry in entries:
        if entry.match_id != match_id:
            raise LedgerCorruptionError(match_id, entry.ledger_sequence, "entry belongs to another match")
        if entry.ledger_sequence != expected_seq:
            raise LedgerCorruptionError(
                match_id, entry.ledger_sequence, f"sequence gap, expected {expected_seq}"
            )
        if expected_prev is not None and entry.prev_hash != expected_prev:
            raise LedgerCorruptionError(match_id, entry.ledger_sequence, "prev_hash does not link")
        if not entry.hash_is_valid():
            raise LedgerCorruptionError(match_id, entry.ledger_sequence, "entry hash mismatch")
        expected_seq += 1
        expected_prev = entry.entry_hash


def valid_prefix(
    match_id: str, entries: Sequence[LedgerEntry], prev_hash: str, start_sequence: int
) -> list[LedgerEntry]:
    """Longest prefix of ``entries`` that chains correctly from ``prev_hash``."""
    good: list[LedgerEntry] = []
    for entry in entries:
        try:
            verify_chain(match_id, [entry], prev_hash=prev_hash, start_sequence=start_sequence)
        except LedgerCorruptionError:
            break
        good.append(entry)
        prev_hash = entry.entry_hash
        start_sequence += 1
    return good


class LedgerStore(ABC):
    """Append-only storage keyed by match."""

    @abstractmethod
    async def append(
        self, match_id: str, entries: Sequence[LedgerEntry], expected_sequence: int
    ) -> int:
        """Append ``entries`` after head ``expected_sequence``; returns the new head sequence."""

    @abstractmethod
    async def read(
        self, match_id: str, after: int = 0, upto: Optional[int] = None
    ) -> list[LedgerEntry]:
        """Entries with ``after < ledger_sequence <= upto``, ordered."""

    @abstractmethod
    async def head(self, match_id: str) -> Optional[LedgerEntry]:
        ...

    @abstractmethod
    async def match_ids(self) -> list[str]:
        ...

    @staticmethod
    def _check_contiguous(match_id: str, entries: Sequence[LedgerEntry], expected_sequence: int) -> None:
        for offset, entry in enumerate(entries, start=1):
            if entry.match_id != match_id or entry.ledger_sequence != expected_sequence + offset:
                raise OutOfSequenceError(match_id, expected_sequence + offset, entry.ledger_sequence)

    @staticmethod
    def _count(entries: Sequence[LedgerEntry]) -> None:
        for entry in entries:
            LEDGER_APPENDS.labels(kind=entry.kind.value).inc()


class InMemoryLedgerStore(LedgerStore):
    """Process-local ledger, used in tests and for shadow copies."""

    def __init__(self) -> None:
        self._ledgers: dict[str, list[LedgerEntry]] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def from_entries(cls, match_id: str, entries: Iterable[LedgerEntry]) -> "InMemoryLedgerStore":
        store = cls()
        store._ledgers[match_id] = list(entries)
        return store

    async def append(
        self, match_id: str, entries: Sequence[LedgerEntry], expected_sequence: int
    ) -> int:
        async with self._lock:
            ledger = self._ledgers.setdefault(match_id, [])
            if len(ledger) != expected_sequence:
                raise OutOfSequenceError(match_id, len(ledger), expected_sequence)
            self._check_contiguous(match_id, entries, expected_sequence)
            prev = ledger[-1].entry_hash if ledger else GENESIS_HASH
            if entries and entries[0].prev_hash != prev:
                raise OutOfSequenceError(match_id, len(ledger), expected_sequence)
            ledger.extend(entries)
            self._count(entries)
            return len(ledger)

    async def read(
        self, match_id: str, after: int = 0, upto: Optional[int] = None
    ) -> list[LedgerEntry]:
        ledger = self._ledgers.get(match_id, [])
        stop = len(ledger) if upto is None else min(upto, len(ledger))
        return list(ledger[after:stop])

    async def head(self, match_id: str) -> Optional[LedgerEntry]:
        ledger = self._ledgers.get(match_id)
        return ledger[-1] if ledger else None

    async def match_ids(self) -> list[str]:
        return sorted(m for m, entries in self._ledgers.items() if entries)


class SqlLedgerStore(LedgerStore):
    """SQLAlchemy-backed ledger; the (match_id, ledger_sequence) primary key guards races."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def append(
        self, match_id: str, entries: Sequence[LedgerEntry], expected_sequence: int
    ) -> int:
        self._check_contiguous(match_id, entries, expected_sequence)
        try:
            async with self._db.write_session() as session:
                current = await session.scalar(
                    select(func.coalesce(func.max(LedgerEntryORM.ledger_sequence), 0)).where(
                        LedgerEntryORM.match_id == match_id
                    )
                )
                if current != expected_sequence:
                    raise OutOfSequenceError(match_id, int(current or 0), expected_sequence)
                session.add_all(
                    LedgerEntryORM(
                        match_id=e.match_id,
                        ledger_sequence=e.ledger_sequence,
                        kind=e.kind.value,
                        payload=e.payload,
                        prev_hash=e.prev_hash,
                        entry_hash=e.entry_hash,
                    )
                    for e in entries
                )
        except IntegrityError as exc:
            logger.warning("ledger_append_conflict", match_id=match_id, expected=expected_sequence)
            raise OutOfSequenceError(match_id, -1, expected_sequence) from exc
        self._count(entries)
        return expected_sequence + len(entries)

    async def read(
        self, match_id: str, after: int = 0, upto: Optional[int] = None
    ) -> list[LedgerEntry]:
        stmt = (
            select(LedgerEntryORM)
            .where(LedgerEntryORM.match_id == match_id, LedgerEntryORM.ledger_sequence > after)
            .order_by(LedgerEntryORM.ledger_sequence)
        )
        if upto is not None:
            stmt = stmt.where(LedgerEntryORM.ledger_sequence <= upto)
        async with self._db.read_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [self._to_entry(row) for row in rows]

    async def head(self, match_id: str) -> Optional[LedgerEntry]:
        stmt = (
            select(LedgerEntryORM)
            .where(LedgerEntryORM.match_id == match_id)
            .order_by(LedgerEntryORM.ledger_sequence.desc())
            .limit(1)
        )
        async with self._db.read_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        return self._to_entry(row) if row else None

    async def match_ids(self) -> list[str]:
        async with self._db.read_session() as session:
            rows = await session.execute(
                select(LedgerEntryORM.match_id).distinct().order_by(LedgerEntryORM.match_id)
            )
            return [r[0] for r in rows.all()]

    @staticmethod
    def _to_entry(row: LedgerEntryORM) -> LedgerEntry:
        return LedgerEntry(
            match_id=row.match_id,
            ledger_sequence=row.ledger_sequence,
            kind=EntryKind(row.kind),
            payload=row.payload,
            prev_hash=row.prev_hash,
            entry_hash=row.entry_hash,
        )
