"""
SQLAlchemy 2.0 ORM models for Scorekeeper.
One append-only log per match stream lives in ``ledger_entries``; the primary
key on (match_id, ledger_sequence) is the storage-level sequencing guard.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class LedgerEntryORM(Base):
    __tablename__ = "ledger_entries"

    match_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    ledger_sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False)
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    # Storage metadata only; excluded from the hash chain.
    stored_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditRecordORM(Base):
    __tablename__ = "audit_records"
    __table_args__ = (
        Index("ix_audit_records_match", "match_id", "at"),
    )

    audit_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    match_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False)
    actor: Mapped[str] = mapped_column(String(128), nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    before_state: Mapped[Optional[dict[str, Any]]] = mapped_column(JsonType)
    after_state: Mapped[Optional[dict[str, Any]]] = mapped_column(JsonType)
    details: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)


class ProjectionSnapshotORM(Base):
    __tablename__ = "projection_snapshots"

    match_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    ledger_version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    head_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    projection: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
