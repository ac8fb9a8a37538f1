"""Sync persistence models -- queue, log, mappings, snapshots and audit reports.

Five SQLAlchemy models:
- SyncQueueModel: Durable queue of pending CRM sync intents
- SyncLogModel: Append-only record of every sync attempt
- StageMappingModel: Canonical state -> (pipeline, stage) for the CRM
- ExternalSnapshotModel: Last known view of the CRM deal per business
- AuditReportModel: Stored result of each consistency audit run

No FK constraints: a remote_deleted log entry must outlive the business it
describes.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.dealsync.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncQueueModel(Base):
    """One pending or historical sync intent for a business.

    Lower priority numbers are more urgent. Items move
    pending -> processing -> success | retrying | failed; retrying items
    become claimable again once scheduled_at has passed.
    """

    __tablename__ = "sync_queue"
    __table_args__ = (
        Index("ix_sync_queue_claim", "status", "priority", "created_at"),
        Index("ix_sync_queue_business", "business_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    business_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    trigger_source: Mapped[str] = mapped_column(
        String(20), nullable=False, default="automatic"
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=_utcnow, nullable=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class SyncLogModel(Base):
    """Append-only entry describing one sync attempt or inbound change."""

    __tablename__ = "sync_log"
    __table_args__ = (Index("ix_sync_log_business", "business_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    business_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    queue_item_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False, default="outbound")
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    old_state: Mapped[str | None] = mapped_column(String(40), nullable=True)
    new_state: Mapped[str | None] = mapped_column(String(40), nullable=True)
    old_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    new_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_source: Mapped[str | None] = mapped_column(String(20), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class StageMappingModel(Base):
    """CRM pipeline/stage target for one canonical business state."""

    __tablename__ = "stage_mappings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    state: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    pipeline_id: Mapped[str] = mapped_column(String(100), nullable=False)
    stage_id: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=_utcnow, nullable=True
    )


class ExternalSnapshotModel(Base):
    """Last observed CRM deal values for a business.

    Written after every successful CRM read or write; consumed by the
    conflict detector.
    """

    __tablename__ = "external_snapshots"

    business_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    pipeline_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    stage_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    mapped_state: Mapped[str | None] = mapped_column(String(40), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    remote_modified_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class AuditReportModel(Base):
    """One consistency audit run, stored as a JSON document."""

    __tablename__ = "audit_reports"
    __table_args__ = (Index("ix_audit_reports_generated", "generated_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    total_scanned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    inconsistent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_fixed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    report: Mapped[dict] = mapped_column(JSON, default=dict)
    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
