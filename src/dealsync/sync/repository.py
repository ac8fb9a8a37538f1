"""Sync repository -- durable queue, append-only log, snapshots, audit reports.

Provides SyncRepository with the session_factory callable pattern.

Queue semantics:
- enqueue() merges into an existing pending/retrying item of the same
  business instead of adding a second one (latest intent wins, the most
  urgent priority is kept, operations merge to full_sync when they differ)
- claim() hands out due items by priority then age, skips businesses that
  already have a processing item, and flips status with a compare-and-set
  update so two claimers can never take the same item
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealsync.sync.models import (
    AuditReportModel,
    ExternalSnapshotModel,
    SyncLogModel,
    SyncQueueModel,
)
from src.dealsync.sync.schemas import (
    AuditReport,
    ExternalSnapshot,
    QueueItem,
    QueueStats,
    QueueStatus,
    SyncLogEntry,
    SyncOperation,
    TriggerSource,
)

logger = structlog.get_logger(__name__)

_CLAIMABLE = (QueueStatus.PENDING.value, QueueStatus.RETRYING.value)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_item(model: SyncQueueModel) -> QueueItem:
    return QueueItem(
        id=str(model.id),
        business_id=str(model.business_id),
        operation=SyncOperation(model.operation),
        payload=model.payload or {},
        priority=model.priority,
        trigger_source=TriggerSource(model.trigger_source),
        attempts=model.attempts,
        max_attempts=model.max_attempts,
        status=QueueStatus(model.status),
        scheduled_at=model.scheduled_at,
        error_message=model.error_message,
        created_at=model.created_at,
        processed_at=model.processed_at,
    )


def _model_to_log(model: SyncLogModel) -> SyncLogEntry:
    return SyncLogEntry(
        id=str(model.id),
        business_id=str(model.business_id),
        queue_item_id=str(model.queue_item_id) if model.queue_item_id else None,
        operation=model.operation,
        direction=model.direction,
        outcome=model.outcome,
        success=model.success,
        old_state=model.old_state,
        new_state=model.new_state,
        old_amount=model.old_amount,
        new_amount=model.new_amount,
        reason=model.reason,
        error_message=model.error_message,
        trigger_source=model.trigger_source,
        external_id=model.external_id,
        created_at=model.created_at,
    )


def _model_to_snapshot(model: ExternalSnapshotModel) -> ExternalSnapshot:
    return ExternalSnapshot(
        business_id=str(model.business_id),
        external_id=model.external_id,
        pipeline_id=model.pipeline_id,
        stage_id=model.stage_id,
        mapped_state=model.mapped_state,
        amount=model.amount,
        close_date=model.close_date,
        remote_modified_at=model.remote_modified_at,
        fetched_at=model.fetched_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class SyncRepository:
    """Persistence for everything the sync pipeline writes.

    Args:
        session_factory: async_sessionmaker returning AsyncSession instances.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    # ── Queue ───────────────────────────────────────────────────────────────

    async def enqueue(
        self,
        business_id: str,
        operation: SyncOperation,
        priority: int,
        trigger_source: TriggerSource,
        payload: dict | None = None,
        max_attempts: int = 3,
    ) -> tuple[QueueItem, bool]:
        """Add a sync intent, or merge it into the business's pending one.

        Merging into a retrying item updates what will be pushed but keeps
        its scheduled retry and attempt count, so backoff still applies.

        Returns:
            Tuple of (item, coalesced) where coalesced is True if an existing
            pending item absorbed the intent.
        """
        bid = uuid.UUID(business_id)
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            stmt = (
                select(SyncQueueModel)
                .where(
                    SyncQueueModel.business_id == bid,
                    SyncQueueModel.status.in_(_CLAIMABLE),
                )
                .order_by(SyncQueueModel.created_at)
            )
            existing = (await session.execute(stmt)).scalars().first()

            if existing is not None:
                existing.operation = SyncOperation(existing.operation).merge(operation).value
                if priority <= existing.priority:
                    existing.priority = priority
                    existing.trigger_source = trigger_source.value
                existing.payload = payload or {}
                # A retrying item keeps its backoff schedule and attempt count
                if existing.status == QueueStatus.PENDING.value:
                    existing.attempts = 0
                    existing.max_attempts = max_attempts
                    existing.scheduled_at = now
                    existing.error_message = None
                await session.commit()
                await session.refresh(existing)
                return _model_to_item(existing), True

            model = SyncQueueModel(
                business_id=bid,
                operation=operation.value,
                payload=payload or {},
                priority=priority,
                trigger_source=trigger_source.value,
                max_attempts=max_attempts,
                status=QueueStatus.PENDING.value,
                scheduled_at=now,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_item(model), False

    async def claim(self, limit: int, now: datetime | None = None) -> list[QueueItem]:
        """Claim up to ``limit`` due items, at most one per business.

        Claimed items move to processing and their attempt counter increments.
        """
        now = now or datetime.now(timezone.utc)
        claimed: list[QueueItem] = []
        async with self._session_factory() as session:
            busy = select(SyncQueueModel.business_id).where(
                SyncQueueModel.status == QueueStatus.PROCESSING.value
            )
            stmt = (
                select(SyncQueueModel)
                .where(
                    SyncQueueModel.status.in_(_CLAIMABLE),
                    SyncQueueModel.scheduled_at <= now,
                    SyncQueueModel.business_id.not_in(busy),
                )
                .order_by(SyncQueueModel.priority, SyncQueueModel.created_at)
                .limit(limit * 2)
            )
            candidates = (await session.execute(stmt)).scalars().all()

            seen: set[uuid.UUID] = set()
            for candidate in candidates:
                if len(claimed) >= limit:
                    break
                if candidate.business_id in seen:
                    continue
                result = await session.execute(
                    update(SyncQueueModel)
                    .where(
                        SyncQueueModel.id == candidate.id,
                        SyncQueueModel.status == candidate.status,
                    )
                    .values(
                        status=QueueStatus.PROCESSING.value,
                        attempts=SyncQueueModel.attempts + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                seen.add(candidate.business_id)
                await session.refresh(candidate)
                claimed.append(_model_to_item(candidate))
            await session.commit()
        return claimed

    async def claim_item(self, item_id: str) -> QueueItem | None:
        """Claim one specific item, regardless of its schedule.

        Returns None if the item is no longer claimable or its business
        already has a processing item.
        """
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            model = await session.get(SyncQueueModel, uuid.UUID(item_id))
            if model is None or model.status not in _CLAIMABLE:
                return None

            busy_stmt = select(func.count()).where(
                SyncQueueModel.business_id == model.business_id,
                SyncQueueModel.status == QueueStatus.PROCESSING.value,
            )
            if (await session.execute(busy_stmt)).scalar_one():
                return None

            result = await session.execute(
                update(SyncQueueModel)
                .where(
                    SyncQueueModel.id == model.id,
                    SyncQueueModel.status == model.status,
                )
                .values(
                    status=QueueStatus.PROCESSING.value,
                    attempts=SyncQueueModel.attempts + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            await session.refresh(model)
            await session.commit()
            return _model_to_item(model)

    async def _finish(self, item_id: str, **values) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(SyncQueueModel)
                .where(SyncQueueModel.id == uuid.UUID(item_id))
                .values(updated_at=datetime.now(timezone.utc), **values)
            )
            await session.commit()

    async def mark_success(self, item_id: str) -> None:
        await self._finish(
            item_id,
            status=QueueStatus.SUCCESS.value,
            error_message=None,
            processed_at=datetime.now(timezone.utc),
        )

    async def mark_retrying(self, item_id: str, error: str | None, retry_at: datetime) -> None:
        await self._finish(
            item_id,
            status=QueueStatus.RETRYING.value,
            error_message=error,
            scheduled_at=retry_at,
        )

    async def mark_failed(self, item_id: str, error: str | None) -> None:
        await self._finish(
            item_id,
            status=QueueStatus.FAILED.value,
            error_message=error,
            processed_at=datetime.now(timezone.utc),
        )

    async def get_item(self, item_id: str) -> QueueItem | None:
        async with self._session_factory() as session:
            model = await session.get(SyncQueueModel, uuid.UUID(item_id))
            return _model_to_item(model) if model is not None else None

    async def list_items(
        self,
        status: QueueStatus | None = None,
        business_id: str | None = None,
        limit: int = 100,
    ) -> list[QueueItem]:
        async with self._session_factory() as session:
            stmt = select(SyncQueueModel).order_by(
                SyncQueueModel.priority, SyncQueueModel.created_at
            )
            if status is not None:
                stmt = stmt.where(SyncQueueModel.status == status.value)
            if business_id is not None:
                stmt = stmt.where(SyncQueueModel.business_id == uuid.UUID(business_id))
            result = await session.execute(stmt.limit(limit))
            return [_model_to_item(m) for m in result.scalars().all()]

    async def retry_failed(self, business_id: str | None = None) -> int:
        """Re-arm failed items: back to pending, attempts reset.

        Returns:
            Number of items re-armed.
        """
        async with self._session_factory() as session:
            stmt = update(SyncQueueModel).where(
                SyncQueueModel.status == QueueStatus.FAILED.value
            )
            if business_id is not None:
                stmt = stmt.where(SyncQueueModel.business_id == uuid.UUID(business_id))
            now = datetime.now(timezone.utc)
            result = await session.execute(
                stmt.values(
                    status=QueueStatus.PENDING.value,
                    attempts=0,
                    error_message=None,
                    scheduled_at=now,
                    updated_at=now,
                ).execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount or 0

    async def recover_processing(self) -> int:
        """Return items left in processing by a previous run to pending."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(SyncQueueModel)
                .where(SyncQueueModel.status == QueueStatus.PROCESSING.value)
                .values(
                    status=QueueStatus.PENDING.value,
                    scheduled_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            recovered = result.rowcount or 0
        if recovered:
            logger.warning("sync_queue.recovered_processing", items=recovered)
        return recovered

    async def stats(self, now: datetime | None = None) -> QueueStats:
        """Queue counters; 'today' is the current UTC day."""
        now = now or datetime.now(timezone.utc)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        day_end = day_start + timedelta(days=1)

        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(SyncQueueModel.status, func.count()).group_by(
                        SyncQueueModel.status
                    )
                )
            ).all()
            today_rows = (
                await session.execute(
                    select(SyncQueueModel.status, func.count())
                    .where(
                        SyncQueueModel.processed_at >= day_start,
                        SyncQueueModel.processed_at < day_end,
                    )
                    .group_by(SyncQueueModel.status)
                )
            ).all()

        by_status = {status: count for status, count in rows}
        today = {status: count for status, count in today_rows}
        succeeded = today.get(QueueStatus.SUCCESS.value, 0)
        failed_today = today.get(QueueStatus.FAILED.value, 0)
        finished = succeeded + failed_today

        return QueueStats(
            pending=by_status.get(QueueStatus.PENDING.value, 0),
            processing=by_status.get(QueueStatus.PROCESSING.value, 0),
            retrying=by_status.get(QueueStatus.RETRYING.value, 0),
            failed=by_status.get(QueueStatus.FAILED.value, 0),
            succeeded_today=succeeded,
            failed_today=failed_today,
            success_rate=round(succeeded / finished * 100, 1) if finished else 0.0,
        )

    # ── Sync Log ────────────────────────────────────────────────────────────

    async def append_log(self, entry: SyncLogEntry) -> SyncLogEntry:
        """Append one log entry. Log rows are never updated or deleted."""
        async with self._session_factory() as session:
            model = SyncLogModel(
                business_id=uuid.UUID(entry.business_id),
                queue_item_id=uuid.UUID(entry.queue_item_id) if entry.queue_item_id else None,
                operation=entry.operation.value,
                direction=entry.direction.value,
                outcome=entry.outcome.value,
                success=entry.success,
                old_state=entry.old_state,
                new_state=entry.new_state,
                old_amount=entry.old_amount,
                new_amount=entry.new_amount,
                reason=entry.reason,
                error_message=entry.error_message,
                trigger_source=entry.trigger_source.value if entry.trigger_source else None,
                external_id=entry.external_id,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_log(model)

    async def list_logs(self, business_id: str | None = None, limit: int = 100) -> list[SyncLogEntry]:
        """Most recent log entries first."""
        async with self._session_factory() as session:
            stmt = select(SyncLogModel).order_by(SyncLogModel.created_at.desc())
            if business_id is not None:
                stmt = stmt.where(SyncLogModel.business_id == uuid.UUID(business_id))
            result = await session.execute(stmt.limit(limit))
            return [_model_to_log(m) for m in result.scalars().all()]

    # ── External Snapshots ──────────────────────────────────────────────────

    async def save_snapshot(self, snapshot: ExternalSnapshot) -> None:
        bid = uuid.UUID(snapshot.business_id)
        async with self._session_factory() as session:
            model = await session.get(ExternalSnapshotModel, bid)
            if model is None:
                model = ExternalSnapshotModel(business_id=bid, external_id=snapshot.external_id)
                session.add(model)
            model.external_id = snapshot.external_id
            model.pipeline_id = snapshot.pipeline_id
            model.stage_id = snapshot.stage_id
            model.mapped_state = snapshot.mapped_state.value if snapshot.mapped_state else None
            model.amount = snapshot.amount
            model.close_date = snapshot.close_date
            model.remote_modified_at = snapshot.remote_modified_at
            model.fetched_at = datetime.now(timezone.utc)
            await session.commit()

    async def get_snapshot(self, business_id: str) -> ExternalSnapshot | None:
        async with self._session_factory() as session:
            model = await session.get(ExternalSnapshotModel, uuid.UUID(business_id))
            return _model_to_snapshot(model) if model is not None else None

    # ── Audit Reports ───────────────────────────────────────────────────────

    async def save_report(self, report: AuditReport) -> AuditReport:
        async with self._session_factory() as session:
            model = AuditReportModel(
                total_scanned=report.total_scanned,
                inconsistent=report.inconsistent,
                auto_fixed=report.auto_fixed,
                report=report.model_dump(mode="json", exclude={"id"}),
                generated_at=report.generated_at,
            )
            session.add(model)
            await session.commit()
            return report.model_copy(update={"id": str(model.id)})

    async def latest_report(self) -> AuditReport | None:
        async with self._session_factory() as session:
            stmt = (
                select(AuditReportModel)
                .order_by(AuditReportModel.generated_at.desc())
                .limit(1)
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
        if model is None:
            return None
        return AuditReport.model_validate({**model.report, "id": str(model.id)})
