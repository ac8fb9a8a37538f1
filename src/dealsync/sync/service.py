"""ReconciliationService -- operator-facing actions over the sync subsystem.

Single place the HTTP layer talks to: immediate sync of one business, mass
amount sync, conflict detection and resolution, audits, repairs, and queue
maintenance.
"""

from __future__ import annotations

import structlog

from src.dealsync.business.service import BusinessService
from src.dealsync.sync.auditor import ConsistencyAuditor
from src.dealsync.sync.conflicts import ConflictDetector
from src.dealsync.sync.dispatcher import SyncDispatcher
from src.dealsync.sync.mapping import StageMappingResolver
from src.dealsync.sync.repository import SyncRepository
from src.dealsync.sync.schemas import (
    AuditItem,
    AuditReport,
    Conflict,
    ConflictResolution,
    QueueStats,
    Resolution,
    SyncLogEntry,
    SyncOperation,
    SyncOutcome,
    TriggerSource,
)

logger = structlog.get_logger(__name__)


class ReconciliationService:
    """Manual trigger surface for reconciliation.

    Args:
        businesses: BusinessService for lookups.
        dispatcher: SyncDispatcher for queued and immediate syncs.
        detector: ConflictDetector for divergence checks and resolution.
        auditor: ConsistencyAuditor for audits and repairs.
        repository: SyncRepository for log reads.
        mapping: StageMappingResolver for configuration checks.
    """

    def __init__(
        self,
        businesses: BusinessService,
        dispatcher: SyncDispatcher,
        detector: ConflictDetector,
        auditor: ConsistencyAuditor,
        repository: SyncRepository,
        mapping: StageMappingResolver,
    ) -> None:
        self._businesses = businesses
        self._dispatcher = dispatcher
        self._detector = detector
        self._auditor = auditor
        self._repo = repository
        self._mapping = mapping

    async def sync_business_now(
        self, business_id: str, operation: SyncOperation = SyncOperation.FULL_SYNC
    ) -> SyncOutcome:
        """Run a sync for one business immediately (manual priority)."""
        await self._businesses.get_business(business_id)
        return await self._dispatcher.run_now(business_id, operation, TriggerSource.MANUAL)

    async def sync_all_amounts(self) -> int:
        """Queue an amount sync for every linked business, zero values included.

        Returns:
            Number of businesses queued.
        """
        queued = 0
        for business in await self._businesses.list_businesses(linked_only=True):
            await self._dispatcher.enqueue(
                business.id,
                SyncOperation.AMOUNT_SYNC,
                trigger_source=TriggerSource.MANUAL,
            )
            queued += 1
        logger.info("reconciliation.amounts_queued", businesses=queued)
        return queued

    async def detect_conflict(self, business_id: str, refresh: bool = True) -> Conflict | None:
        return await self._detector.detect(business_id, refresh=refresh)

    async def scan_conflicts(self) -> list[Conflict]:
        return await self._detector.scan()

    async def resolve_conflict(
        self, business_id: str, resolution: Resolution
    ) -> ConflictResolution:
        return await self._detector.resolve(business_id, resolution)

    async def run_audit(self, auto_fix: bool = True) -> AuditReport:
        return await self._auditor.run(auto_fix=auto_fix)

    async def repair_business(self, business_id: str) -> AuditItem:
        return await self._auditor.repair(business_id)

    async def latest_report(self) -> AuditReport | None:
        return await self._auditor.latest_report()

    async def retry_failed(self, business_id: str | None = None) -> int:
        return await self._dispatcher.retry_failed(business_id)

    async def queue_stats(self) -> QueueStats:
        return await self._dispatcher.stats()

    async def sync_history(self, business_id: str, limit: int = 50) -> list[SyncLogEntry]:
        await self._businesses.get_business(business_id)
        return await self._repo.list_logs(business_id, limit=limit)

    async def missing_mappings(self) -> list[str]:
        return [state.value for state in await self._mapping.missing_states()]
