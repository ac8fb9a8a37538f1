"""Consistency auditor -- finds stored states that disagree with their budgets.

A run scans every business, re-derives its state, and reports each
mismatch with the expected state, the reason, and a confidence. Only
HIGH-confidence mismatches are repaired automatically; everything else
waits for an operator (repair()). A failure on one business is recorded
in the report and does not stop the run.

Repairs go through BusinessService, so they produce the same change
events (and therefore CRM syncs) as any other state change. Every run
stores its report as one row, so a run over a consistent data set writes
that row and nothing else.
"""

from __future__ import annotations

from datetime import datetime

import structlog

from src.dealsync.business.derivation import explain_state
from src.dealsync.business.schemas import BusinessRead, Confidence
from src.dealsync.business.service import BusinessService
from src.dealsync.core.monitoring import AUDIT_AUTO_FIXED, AUDIT_INCONSISTENT
from src.dealsync.sync.repository import SyncRepository
from src.dealsync.sync.schemas import (
    AuditItem,
    AuditReport,
    QueueStatus,
    SyncDirection,
    SyncLogEntry,
    SyncOperation,
    SyncOutcomeStatus,
    TriggerSource,
)

logger = structlog.get_logger(__name__)


class ConsistencyAuditor:
    """Audits and repairs stored business states.

    Args:
        businesses: BusinessService, the only path used for repairs.
        repository: SyncRepository for the log, failed items and reports.
    """

    def __init__(self, businesses: BusinessService, repository: SyncRepository) -> None:
        self._businesses = businesses
        self._repo = repository

    async def run(self, auto_fix: bool = True) -> AuditReport:
        """Scan every business and store the resulting report."""
        report = AuditReport()

        for business in await self._businesses.list_businesses():
            report.total_scanned += 1
            try:
                item = await self._audit_one(business, auto_fix)
            except Exception as exc:
                logger.exception("audit.business_failed", business_id=business.id)
                report.errors += 1
                report.items.append(
                    AuditItem(
                        business_id=business.id,
                        number=business.number,
                        current_state=business.state,
                        reason="audit failed",
                        error=f"{type(exc).__name__}: {exc}",
                    )
                )
                continue

            if item is None:
                continue
            report.inconsistent += 1
            if item.confidence == Confidence.HIGH:
                report.high_confidence += 1
            if item.auto_fixed:
                report.auto_fixed += 1
            report.items.append(item)

        report.failed_queue_items = await self._repo.list_items(status=QueueStatus.FAILED)
        report = await self._repo.save_report(report)

        AUDIT_INCONSISTENT.set(report.inconsistent)
        logger.info(
            "audit.complete",
            total_scanned=report.total_scanned,
            inconsistent=report.inconsistent,
            high_confidence=report.high_confidence,
            auto_fixed=report.auto_fixed,
            errors=report.errors,
            failed_queue_items=len(report.failed_queue_items),
        )
        return report

    async def repair(self, business_id: str) -> AuditItem:
        """Repair one business on operator request, whatever the confidence."""
        business = await self._businesses.get_business(business_id)
        derivation = explain_state(business.budgets)
        if business.state == derivation.state:
            return AuditItem(
                business_id=business.id,
                number=business.number,
                current_state=business.state,
                expected_state=derivation.state,
                reason="already consistent",
                confidence=derivation.confidence,
            )
        return await self._fix(business, TriggerSource.MANUAL)

    async def latest_report(self) -> AuditReport | None:
        return await self._repo.latest_report()

    async def run_maintenance(self, now: datetime | None = None) -> AuditReport:
        """Expire overdue budgets, then audit with auto-fix."""
        expired = await self._businesses.expire_overdue_budgets(now)
        logger.info("audit.maintenance_expired", businesses=len(expired))
        return await self.run(auto_fix=True)

    # ── Internals ───────────────────────────────────────────────────────────

    async def _audit_one(self, business: BusinessRead, auto_fix: bool) -> AuditItem | None:
        derivation = explain_state(business.budgets)
        if business.state == derivation.state:
            return None

        if auto_fix and derivation.confidence == Confidence.HIGH:
            return await self._fix(business, TriggerSource.AUDIT)

        logger.warning(
            "audit.inconsistent",
            business_id=business.id,
            current=business.state.value,
            expected=derivation.state.value,
            confidence=derivation.confidence.value,
        )
        return AuditItem(
            business_id=business.id,
            number=business.number,
            current_state=business.state,
            expected_state=derivation.state,
            reason=derivation.reason,
            confidence=derivation.confidence,
        )

    async def _fix(self, business: BusinessRead, trigger_source: TriggerSource) -> AuditItem:
        derivation = explain_state(business.budgets)
        repaired = await self._businesses.refresh_state(business.id, trigger_source)

        await self._repo.append_log(
            SyncLogEntry(
                business_id=business.id,
                operation=SyncOperation.STATE_SYNC,
                direction=SyncDirection.INTERNAL,
                outcome=SyncOutcomeStatus.SUCCESS,
                success=True,
                old_state=business.state.value,
                new_state=repaired.state.value,
                reason=f"state repaired: {derivation.reason}",
                trigger_source=trigger_source,
                external_id=business.external_id,
            )
        )
        AUDIT_AUTO_FIXED.inc()
        logger.info(
            "audit.repaired",
            business_id=business.id,
            old_state=business.state.value,
            new_state=repaired.state.value,
            trigger_source=trigger_source.value,
        )
        return AuditItem(
            business_id=business.id,
            number=business.number,
            current_state=business.state,
            expected_state=repaired.state,
            reason=derivation.reason,
            confidence=derivation.confidence,
            auto_fixed=True,
        )
