"""External sync worker -- executes one queued sync intent against the CRM.

Flow for one item:
1. Load the business; a vanished or unlinked business is a successful no-op
2. Derive state and value from the budgets (never trust the stored state)
3. Check credentials and resolve the stage mapping (configuration errors
   fail immediately)
4. Read the deal; if it already matches, stop with "already in sync"
5. PATCH only the allow-listed properties that differ
6. Record the external snapshot

A 404 on the read or the write means the deal was deleted in the CRM: the
local business is deleted with everything it owns and a distinct
remote_deleted log entry is written. Every execution writes exactly one
sync log entry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import structlog

from src.dealsync.business.derivation import explain_state
from src.dealsync.business.schemas import BusinessRead, BusinessState
from src.dealsync.business.service import BusinessService
from src.dealsync.core.monitoring import SYNC_OUTCOMES
from src.dealsync.sync.crm.client import CrmClient
from src.dealsync.sync.crm.schemas import CrmResult, CrmStatus, DealProperties, DealSnapshot
from src.dealsync.sync.errors import ConfigurationError, CredentialMissing
from src.dealsync.sync.mapping import StageMappingResolver
from src.dealsync.sync.repository import SyncRepository
from src.dealsync.sync.schemas import (
    ExternalSnapshot,
    QueueItem,
    StageTarget,
    SyncDirection,
    SyncLogEntry,
    SyncOperation,
    SyncOutcome,
    SyncOutcomeStatus,
)

logger = structlog.get_logger(__name__)

REMOTE_NOT_FOUND = "remote object not found"
ALREADY_IN_SYNC = "already in sync"
NOT_LINKED = "business not linked to CRM"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: base * 2**(attempt-1), capped at max_seconds."""

    base_seconds: float = 300.0
    max_seconds: float = 3600.0

    def delay(self, attempt: int) -> timedelta:
        seconds = self.base_seconds * (2 ** max(attempt - 1, 0))
        return timedelta(seconds=min(seconds, self.max_seconds))


@dataclass
class _Context:
    """Values gathered during one execution, used for the log entry."""

    item: QueueItem
    business: BusinessRead | None = None
    local_state: BusinessState | None = None
    local_value: Decimal | None = None
    remote_state: BusinessState | None = None
    remote_amount: Decimal | None = None


class ExternalSyncWorker:
    """Pushes derived business values to the CRM for one queue item.

    Args:
        businesses: BusinessService (reads, and cascade delete on 404).
        repository: SyncRepository for the log and snapshots.
        mapping: StageMappingResolver for state <-> stage.
        crm: CrmClient for deal reads and writes.
        retry_policy: Backoff used when a transient failure is retried.
    """

    def __init__(
        self,
        businesses: BusinessService,
        repository: SyncRepository,
        mapping: StageMappingResolver,
        crm: CrmClient,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._businesses = businesses
        self._repo = repository
        self._mapping = mapping
        self._crm = crm
        self._retry = retry_policy or RetryPolicy()

    async def execute(self, item: QueueItem) -> SyncOutcome:
        """Run one sync intent. Never raises for CRM or configuration failures."""
        ctx = _Context(item=item)
        try:
            return await self._run(ctx)
        except ConfigurationError as exc:
            return await self._finish(
                ctx, SyncOutcomeStatus.FAILED, "configuration error", error=str(exc)
            )
        except Exception as exc:
            logger.exception(
                "sync.worker_unexpected_error",
                business_id=item.business_id,
                queue_item_id=item.id,
            )
            return await self._transient(ctx, f"{type(exc).__name__}: {exc}")

    async def _run(self, ctx: _Context) -> SyncOutcome:
        item = ctx.item
        business = await self._businesses.get_business_or_none(item.business_id)
        if business is None:
            return await self._finish(ctx, SyncOutcomeStatus.NO_OP, "business no longer exists")
        ctx.business = business

        derivation = explain_state(business.budgets)
        ctx.local_state = derivation.state
        ctx.local_value = derivation.aggregate.value

        if not business.external_id:
            return await self._finish(ctx, SyncOutcomeStatus.NO_OP, NOT_LINKED)
        if not self._crm.is_configured:
            raise CredentialMissing()

        target = await self._mapping.resolve(derivation.state)

        read = await self._crm.get_deal(business.external_id)
        if not read.ok:
            return await self._crm_failure(ctx, read)

        deal = read.deal
        ctx.remote_state = await self._mapping.reverse(deal.dealstage)
        ctx.remote_amount = deal.amount

        changes = self._changes(item.operation, target, business, derivation.aggregate.value, deal)
        if changes.is_empty():
            await self._record_snapshot(business, deal, ctx.remote_state)
            return await self._finish(ctx, SyncOutcomeStatus.NO_OP, ALREADY_IN_SYNC)

        write = await self._crm.update_deal(business.external_id, changes)
        if not write.ok:
            return await self._crm_failure(ctx, write)

        pushed = deal.model_copy(update=changes.model_dump(exclude_none=True))
        await self._record_snapshot(business, pushed, await self._mapping.reverse(pushed.dealstage))
        fields = ", ".join(sorted(changes.model_dump(exclude_none=True)))
        return await self._finish(ctx, SyncOutcomeStatus.SUCCESS, f"updated {fields}")

    # ── Property Diff ───────────────────────────────────────────────────────

    @staticmethod
    def _changes(
        operation: SyncOperation,
        target: StageTarget,
        business: BusinessRead,
        value: Decimal,
        deal: DealSnapshot,
    ) -> DealProperties:
        """Allow-listed properties whose CRM value differs from the local one."""
        changes: dict = {}
        if operation in (SyncOperation.STATE_SYNC, SyncOperation.FULL_SYNC):
            if deal.dealstage != target.stage_id:
                changes["dealstage"] = target.stage_id
            if deal.pipeline != target.pipeline_id:
                changes["pipeline"] = target.pipeline_id
        if operation in (SyncOperation.AMOUNT_SYNC, SyncOperation.FULL_SYNC):
            if deal.amount is None or deal.amount != value:
                changes["amount"] = value
        if operation == SyncOperation.FULL_SYNC and business.closing_date is not None:
            if deal.closedate != business.closing_date:
                changes["closedate"] = business.closing_date
        return DealProperties(**changes)

    # ── Outcomes ────────────────────────────────────────────────────────────

    async def _crm_failure(self, ctx: _Context, result: CrmResult) -> SyncOutcome:
        if result.status == CrmStatus.NOT_FOUND:
            return await self._remote_deleted(ctx)
        if result.status == CrmStatus.TRANSIENT_ERROR:
            return await self._transient(ctx, result.error)
        return await self._finish(
            ctx,
            SyncOutcomeStatus.FAILED,
            f"CRM rejected request (HTTP {result.status_code})",
            error=result.error,
        )

    async def _remote_deleted(self, ctx: _Context) -> SyncOutcome:
        business = ctx.business
        await self._businesses.delete_business(business.id, reason=REMOTE_NOT_FOUND)
        logger.warning(
            "sync.worker_remote_deleted",
            business_id=business.id,
            number=business.number,
            external_id=business.external_id,
        )
        return await self._finish(ctx, SyncOutcomeStatus.REMOTE_DELETED, REMOTE_NOT_FOUND)

    async def _transient(self, ctx: _Context, error: str | None) -> SyncOutcome:
        item = ctx.item
        if item.attempts >= item.max_attempts:
            return await self._finish(
                ctx,
                SyncOutcomeStatus.FAILED,
                f"gave up after {item.attempts} attempt(s)",
                error=error,
            )
        retry_at = datetime.now(timezone.utc) + self._retry.delay(item.attempts)
        return await self._finish(
            ctx,
            SyncOutcomeStatus.RETRYING,
            f"transient failure, attempt {item.attempts} of {item.max_attempts}",
            error=error,
            retry_at=retry_at,
        )

    async def _finish(
        self,
        ctx: _Context,
        status: SyncOutcomeStatus,
        reason: str,
        error: str | None = None,
        retry_at: datetime | None = None,
    ) -> SyncOutcome:
        item = ctx.item
        business = ctx.business
        external_id = business.external_id if business else None

        await self._repo.append_log(
            SyncLogEntry(
                business_id=item.business_id,
                queue_item_id=item.id,
                operation=item.operation,
                direction=SyncDirection.OUTBOUND,
                outcome=status,
                success=status
                in (
                    SyncOutcomeStatus.SUCCESS,
                    SyncOutcomeStatus.NO_OP,
                    SyncOutcomeStatus.REMOTE_DELETED,
                ),
                old_state=ctx.remote_state.value if ctx.remote_state else None,
                new_state=ctx.local_state.value if ctx.local_state else None,
                old_amount=ctx.remote_amount,
                new_amount=ctx.local_value,
                reason=reason,
                error_message=error,
                trigger_source=item.trigger_source,
                external_id=external_id,
            )
        )
        SYNC_OUTCOMES.labels(operation=item.operation.value, outcome=status.value).inc()

        log = logger.info if status != SyncOutcomeStatus.FAILED else logger.error
        log(
            "sync.worker_finished",
            business_id=item.business_id,
            queue_item_id=item.id,
            operation=item.operation.value,
            outcome=status.value,
            reason=reason,
            error=error,
        )
        return SyncOutcome(
            status=status,
            reason=reason,
            business_id=item.business_id,
            operation=item.operation,
            external_id=external_id,
            error=error,
            retry_at=retry_at,
        )

    async def _record_snapshot(
        self,
        business: BusinessRead,
        deal: DealSnapshot,
        mapped_state: BusinessState | None,
    ) -> None:
        await self._repo.save_snapshot(
            ExternalSnapshot(
                business_id=business.id,
                external_id=business.external_id,
                pipeline_id=deal.pipeline,
                stage_id=deal.dealstage,
                mapped_state=mapped_state,
                amount=deal.amount,
                close_date=deal.closedate,
                remote_modified_at=deal.hs_lastmodifieddate,
            )
        )
