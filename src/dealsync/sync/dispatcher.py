"""Sync dispatcher -- durable queue consumer with per-business single-flight.

Intents are persisted by SyncRepository before anything runs, so a crash
never loses one. The consumer loop is event-driven: enqueue() wakes it,
and the poll interval only matters for retries whose backoff has elapsed.

Guarantees:
- At most one in-flight sync per business (queue claim rule plus an
  in-process SingleFlight lock)
- CRM concurrency bounded by a semaphore sized to the shared rate limit
- In-flight calls are never cancelled; a newer intent waits in the queue
  and runs after the current one finishes
- An execution that raises past the worker is retried like a transient
  failure, and one item's failure never affects the rest of its batch
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog

from src.dealsync.core.locks import SingleFlight
from src.dealsync.core.monitoring import QUEUE_ENQUEUED, SYNC_OUTCOMES
from src.dealsync.sync.repository import SyncRepository
from src.dealsync.sync.schemas import (
    PRIORITY_BY_TRIGGER,
    QueueItem,
    QueueStats,
    SyncOperation,
    SyncOutcome,
    SyncOutcomeStatus,
    TriggerSource,
)
from src.dealsync.sync.worker import ExternalSyncWorker, RetryPolicy

logger = structlog.get_logger(__name__)


class SyncDispatcher:
    """Enqueues sync intents and drives the worker over the queue.

    Args:
        repository: SyncRepository holding the durable queue.
        worker: ExternalSyncWorker executing one item.
        batch_size: Items claimed per round.
        concurrency: Maximum simultaneous CRM syncs.
        poll_interval: Seconds between idle checks for due retries.
        max_attempts: Attempts before an item is marked failed.
        retry_policy: Backoff for executions that raise past the worker.
    """

    def __init__(
        self,
        repository: SyncRepository,
        worker: ExternalSyncWorker,
        batch_size: int = 5,
        concurrency: int = 4,
        poll_interval: float = 30.0,
        max_attempts: int = 3,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._repo = repository
        self._worker = worker
        self._batch_size = batch_size
        self._poll_interval = poll_interval
        self._max_attempts = max_attempts
        self._retry = retry_policy or RetryPolicy()
        self._semaphore = asyncio.Semaphore(concurrency)
        self._flights = SingleFlight()
        self._wake = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # ── Producing ───────────────────────────────────────────────────────────

    async def enqueue(
        self,
        business_id: str,
        operation: SyncOperation,
        trigger_source: TriggerSource = TriggerSource.AUTOMATIC,
        payload: dict | None = None,
        priority: int | None = None,
    ) -> QueueItem:
        """Persist a sync intent and wake the consumer loop."""
        if priority is None:
            priority = PRIORITY_BY_TRIGGER[trigger_source]
        item, coalesced = await self._repo.enqueue(
            business_id,
            operation,
            priority=priority,
            trigger_source=trigger_source,
            payload=payload,
            max_attempts=self._max_attempts,
        )
        QUEUE_ENQUEUED.labels(
            operation=operation.value, coalesced=str(coalesced).lower()
        ).inc()
        logger.info(
            "sync_queue.enqueued",
            business_id=business_id,
            queue_item_id=item.id,
            operation=item.operation.value,
            priority=item.priority,
            trigger_source=trigger_source.value,
            coalesced=coalesced,
        )
        self._wake.set()
        return item

    # ── Consuming ───────────────────────────────────────────────────────────

    async def process_batch(self) -> list[SyncOutcome]:
        """Claim and execute one batch of due items.

        A failure on one item never affects the others or leaves the item
        claimed.
        """
        items = await self._repo.claim(self._batch_size)
        if not items:
            return []
        results = await asyncio.gather(
            *(self._process(item) for item in items), return_exceptions=True
        )
        outcomes: list[SyncOutcome] = []
        for item, result in zip(items, results):
            if isinstance(result, BaseException):
                logger.error(
                    "sync_dispatcher.item_failed",
                    business_id=item.business_id,
                    queue_item_id=item.id,
                    error=repr(result),
                )
                continue
            outcomes.append(result)
        return outcomes

    async def run_now(
        self,
        business_id: str,
        operation: SyncOperation = SyncOperation.FULL_SYNC,
        trigger_source: TriggerSource = TriggerSource.MANUAL,
    ) -> SyncOutcome:
        """Enqueue and execute a sync immediately, under the business's flight lock.

        If another consumer has already claimed the business, its in-flight
        execution logs the result and this call reports it as in progress.
        """
        async with self._flights.hold(business_id):
            item = await self.enqueue(business_id, operation, trigger_source=trigger_source)
            claimed = await self._repo.claim_item(item.id)
            if claimed is None:
                return SyncOutcome(
                    status=SyncOutcomeStatus.NO_OP,
                    reason="sync already in progress",
                    business_id=business_id,
                    operation=operation,
                )
            outcome = await self._execute(claimed)
            await self._settle(claimed, outcome)
            return outcome

    async def _process(self, item: QueueItem) -> SyncOutcome:
        async with self._flights.hold(item.business_id):
            outcome = await self._execute(item)
            await self._settle(item, outcome)
        return outcome

    async def _execute(self, item: QueueItem) -> SyncOutcome:
        try:
            async with self._semaphore:
                return await self._worker.execute(item)
        except Exception as exc:
            logger.exception(
                "sync_dispatcher.execute_failed",
                business_id=item.business_id,
                queue_item_id=item.id,
            )
            return self._escaped_failure(item, f"{type(exc).__name__}: {exc}")

    def _escaped_failure(self, item: QueueItem, error: str) -> SyncOutcome:
        """Outcome for an execution that raised past the worker.

        Follows the transient-failure rules: retry with backoff until the
        attempts run out.
        """
        if item.attempts >= item.max_attempts:
            status = SyncOutcomeStatus.FAILED
            reason = f"gave up after {item.attempts} attempt(s)"
            retry_at = None
        else:
            status = SyncOutcomeStatus.RETRYING
            reason = f"unexpected error, attempt {item.attempts} of {item.max_attempts}"
            retry_at = datetime.now(timezone.utc) + self._retry.delay(item.attempts)
        SYNC_OUTCOMES.labels(operation=item.operation.value, outcome=status.value).inc()
        return SyncOutcome(
            status=status,
            reason=reason,
            business_id=item.business_id,
            operation=item.operation,
            error=error,
            retry_at=retry_at,
        )

    async def _settle(self, item: QueueItem, outcome: SyncOutcome) -> None:
        try:
            await self._apply(item, outcome)
        except Exception:
            # The item stays processing until recover_processing() on restart
            logger.exception(
                "sync_dispatcher.settle_failed",
                business_id=item.business_id,
                queue_item_id=item.id,
                outcome=outcome.status.value,
            )

    async def _apply(self, item: QueueItem, outcome: SyncOutcome) -> None:
        if outcome.status == SyncOutcomeStatus.RETRYING:
            await self._repo.mark_retrying(item.id, outcome.error, outcome.retry_at)
        elif outcome.status == SyncOutcomeStatus.FAILED:
            await self._repo.mark_failed(item.id, outcome.error or outcome.reason)
        else:
            await self._repo.mark_success(item.id)

    async def run_forever(self) -> None:
        """Consume the queue until stop() is called."""
        self._running = True
        await self._repo.recover_processing()
        logger.info("sync_dispatcher.started", batch_size=self._batch_size)

        while self._running:
            self._wake.clear()
            try:
                outcomes = await self.process_batch()
            except Exception:
                logger.exception("sync_dispatcher.batch_failed")
                outcomes = []

            if outcomes:
                continue
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

        logger.info("sync_dispatcher.stopped")

    def stop(self) -> None:
        """Signal the loop to exit after the current batch."""
        self._running = False
        self._wake.set()

    # ── Operator Actions ────────────────────────────────────────────────────

    async def retry_failed(self, business_id: str | None = None) -> int:
        count = await self._repo.retry_failed(business_id)
        if count:
            logger.info("sync_queue.failed_rearmed", items=count, business_id=business_id)
            self._wake.set()
        return count

    async def stats(self) -> QueueStats:
        return await self._repo.stats()
