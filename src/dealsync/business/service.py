"""BusinessService -- the single entry point for business and budget mutations.

Every write that can change a business's derived state or value goes
through this service. After each write it re-derives the state from the
budgets, persists it if it moved, and publishes a ChangeEvent carrying the
before/after state and value. The change notifier decides whether that
event needs a CRM sync.

Writes for one business are serialized with a per-business lock so the
before/after pair of an event is never interleaved with another write.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timezone

import structlog

from src.dealsync.business.aggregation import aggregate_budgets
from src.dealsync.business.derivation import explain_state
from src.dealsync.business.numbering import BusinessNumberAllocator
from src.dealsync.business.repository import BusinessRepository
from src.dealsync.business.schemas import (
    BudgetCreate,
    BudgetRead,
    BudgetState,
    BudgetUpdate,
    BusinessCreate,
    BusinessRead,
    Derivation,
)
from src.dealsync.core.locks import SingleFlight
from src.dealsync.sync.errors import BudgetLocked, BusinessNotFound
from src.dealsync.sync.notifier import ChangeBus
from src.dealsync.sync.schemas import ChangeEvent, SyncOperation, TriggerSource

logger = structlog.get_logger(__name__)


class BusinessService:
    """Mutates businesses and budgets and announces the resulting changes.

    Args:
        repository: BusinessRepository for persistence.
        allocator: BusinessNumberAllocator assigning display numbers.
        bus: ChangeBus that receives a ChangeEvent after each mutation.
    """

    def __init__(
        self,
        repository: BusinessRepository,
        allocator: BusinessNumberAllocator,
        bus: ChangeBus,
    ) -> None:
        self._repo = repository
        self._allocator = allocator
        self._bus = bus
        self._locks = SingleFlight()

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get_business(self, business_id: str) -> BusinessRead:
        business = await self._repo.get_business(business_id)
        if business is None:
            raise BusinessNotFound(business_id)
        return business

    async def get_business_or_none(self, business_id: str) -> BusinessRead | None:
        return await self._repo.get_business(business_id)

    async def list_businesses(
        self, owner_id: str | None = None, linked_only: bool = False
    ) -> list[BusinessRead]:
        return await self._repo.list_businesses(owner_id=owner_id, linked_only=linked_only)

    async def explain(self, business_id: str) -> Derivation:
        """Derived state, reason and confidence for a business."""
        business = await self.get_business(business_id)
        return explain_state(business.budgets)

    # ── Businesses ──────────────────────────────────────────────────────────

    async def create_business(self, data: BusinessCreate) -> BusinessRead:
        """Create a business with the owner's next display number."""
        business_id, number = await self._allocator.create_numbered(data)
        business = await self.get_business(business_id)
        logger.info(
            "business.created",
            business_id=business_id,
            owner_id=data.owner_id,
            number=number,
        )
        if business.external_id:
            await self._publish(
                business,
                business,
                TriggerSource.AUTOMATIC,
                requested_operation=SyncOperation.FULL_SYNC,
            )
        return business

    async def link_external(
        self,
        business_id: str,
        external_id: str,
        trigger_source: TriggerSource = TriggerSource.MANUAL,
    ) -> BusinessRead:
        """Attach a CRM deal id and request a full sync of current values."""
        async with self._locks.hold(business_id):
            await self.get_business(business_id)
            business = await self._repo.update_business(business_id, external_id=external_id)
            await self._publish(
                business,
                business,
                trigger_source,
                requested_operation=SyncOperation.FULL_SYNC,
            )
        logger.info("business.linked", business_id=business_id, external_id=external_id)
        return business

    async def set_closing_date(self, business_id: str, closing_date: date | None) -> BusinessRead:
        """Store a closing date (inbound from the CRM). Does not trigger a sync."""
        async with self._locks.hold(business_id):
            await self.get_business(business_id)
            return await self._repo.update_business(business_id, closing_date=closing_date)

    async def delete_business(self, business_id: str, reason: str = "deleted") -> bool:
        """Delete a business and everything it owns. Returns False if already gone."""
        async with self._locks.hold(business_id):
            business = await self._repo.get_business(business_id)
            if business is None:
                return False
            await self._repo.delete_business(business_id)
            await self._allocator.release(business.owner_id, business.number, business_id)
        logger.info(
            "business.removed",
            business_id=business_id,
            number=business.number,
            reason=reason,
        )
        return True

    async def refresh_state(
        self,
        business_id: str,
        trigger_source: TriggerSource = TriggerSource.AUTOMATIC,
    ) -> BusinessRead:
        """Re-derive the state from budgets and persist it if it differs."""
        async with self._locks.hold(business_id):
            before = await self.get_business(business_id)
            return await self._commit_derived(before, trigger_source)

    # ── Budgets ─────────────────────────────────────────────────────────────

    async def add_budget(
        self,
        business_id: str,
        data: BudgetCreate,
        trigger_source: TriggerSource = TriggerSource.AUTOMATIC,
    ) -> BudgetRead:
        async with self._locks.hold(business_id):
            before = await self.get_business(business_id)
            budget = await self._repo.add_budget(business_id, data)
            await self._commit_derived(before, trigger_source)
        return budget

    async def update_budget(
        self,
        budget_id: str,
        data: BudgetUpdate,
        trigger_source: TriggerSource = TriggerSource.AUTOMATIC,
    ) -> BudgetRead:
        """Apply a budget change.

        The invoiced check runs under the business lock, so a concurrent
        invoicing cannot slip between the check and the write.

        Raises:
            ValueError: If the budget does not exist.
            BudgetLocked: If the budget is invoiced and the change is not an
                administrative correction.
        """
        existing = await self._repo.get_budget(budget_id)
        if existing is None:
            raise ValueError(f"Budget not found: id={budget_id}")
        business_id = existing.business_id
        fields = data.model_dump(exclude_none=True, exclude={"admin_correction"})
        async with self._locks.hold(business_id):
            current = await self._repo.get_budget(budget_id)
            if current is None:
                raise ValueError(f"Budget not found: id={budget_id}")
            if current.invoiced and not data.admin_correction:
                raise BudgetLocked(budget_id)
            before = await self.get_business(business_id)
            budget = await self._repo.update_budget(budget_id, **fields)
            await self._commit_derived(before, trigger_source)

        if current.invoiced:
            logger.warning(
                "budget.admin_correction",
                budget_id=budget_id,
                business_id=business_id,
                fields=sorted(fields),
            )
        return budget

    async def delete_budget(
        self,
        budget_id: str,
        admin_correction: bool = False,
        trigger_source: TriggerSource = TriggerSource.AUTOMATIC,
    ) -> bool:
        existing = await self._repo.get_budget(budget_id)
        if existing is None:
            return False

        async with self._locks.hold(existing.business_id):
            current = await self._repo.get_budget(budget_id)
            if current is None:
                return False
            if current.invoiced and not admin_correction:
                raise BudgetLocked(budget_id)
            before = await self.get_business(current.business_id)
            await self._repo.delete_budget(budget_id)
            await self._commit_derived(before, trigger_source)
        return True

    async def expire_overdue_budgets(self, now: datetime | None = None) -> list[str]:
        """Move published budgets past their expiry time to expired.

        Returns:
            Ids of the businesses whose budgets were expired.
        """
        now = now or datetime.now(timezone.utc)
        overdue = await self._repo.list_overdue_budgets(now)

        by_business: dict[str, list[BudgetRead]] = defaultdict(list)
        for budget in overdue:
            by_business[budget.business_id].append(budget)

        for business_id, budgets in by_business.items():
            async with self._locks.hold(business_id):
                before = await self._repo.get_business(business_id)
                if before is None:
                    continue
                for budget in budgets:
                    await self._repo.update_budget(budget.id, state=BudgetState.EXPIRED)
                await self._commit_derived(before, TriggerSource.MAINTENANCE)

        if overdue:
            logger.info(
                "budget.expired_overdue",
                budgets=len(overdue),
                businesses=len(by_business),
            )
        return list(by_business)

    # ── Internals ───────────────────────────────────────────────────────────

    async def _commit_derived(
        self, before: BusinessRead, trigger_source: TriggerSource
    ) -> BusinessRead:
        after = await self.get_business(before.id)
        derivation = explain_state(after.budgets)

        if after.state != derivation.state:
            after = await self._repo.update_business(before.id, state=derivation.state)
            logger.info(
                "business.state_changed",
                business_id=before.id,
                old_state=before.state.value,
                new_state=derivation.state.value,
                reason=derivation.reason,
                trigger_source=trigger_source.value,
            )

        await self._publish(before, after, trigger_source)
        return after

    async def _publish(
        self,
        before: BusinessRead,
        after: BusinessRead,
        trigger_source: TriggerSource,
        requested_operation: SyncOperation | None = None,
    ) -> None:
        event = ChangeEvent(
            business_id=after.id,
            external_id=after.external_id,
            old_state=before.state,
            new_state=after.state,
            old_value=aggregate_budgets(before.budgets).value,
            new_value=aggregate_budgets(after.budgets).value,
            trigger_source=trigger_source,
            requested_operation=requested_operation,
        )
        await self._bus.publish(event)
