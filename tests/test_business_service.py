"""Tests for BusinessService: budget mutations, derived state, change events.

Covers:
- Re-derivation and persistence of the business state after each write
- ChangeEvent contents (before/after state and value, trigger source)
- Invoiced budget lock and administrative corrections
- Cascade delete and overdue budget expiry
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from src.dealsync.business.numbering import BusinessNumberAllocator
from src.dealsync.business.repository import BusinessRepository
from src.dealsync.business.schemas import (
    BudgetCreate,
    BudgetState,
    BudgetUpdate,
    BusinessState,
)
from src.dealsync.business.service import BusinessService
from src.dealsync.sync.errors import BudgetLocked, BusinessNotFound
from src.dealsync.sync.notifier import ChangeBus
from src.dealsync.sync.repository import SyncRepository
from src.dealsync.sync.schemas import (
    ExternalSnapshot,
    SyncLogEntry,
    SyncOperation,
    SyncOutcomeStatus,
    TriggerSource,
)


class _GatedBudgetWrites(BusinessRepository):
    """Repository whose budget writes wait until the test opens the gate."""

    def __init__(self, session_factory) -> None:
        super().__init__(session_factory)
        self.writing = asyncio.Event()
        self.gate = asyncio.Event()

    async def update_budget(self, budget_id, **fields):
        self.writing.set()
        await self.gate.wait()
        return await super().update_budget(budget_id, **fields)


def _gated_service(session_factory) -> tuple[BusinessService, _GatedBudgetWrites]:
    repo = _GatedBudgetWrites(session_factory)
    service = BusinessService(
        repository=repo,
        allocator=BusinessNumberAllocator(session_factory),
        bus=ChangeBus(),
    )
    return service, repo


@pytest.fixture
def events(components):
    """ChangeEvents published on the bus, in order."""
    received = []

    async def _record(event):
        received.append(event)

    components.bus.subscribe(_record)
    return received


# ── State Derivation on Write ────────────────────────────────────────────────


class TestBudgetWrites:
    @pytest.mark.asyncio
    async def test_new_business_starts_as_opportunity(self, make_business):
        business = await make_business()
        assert business.state == BusinessState.OPPORTUNITY_CREATED
        assert business.number == 1
        assert business.budgets == []

    @pytest.mark.asyncio
    async def test_adding_budget_moves_state_and_publishes(self, components, make_business, events):
        business = await make_business()

        await components.businesses.add_budget(
            business.id, BudgetCreate(state=BudgetState.DRAFT, total=Decimal("100"))
        )

        stored = await components.businesses.get_business(business.id)
        assert stored.state == BusinessState.QUOTE_SENT
        assert len(events) == 1
        event = events[0]
        assert event.old_state == BusinessState.OPPORTUNITY_CREATED
        assert event.new_state == BusinessState.QUOTE_SENT
        assert event.old_value == Decimal("0")
        assert event.new_value == Decimal("100")
        assert event.trigger_source == TriggerSource.AUTOMATIC

    @pytest.mark.asyncio
    async def test_partial_approval_keeps_approved_value(self, components, make_business):
        business = await make_business(
            budgets=((BudgetState.DRAFT, 100000), (BudgetState.PUBLISHED, 250000))
        )
        published = business.budgets[1]

        await components.businesses.update_budget(
            published.id, BudgetUpdate(state=BudgetState.APPROVED)
        )

        derivation = await components.businesses.explain(business.id)
        stored = await components.businesses.get_business(business.id)
        assert stored.state == BusinessState.PARTIALLY_ACCEPTED
        assert derivation.aggregate.value == Decimal("250000")

    @pytest.mark.asyncio
    async def test_budgets_keep_insertion_order(self, make_business):
        business = await make_business(
            budgets=((BudgetState.DRAFT, 1), (BudgetState.DRAFT, 2), (BudgetState.DRAFT, 3))
        )
        assert [b.total for b in business.budgets] == [Decimal("1"), Decimal("2"), Decimal("3")]

    @pytest.mark.asyncio
    async def test_transition_timestamps_are_stamped(self, components, make_business):
        business = await make_business(budgets=((BudgetState.DRAFT, 10),))
        budget_id = business.budgets[0].id

        published = await components.businesses.update_budget(
            budget_id, BudgetUpdate(state=BudgetState.PUBLISHED)
        )
        approved = await components.businesses.update_budget(
            budget_id, BudgetUpdate(state=BudgetState.APPROVED)
        )

        assert published.sent_at is not None
        assert approved.approved_at is not None
        assert approved.sent_at == published.sent_at

    @pytest.mark.asyncio
    async def test_write_without_change_still_publishes_no_op_event(
        self, components, make_business, events
    ):
        business = await make_business(budgets=((BudgetState.DRAFT, 10),))
        events.clear()

        await components.businesses.update_budget(
            business.budgets[0].id, BudgetUpdate(expires_at=datetime.now(timezone.utc))
        )

        assert len(events) == 1
        assert not events[0].state_changed
        assert not events[0].value_changed

    @pytest.mark.asyncio
    async def test_deleting_last_budget_reverts_to_opportunity(self, components, make_business):
        business = await make_business(budgets=((BudgetState.PUBLISHED, 10),))

        deleted = await components.businesses.delete_budget(business.budgets[0].id)

        assert deleted is True
        stored = await components.businesses.get_business(business.id)
        assert stored.state == BusinessState.OPPORTUNITY_CREATED


# ── Invoiced Lock ────────────────────────────────────────────────────────────


class TestInvoicedLock:
    @pytest.mark.asyncio
    async def test_invoiced_budget_rejects_plain_edit(self, components, make_business):
        business = await make_business(budgets=((BudgetState.APPROVED, 500),))
        budget_id = business.budgets[0].id
        await components.businesses.update_budget(budget_id, BudgetUpdate(invoiced=True))

        with pytest.raises(BudgetLocked):
            await components.businesses.update_budget(budget_id, BudgetUpdate(total=Decimal("1")))

    @pytest.mark.asyncio
    async def test_admin_correction_is_allowed(self, components, make_business):
        business = await make_business(budgets=((BudgetState.APPROVED, 500),))
        budget_id = business.budgets[0].id
        await components.businesses.update_budget(budget_id, BudgetUpdate(invoiced=True))

        updated = await components.businesses.update_budget(
            budget_id, BudgetUpdate(total=Decimal("450"), admin_correction=True)
        )

        assert updated.total == Decimal("450")
        stored = await components.businesses.get_business(business.id)
        assert stored.state == BusinessState.BUSINESS_CLOSED

    @pytest.mark.asyncio
    async def test_invoiced_budget_cannot_be_deleted(self, components, make_business):
        business = await make_business(budgets=((BudgetState.APPROVED, 500),))
        budget_id = business.budgets[0].id
        await components.businesses.update_budget(budget_id, BudgetUpdate(invoiced=True))

        with pytest.raises(BudgetLocked):
            await components.businesses.delete_budget(budget_id)
        assert await components.businesses.delete_budget(budget_id, admin_correction=True)

    @pytest.mark.asyncio
    async def test_edit_racing_invoicing_is_rejected(self, make_business, session_factory):
        business = await make_business(budgets=((BudgetState.APPROVED, 500),))
        budget_id = business.budgets[0].id
        service, repo = _gated_service(session_factory)

        invoicing = asyncio.create_task(
            service.update_budget(budget_id, BudgetUpdate(invoiced=True))
        )
        await repo.writing.wait()
        edit = asyncio.create_task(service.update_budget(budget_id, BudgetUpdate(total=Decimal("1"))))
        await asyncio.sleep(0.05)
        repo.gate.set()

        invoiced = await invoicing
        with pytest.raises(BudgetLocked):
            await edit
        assert invoiced.invoiced
        stored = await BusinessRepository(session_factory).get_budget(budget_id)
        assert stored.total == Decimal("500")

    @pytest.mark.asyncio
    async def test_delete_racing_invoicing_is_rejected(self, make_business, session_factory):
        business = await make_business(budgets=((BudgetState.APPROVED, 500),))
        budget_id = business.budgets[0].id
        service, repo = _gated_service(session_factory)

        invoicing = asyncio.create_task(
            service.update_budget(budget_id, BudgetUpdate(invoiced=True))
        )
        await repo.writing.wait()
        deletion = asyncio.create_task(service.delete_budget(budget_id))
        await asyncio.sleep(0.05)
        repo.gate.set()

        await invoicing
        with pytest.raises(BudgetLocked):
            await deletion
        assert await BusinessRepository(session_factory).get_budget(budget_id) is not None

    @pytest.mark.asyncio
    async def test_unknown_budget_raises(self, components):
        with pytest.raises(ValueError):
            await components.businesses.update_budget(
                "00000000-0000-0000-0000-000000000000", BudgetUpdate(total=Decimal("1"))
            )


# ── Businesses ───────────────────────────────────────────────────────────────


class TestBusinesses:
    @pytest.mark.asyncio
    async def test_missing_business_raises(self, components):
        with pytest.raises(BusinessNotFound):
            await components.businesses.get_business("00000000-0000-0000-0000-000000000000")

    @pytest.mark.asyncio
    async def test_link_external_requests_full_sync(self, components, make_business, events):
        business = await make_business()

        linked = await components.businesses.link_external(business.id, "D123")

        assert linked.external_id == "D123"
        assert events[-1].requested_operation == SyncOperation.FULL_SYNC
        assert events[-1].trigger_source == TriggerSource.MANUAL

    @pytest.mark.asyncio
    async def test_refresh_state_repairs_drift(self, components, make_business, session_factory):
        business = await make_business(budgets=((BudgetState.APPROVED, 10),))
        await BusinessRepository(session_factory).update_business(
            business.id, state=BusinessState.QUOTE_SENT
        )

        repaired = await components.businesses.refresh_state(business.id)

        assert repaired.state == BusinessState.BUSINESS_ACCEPTED

    @pytest.mark.asyncio
    async def test_delete_cascades_to_owned_records(
        self, components, make_business, session_factory
    ):
        business = await make_business(
            external_id="D9", budgets=((BudgetState.DRAFT, 10), (BudgetState.DRAFT, 20))
        )
        sync_repo = SyncRepository(session_factory)
        await sync_repo.enqueue(
            business.id, SyncOperation.FULL_SYNC, priority=5, trigger_source=TriggerSource.AUTOMATIC
        )
        await sync_repo.append_log(
            SyncLogEntry(
                business_id=business.id,
                operation=SyncOperation.FULL_SYNC,
                outcome=SyncOutcomeStatus.SUCCESS,
                success=True,
            )
        )
        await sync_repo.save_snapshot(ExternalSnapshot(business_id=business.id, external_id="D9"))

        assert await components.businesses.delete_business(business.id, reason="test") is True

        repo = BusinessRepository(session_factory)
        assert await repo.get_business(business.id) is None
        assert await repo.get_budget(business.budgets[0].id) is None
        assert await sync_repo.list_items(business_id=business.id) == []
        assert await sync_repo.list_logs(business.id) == []
        assert await sync_repo.get_snapshot(business.id) is None
        assert await components.businesses.delete_business(business.id) is False


# ── Expiry ───────────────────────────────────────────────────────────────────


class TestExpireOverdue:
    @pytest.mark.asyncio
    async def test_overdue_published_budgets_expire(self, components, make_business, events):
        now = datetime.now(timezone.utc)
        business = await make_business()
        await components.businesses.add_budget(
            business.id,
            BudgetCreate(
                state=BudgetState.PUBLISHED,
                total=Decimal("900"),
                expires_at=now - timedelta(days=1),
            ),
        )
        fresh = await make_business(name="Fresh")
        await components.businesses.add_budget(
            fresh.id,
            BudgetCreate(
                state=BudgetState.PUBLISHED,
                total=Decimal("50"),
                expires_at=now + timedelta(days=30),
            ),
        )
        events.clear()

        expired = await components.businesses.expire_overdue_budgets(now)

        assert expired == [business.id]
        stored = await components.businesses.get_business(business.id)
        assert stored.state == BusinessState.BUSINESS_LOST
        assert stored.budgets[0].state == BudgetState.EXPIRED
        assert events[0].trigger_source == TriggerSource.MAINTENANCE
        assert events[0].new_value == Decimal("0")

    @pytest.mark.asyncio
    async def test_nothing_overdue_is_a_no_op(self, components, make_business, events):
        await make_business(budgets=((BudgetState.PUBLISHED, 10),))
        events.clear()

        assert await components.businesses.expire_overdue_budgets() == []
        assert events == []
