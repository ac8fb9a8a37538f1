"""Tests for the consistency auditor.

Covers:
- A consistent data set produces a report and no other writes
- Only high-confidence mismatches are repaired automatically
- One failing business does not stop the run
- Operator repair, stored reports, and the maintenance run
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from src.dealsync.business.repository import BusinessRepository
from src.dealsync.business.schemas import BudgetCreate, BudgetState, BusinessState, Confidence
from src.dealsync.sync.schemas import (
    QueueStatus,
    SyncDirection,
    SyncOperation,
    TriggerSource,
)


@pytest.fixture
def events(components):
    received = []

    async def _record(event):
        received.append(event)

    components.bus.subscribe(_record)
    return received


async def _drift(session_factory, business_id: str, state: BusinessState) -> None:
    """Overwrite the stored state behind the service's back."""
    await BusinessRepository(session_factory).update_business(business_id, state=state)


# ── Audit Runs ───────────────────────────────────────────────────────────────


class TestRun:
    @pytest.mark.asyncio
    async def test_consistent_set_writes_only_the_report(
        self, components, make_business, events
    ):
        await make_business(budgets=((BudgetState.APPROVED, 10),))
        await make_business(budgets=((BudgetState.PUBLISHED, 10), (BudgetState.DRAFT, 5)))
        await make_business()
        before = {b.id: b.updated_at for b in await components.businesses.list_businesses()}
        events.clear()

        report = await components.auditor.run()

        assert report.total_scanned == 3
        assert report.inconsistent == 0
        assert report.auto_fixed == 0
        assert report.items == []
        assert report.id is not None
        assert (await components.auditor.latest_report()).id == report.id
        assert events == []
        assert await components.sync_repository.list_logs() == []
        assert await components.sync_repository.list_items() == []
        after = {b.id: b.updated_at for b in await components.businesses.list_businesses()}
        assert after == before

    @pytest.mark.asyncio
    async def test_high_confidence_mismatch_is_repaired(
        self, components, make_business, session_factory, events
    ):
        business = await make_business(budgets=((BudgetState.APPROVED, 10),))
        await _drift(session_factory, business.id, BusinessState.QUOTE_SENT)
        events.clear()

        report = await components.auditor.run()

        assert report.inconsistent == 1
        assert report.high_confidence == 1
        assert report.auto_fixed == 1
        item = report.items[0]
        assert item.current_state == BusinessState.QUOTE_SENT
        assert item.expected_state == BusinessState.BUSINESS_ACCEPTED
        assert item.auto_fixed

        stored = await components.businesses.get_business(business.id)
        assert stored.state == BusinessState.BUSINESS_ACCEPTED
        assert events[0].trigger_source == TriggerSource.AUDIT

        logs = await components.sync_repository.list_logs(business.id)
        assert len(logs) == 1
        assert logs[0].direction == SyncDirection.INTERNAL
        assert logs[0].reason.startswith("state repaired:")

    @pytest.mark.asyncio
    async def test_medium_confidence_mismatch_is_only_reported(
        self, components, make_business, session_factory
    ):
        business = await make_business(
            budgets=((BudgetState.APPROVED, 10), (BudgetState.DRAFT, 5))
        )
        await _drift(session_factory, business.id, BusinessState.QUOTE_SENT)

        report = await components.auditor.run()

        assert report.inconsistent == 1
        assert report.auto_fixed == 0
        item = report.items[0]
        assert item.confidence == Confidence.MEDIUM
        assert item.expected_state == BusinessState.PARTIALLY_ACCEPTED
        assert item.reason == "1 of 2 budget(s) approved"
        assert not item.auto_fixed
        stored = await components.businesses.get_business(business.id)
        assert stored.state == BusinessState.QUOTE_SENT

    @pytest.mark.asyncio
    async def test_auto_fix_disabled_reports_high_confidence(
        self, components, make_business, session_factory
    ):
        business = await make_business(budgets=((BudgetState.REJECTED, 10),))
        await _drift(session_factory, business.id, BusinessState.QUOTE_SENT)

        report = await components.auditor.run(auto_fix=False)

        assert report.high_confidence == 1
        assert report.auto_fixed == 0
        stored = await components.businesses.get_business(business.id)
        assert stored.state == BusinessState.QUOTE_SENT

    @pytest.mark.asyncio
    async def test_failure_on_one_business_does_not_stop_the_run(
        self, components, make_business, session_factory, monkeypatch
    ):
        broken = await make_business(name="Broken", budgets=((BudgetState.APPROVED, 1),))
        healthy = await make_business(name="Healthy", budgets=((BudgetState.APPROVED, 2),))
        await _drift(session_factory, broken.id, BusinessState.QUOTE_SENT)
        await _drift(session_factory, healthy.id, BusinessState.QUOTE_SENT)

        refresh_state = components.businesses.refresh_state

        async def _flaky_refresh(business_id, trigger_source=TriggerSource.AUTOMATIC):
            if business_id == broken.id:
                raise RuntimeError("disk full")
            return await refresh_state(business_id, trigger_source)

        monkeypatch.setattr(components.businesses, "refresh_state", _flaky_refresh)

        report = await components.auditor.run()

        assert report.total_scanned == 2
        assert report.errors == 1
        assert report.auto_fixed == 1
        failed = next(i for i in report.items if i.business_id == broken.id)
        assert failed.error == "RuntimeError: disk full"
        stored = await components.businesses.get_business(healthy.id)
        assert stored.state == BusinessState.BUSINESS_ACCEPTED

    @pytest.mark.asyncio
    async def test_failed_queue_items_are_listed(self, components, make_business):
        business = await make_business()
        repo = components.sync_repository
        item, _ = await repo.enqueue(
            business.id, SyncOperation.STATE_SYNC, priority=5, trigger_source=TriggerSource.AUTOMATIC
        )
        await repo.claim(1)
        await repo.mark_failed(item.id, "HTTP 400")

        report = await components.auditor.run()

        assert [i.id for i in report.failed_queue_items] == [item.id]

    @pytest.mark.asyncio
    async def test_repair_of_linked_business_queues_audit_sync(
        self, components, make_business, session_factory
    ):
        business = await make_business(
            external_id="D123", budgets=((BudgetState.APPROVED, 10),)
        )
        await _drift(session_factory, business.id, BusinessState.QUOTE_SENT)
        components.notifier.start()

        await components.auditor.run()

        items = await components.sync_repository.list_items(business_id=business.id)
        assert len(items) == 1
        assert items[0].operation == SyncOperation.STATE_SYNC
        assert items[0].priority == 3
        assert items[0].status == QueueStatus.PENDING


# ── Operator Actions ─────────────────────────────────────────────────────────


class TestOperatorActions:
    @pytest.mark.asyncio
    async def test_repair_fixes_medium_confidence(
        self, components, make_business, session_factory
    ):
        business = await make_business(
            budgets=((BudgetState.APPROVED, 10), (BudgetState.DRAFT, 5))
        )
        await _drift(session_factory, business.id, BusinessState.QUOTE_SENT)

        item = await components.auditor.repair(business.id)

        assert item.auto_fixed
        assert item.confidence == Confidence.MEDIUM
        stored = await components.businesses.get_business(business.id)
        assert stored.state == BusinessState.PARTIALLY_ACCEPTED
        logs = await components.sync_repository.list_logs(business.id)
        assert logs[0].trigger_source == TriggerSource.MANUAL

    @pytest.mark.asyncio
    async def test_repair_of_consistent_business_is_a_no_op(self, components, make_business):
        business = await make_business(budgets=((BudgetState.DRAFT, 5),))

        item = await components.auditor.repair(business.id)

        assert item.reason == "already consistent"
        assert not item.auto_fixed
        assert await components.sync_repository.list_logs(business.id) == []

    @pytest.mark.asyncio
    async def test_latest_report(self, components, make_business):
        assert await components.auditor.latest_report() is None
        await make_business()

        report = await components.auditor.run()
        latest = await components.auditor.latest_report()

        assert latest.id == report.id
        assert latest.total_scanned == 1

    @pytest.mark.asyncio
    async def test_maintenance_expires_then_audits(self, components, make_business):
        business = await make_business()
        await components.businesses.add_budget(
            business.id,
            BudgetCreate(
                state=BudgetState.PUBLISHED,
                total=Decimal("100"),
                expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
            ),
        )

        report = await components.auditor.run_maintenance()

        assert report.inconsistent == 0
        stored = await components.businesses.get_business(business.id)
        assert stored.state == BusinessState.BUSINESS_LOST
