"""Tests for the external sync worker against the fake CRM.

Covers:
- Remote 404: local business deleted with its budgets, distinct log entry
- Already-in-sync reads that write nothing
- Property diffs per operation (state, amount, full with closedate)
- No-op paths (unlinked, vanished business) and configuration failures
- Exactly one sync log entry per execution
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from src.dealsync.business.repository import BusinessRepository
from src.dealsync.business.schemas import BudgetState, BusinessState
from src.dealsync.config import Settings
from src.dealsync.main import build_components
from src.dealsync.sync.schemas import (
    QueueStatus,
    SyncDirection,
    SyncOperation,
    SyncOutcomeStatus,
    TriggerSource,
)
from src.dealsync.sync.worker import ALREADY_IN_SYNC, NOT_LINKED, REMOTE_NOT_FOUND


async def _sync(components, business_id, operation=SyncOperation.FULL_SYNC):
    return await components.dispatcher.run_now(business_id, operation, TriggerSource.MANUAL)


# ── Remote Deletion ──────────────────────────────────────────────────────────


class TestRemoteDeleted:
    @pytest.mark.asyncio
    async def test_404_deletes_local_business_and_logs_it(
        self, components, make_business, mapped, crm, session_factory
    ):
        business = await make_business(
            external_id="D123",
            budgets=((BudgetState.APPROVED, 1000), (BudgetState.DRAFT, 200)),
        )

        outcome = await _sync(components, business.id)

        assert outcome.status == SyncOutcomeStatus.REMOTE_DELETED
        assert outcome.reason == REMOTE_NOT_FOUND
        assert await components.businesses.get_business_or_none(business.id) is None
        assert await BusinessRepository(session_factory).get_budget(business.budgets[0].id) is None

        logs = await components.sync_repository.list_logs(business.id)
        assert len(logs) == 1
        assert logs[0].outcome == SyncOutcomeStatus.REMOTE_DELETED
        assert logs[0].reason == "remote object not found"
        assert logs[0].success is True
        assert logs[0].external_id == "D123"

    @pytest.mark.asyncio
    async def test_404_leaves_other_businesses_alone(self, components, make_business, mapped, crm):
        crm.add_deal("D1", dealstage="stage_opportunity_created", pipeline="default", amount="0")
        kept = await make_business(external_id="D1")
        gone = await make_business(external_id="D404")

        await _sync(components, gone.id)

        assert await components.businesses.get_business_or_none(kept.id) is not None


# ── Outbound Writes ──────────────────────────────────────────────────────────


class TestOutbound:
    @pytest.mark.asyncio
    async def test_already_in_sync_writes_nothing(self, components, make_business, mapped, crm):
        crm.add_deal("D123", dealstage="stage_quote_sent", pipeline="default", amount="300")
        business = await make_business(
            external_id="D123", budgets=((BudgetState.PUBLISHED, 300),)
        )

        outcome = await _sync(components, business.id)

        assert outcome.status == SyncOutcomeStatus.NO_OP
        assert outcome.reason == ALREADY_IN_SYNC
        assert crm.patches == []
        snapshot = await components.sync_repository.get_snapshot(business.id)
        assert snapshot.stage_id == "stage_quote_sent"
        assert snapshot.mapped_state == BusinessState.QUOTE_SENT

    @pytest.mark.asyncio
    async def test_full_sync_pushes_differing_properties(
        self, components, make_business, mapped, crm
    ):
        crm.add_deal("D123", dealstage="stage_quote_sent", pipeline="default", amount="10")
        business = await make_business(
            external_id="D123", budgets=((BudgetState.APPROVED, 250),)
        )

        outcome = await _sync(components, business.id)

        assert outcome.status == SyncOutcomeStatus.SUCCESS
        assert outcome.reason == "updated amount, dealstage"
        assert len(crm.patches) == 1
        patch = crm.patches[0]
        assert set(patch) == {"dealstage", "amount"}
        assert patch["dealstage"] == "stage_business_accepted"
        assert Decimal(patch["amount"]) == Decimal("250")

        snapshot = await components.sync_repository.get_snapshot(business.id)
        assert snapshot.mapped_state == BusinessState.BUSINESS_ACCEPTED
        assert snapshot.amount == Decimal("250")

    @pytest.mark.asyncio
    async def test_state_sync_leaves_amount_alone(self, components, make_business, mapped, crm):
        crm.add_deal("D123", dealstage="stage_quote_sent", pipeline="default", amount="10")
        business = await make_business(
            external_id="D123", budgets=((BudgetState.APPROVED, 250),)
        )

        await _sync(components, business.id, SyncOperation.STATE_SYNC)

        assert crm.patches == [{"dealstage": "stage_business_accepted"}]

    @pytest.mark.asyncio
    async def test_amount_sync_pushes_zero_values(self, components, make_business, mapped, crm):
        crm.add_deal("D123", dealstage="stage_business_lost", pipeline="default")
        business = await make_business(
            external_id="D123", budgets=((BudgetState.REJECTED, 700),)
        )

        outcome = await _sync(components, business.id, SyncOperation.AMOUNT_SYNC)

        assert outcome.status == SyncOutcomeStatus.SUCCESS
        assert [Decimal(p["amount"]) for p in crm.patches] == [Decimal("0")]

    @pytest.mark.asyncio
    async def test_full_sync_pushes_closing_date(self, components, make_business, mapped, crm):
        crm.add_deal(
            "D123", dealstage="stage_opportunity_created", pipeline="default", amount="0"
        )
        business = await make_business(external_id="D123", closing_date=date(2026, 3, 1))

        await _sync(components, business.id)

        assert crm.patches == [{"closedate": "1772323200000"}]

    @pytest.mark.asyncio
    async def test_exactly_one_log_entry_per_execution(
        self, components, make_business, mapped, crm
    ):
        crm.add_deal("D123", dealstage="stage_quote_sent", pipeline="default", amount="10")
        business = await make_business(
            external_id="D123", budgets=((BudgetState.APPROVED, 250),)
        )

        await _sync(components, business.id)
        await _sync(components, business.id)

        logs = await components.sync_repository.list_logs(business.id)
        assert [log.outcome for log in logs] == [
            SyncOutcomeStatus.NO_OP,
            SyncOutcomeStatus.SUCCESS,
        ]
        first = logs[1]
        assert first.direction == SyncDirection.OUTBOUND
        assert first.old_state == "quote_sent"
        assert first.new_state == "business_accepted"
        assert first.old_amount == Decimal("10")
        assert first.new_amount == Decimal("250")
        assert first.trigger_source == TriggerSource.MANUAL


# ── No-ops & Failures ────────────────────────────────────────────────────────


class TestNoOpsAndFailures:
    @pytest.mark.asyncio
    async def test_unlinked_business_is_a_successful_no_op(self, components, make_business, crm):
        business = await make_business(budgets=((BudgetState.DRAFT, 10),))

        outcome = await _sync(components, business.id)

        assert outcome.status == SyncOutcomeStatus.NO_OP
        assert outcome.reason == NOT_LINKED
        assert outcome.ok
        assert crm.requests == []

    @pytest.mark.asyncio
    async def test_vanished_business_is_a_no_op(self, components, make_business):
        business = await make_business(external_id="D123")
        await components.businesses.delete_business(business.id)

        outcome = await _sync(components, business.id)

        assert outcome.status == SyncOutcomeStatus.NO_OP
        assert outcome.reason == "business no longer exists"

    @pytest.mark.asyncio
    async def test_missing_mapping_fails_without_retry(self, components, make_business, crm):
        crm.add_deal("D123", dealstage="x", pipeline="default")
        business = await make_business(external_id="D123")

        outcome = await _sync(components, business.id)

        assert outcome.status == SyncOutcomeStatus.FAILED
        assert outcome.reason == "configuration error"
        assert "opportunity_created" in outcome.error
        assert crm.requests == []
        item = (await components.sync_repository.list_items(business_id=business.id))[0]
        assert item.status == QueueStatus.FAILED

    @pytest.mark.asyncio
    async def test_missing_credential_fails(self, session_factory, crm, make_business):
        unconfigured = build_components(
            session_factory, Settings(CRM_ACCESS_TOKEN=""), crm_transport=crm.transport()
        )
        business = await make_business(external_id="D123")

        outcome = await _sync(unconfigured, business.id)

        assert outcome.status == SyncOutcomeStatus.FAILED
        assert "access token" in outcome.error
        assert crm.requests == []

    @pytest.mark.asyncio
    async def test_permanent_error_keeps_body(self, components, make_business, mapped, crm):
        crm.add_deal("D123", dealstage="stage_quote_sent", pipeline="default", amount="1")
        business = await make_business(
            external_id="D123", budgets=((BudgetState.APPROVED, 50),)
        )
        crm.write_errors = [(400, '{"message":"Property values were not valid"}')]

        outcome = await _sync(components, business.id)

        assert outcome.status == SyncOutcomeStatus.FAILED
        assert outcome.error == '{"message":"Property values were not valid"}'
        logs = await components.sync_repository.list_logs(business.id)
        assert logs[0].error_message == outcome.error
        assert logs[0].success is False
