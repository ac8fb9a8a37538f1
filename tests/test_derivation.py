"""Tests for the state derivation engine.

Covers every rule in evaluation order, the reason strings, and the
confidence classification the auditor relies on.
"""

from __future__ import annotations

import uuid
from decimal import Decimal

import pytest

from src.dealsync.business.derivation import derive_state, explain_state
from src.dealsync.business.schemas import BudgetRead, BudgetState, BusinessState, Confidence


def _make_budget(state: BudgetState, total: str = "100", invoiced: bool = False) -> BudgetRead:
    return BudgetRead(
        id=str(uuid.uuid4()),
        business_id="business-1",
        state=state,
        total=Decimal(total),
        invoiced=invoiced,
    )


# ── Rules ────────────────────────────────────────────────────────────────────


class TestDeriveState:
    def test_no_budgets(self):
        assert derive_state([]) == BusinessState.OPPORTUNITY_CREATED

    def test_all_approved_and_invoiced_is_closed(self):
        budgets = [
            _make_budget(BudgetState.APPROVED, invoiced=True),
            _make_budget(BudgetState.APPROVED, invoiced=True),
        ]
        assert derive_state(budgets) == BusinessState.BUSINESS_CLOSED

    def test_closed_takes_precedence_over_pending_budgets(self):
        budgets = [
            _make_budget(BudgetState.APPROVED, invoiced=True),
            _make_budget(BudgetState.DRAFT),
        ]
        assert derive_state(budgets) == BusinessState.BUSINESS_CLOSED

    def test_all_approved_not_all_invoiced_is_accepted(self):
        budgets = [
            _make_budget(BudgetState.APPROVED, invoiced=True),
            _make_budget(BudgetState.APPROVED),
        ]
        assert derive_state(budgets) == BusinessState.BUSINESS_ACCEPTED

    def test_some_approved_is_partially_accepted(self):
        budgets = [
            _make_budget(BudgetState.DRAFT, "100000"),
            _make_budget(BudgetState.APPROVED, "250000"),
        ]
        derivation = explain_state(budgets)
        assert derivation.state == BusinessState.PARTIALLY_ACCEPTED
        assert derivation.aggregate.value == Decimal("250000")
        assert derivation.confidence == Confidence.MEDIUM

    def test_all_rejected_is_lost_with_zero_value(self):
        derivation = explain_state(
            [_make_budget(BudgetState.REJECTED), _make_budget(BudgetState.REJECTED)]
        )
        assert derivation.state == BusinessState.BUSINESS_LOST
        assert derivation.aggregate.value == Decimal("0")
        assert derivation.confidence == Confidence.HIGH

    def test_rejected_and_expired_mix_is_lost(self):
        budgets = [_make_budget(BudgetState.REJECTED), _make_budget(BudgetState.EXPIRED)]
        assert derive_state(budgets) == BusinessState.BUSINESS_LOST

    @pytest.mark.parametrize("state", [BudgetState.PUBLISHED, BudgetState.DRAFT])
    def test_pending_budget_is_quote_sent(self, state):
        budgets = [_make_budget(state), _make_budget(BudgetState.REJECTED)]
        assert derive_state(budgets) == BusinessState.QUOTE_SENT

    def test_only_cancelled_falls_through(self):
        derivation = explain_state([_make_budget(BudgetState.CANCELLED)])
        assert derivation.state == BusinessState.OPPORTUNITY_CREATED
        assert derivation.reason == "No active budgets"

    def test_order_of_budgets_does_not_matter(self):
        budgets = [
            _make_budget(BudgetState.REJECTED),
            _make_budget(BudgetState.APPROVED),
            _make_budget(BudgetState.PUBLISHED),
        ]
        assert derive_state(budgets) == derive_state(list(reversed(budgets)))


# ── Confidence & Reasons ─────────────────────────────────────────────────────


class TestExplainState:
    def test_no_budgets_is_high_confidence(self):
        derivation = explain_state([])
        assert derivation.confidence == Confidence.HIGH
        assert derivation.reason == "No budgets"

    def test_all_approved_is_high_confidence(self):
        derivation = explain_state(
            [_make_budget(BudgetState.APPROVED), _make_budget(BudgetState.APPROVED)]
        )
        assert derivation.confidence == Confidence.HIGH
        assert derivation.reason == "All 2 budget(s) approved"

    def test_mixed_pending_is_medium_confidence(self):
        derivation = explain_state(
            [_make_budget(BudgetState.PUBLISHED), _make_budget(BudgetState.DRAFT)]
        )
        assert derivation.state == BusinessState.QUOTE_SENT
        assert derivation.confidence == Confidence.MEDIUM
        assert derivation.reason == "1 published and 1 draft budget(s) pending"

    def test_partial_reason_counts_budgets(self):
        derivation = explain_state(
            [
                _make_budget(BudgetState.APPROVED),
                _make_budget(BudgetState.REJECTED),
                _make_budget(BudgetState.DRAFT),
            ]
        )
        assert derivation.reason == "1 of 3 budget(s) approved"
