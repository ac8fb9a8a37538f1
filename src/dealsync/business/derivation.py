"""State derivation engine -- the single rule mapping budgets to a business state.

Rules are evaluated in order and the first match wins:

1. No budgets                                   -> opportunity_created
2. approved > 0 and every approved is invoiced  -> business_closed
3. Every budget approved                        -> business_accepted
4. Some but not all budgets approved            -> partially_accepted
5. Every budget rejected or expired             -> business_lost
6. Any published or draft budget                -> quote_sent
7. Otherwise                                    -> opportunity_created

Derivation is pure and synchronous. Callers own persistence.
"""

from __future__ import annotations

from collections.abc import Iterable

from src.dealsync.business.aggregation import aggregate_budgets
from src.dealsync.business.schemas import (
    BudgetAggregate,
    BudgetRead,
    BusinessState,
    Confidence,
    Derivation,
)


def _apply_rules(agg: BudgetAggregate) -> tuple[BusinessState, str]:
    if agg.total == 0:
        return BusinessState.OPPORTUNITY_CREATED, "No budgets"

    if agg.approved > 0 and agg.invoiced_approved == agg.approved:
        return (
            BusinessState.BUSINESS_CLOSED,
            f"All {agg.approved} approved budget(s) invoiced",
        )

    if agg.approved == agg.total:
        return (
            BusinessState.BUSINESS_ACCEPTED,
            f"All {agg.total} budget(s) approved",
        )

    if agg.approved > 0:
        return (
            BusinessState.PARTIALLY_ACCEPTED,
            f"{agg.approved} of {agg.total} budget(s) approved",
        )

    if agg.rejected + agg.expired == agg.total:
        return (
            BusinessState.BUSINESS_LOST,
            f"All {agg.total} budget(s) rejected or expired",
        )

    if agg.published > 0 or agg.draft > 0:
        return (
            BusinessState.QUOTE_SENT,
            f"{agg.published} published and {agg.draft} draft budget(s) pending",
        )

    return BusinessState.OPPORTUNITY_CREATED, "No active budgets"


def _confidence(agg: BudgetAggregate) -> Confidence:
    if agg.total == 0 or agg.approved == agg.total:
        return Confidence.HIGH
    if agg.rejected + agg.expired == agg.total:
        return Confidence.HIGH
    return Confidence.MEDIUM


def derive_state(budgets: Iterable[BudgetRead]) -> BusinessState:
    """Return the canonical state for a set of budgets."""
    state, _ = _apply_rules(aggregate_budgets(budgets))
    return state


def explain_state(budgets: Iterable[BudgetRead]) -> Derivation:
    """Derive the state and report why, and how unambiguous the evidence is.

    Confidence is HIGH when there are no budgets, when every budget is
    approved, or when every budget is rejected or expired. Mixed sets are
    MEDIUM and are never repaired automatically.
    """
    agg = aggregate_budgets(budgets)
    state, reason = _apply_rules(agg)
    return Derivation(
        state=state,
        reason=reason,
        confidence=_confidence(agg),
        aggregate=agg,
    )
