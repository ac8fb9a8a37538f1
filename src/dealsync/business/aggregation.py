"""Budget aggregation -- per-state counts and the monetary value of a deal.

The value of a business follows a fixed priority: the sum of approved
budgets if any are approved, else the sum of published budgets, else the
sum of drafts, else zero. Rejected totals are never netted against
approved ones.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal

from src.dealsync.business.schemas import BudgetAggregate, BudgetRead, BudgetState

_ZERO = Decimal("0")


def aggregate_budgets(budgets: Iterable[BudgetRead]) -> BudgetAggregate:
    """Count budgets per state and compute the business value.

    Args:
        budgets: Budgets of a single business, in any order.

    Returns:
        BudgetAggregate with counts, invoiced_approved, and value.
    """
    counts = {state: 0 for state in BudgetState}
    sums = {state: _ZERO for state in BudgetState}
    invoiced_approved = 0
    total = 0

    for budget in budgets:
        total += 1
        counts[budget.state] += 1
        sums[budget.state] += budget.total or _ZERO
        if budget.state == BudgetState.APPROVED and budget.invoiced:
            invoiced_approved += 1

    if counts[BudgetState.APPROVED]:
        value = sums[BudgetState.APPROVED]
    elif counts[BudgetState.PUBLISHED]:
        value = sums[BudgetState.PUBLISHED]
    elif counts[BudgetState.DRAFT]:
        value = sums[BudgetState.DRAFT]
    else:
        value = _ZERO

    return BudgetAggregate(
        total=total,
        draft=counts[BudgetState.DRAFT],
        published=counts[BudgetState.PUBLISHED],
        approved=counts[BudgetState.APPROVED],
        rejected=counts[BudgetState.REJECTED],
        expired=counts[BudgetState.EXPIRED],
        cancelled=counts[BudgetState.CANCELLED],
        invoiced_approved=invoiced_approved,
        value=value,
    )
