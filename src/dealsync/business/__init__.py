"""Business module -- deals, their budgets, and the canonical state rule.

Provides SQLAlchemy models (Business, Budget, BusinessNumberAudit), Pydantic
schemas, the budget aggregator and state derivation engine, sequential
numbering, BusinessRepository, and BusinessService (the single entry point
for state-changing writes).
"""

from __future__ import annotations

from src.dealsync.business.schemas import (
    BudgetState,
    BusinessState,
    Confidence,
    Derivation,
)

__all__ = [
    "BudgetState",
    "BusinessService",
    "BusinessState",
    "Confidence",
    "Derivation",
    "derive_state",
    "explain_state",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load derivation and service to avoid circular imports."""
    if name in ("derive_state", "explain_state"):
        from src.dealsync.business import derivation

        return getattr(derivation, name)
    if name == "BusinessService":
        from src.dealsync.business.service import BusinessService

        return BusinessService
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
