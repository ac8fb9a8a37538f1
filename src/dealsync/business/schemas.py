"""Pydantic schemas for businesses (deals) and their budgets (quotes).

Defines:
- Enums: BusinessState, BudgetState, Confidence
- Budget payloads: BudgetCreate, BudgetUpdate, BudgetRead
- Business payloads: BusinessCreate, BusinessRead
- Derived values: BudgetAggregate, Derivation
- Numbering audit: NumberAssignment, NumberingIssue
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class BusinessState(str, Enum):
    """Canonical lifecycle state of a business, always derivable from its budgets."""

    OPPORTUNITY_CREATED = "opportunity_created"
    QUOTE_SENT = "quote_sent"
    PARTIALLY_ACCEPTED = "partially_accepted"
    BUSINESS_ACCEPTED = "business_accepted"
    BUSINESS_CLOSED = "business_closed"
    BUSINESS_LOST = "business_lost"


class BudgetState(str, Enum):
    """Lifecycle state of a single budget."""

    DRAFT = "draft"
    PUBLISHED = "published"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @classmethod
    def _missing_(cls, value: object) -> BudgetState | None:
        # Legacy rows store published budgets as "sent"
        if value == "sent":
            return cls.PUBLISHED
        return None


class Confidence(str, Enum):
    """How unambiguous a state derivation is (drives auditor auto-repair)."""

    HIGH = "high"
    MEDIUM = "medium"


# ── Budget Schemas ──────────────────────────────────────────────────────────


class BudgetCreate(BaseModel):
    """Schema for creating a budget under a business."""

    state: BudgetState = BudgetState.DRAFT
    total: Decimal = Field(default=Decimal("0"), ge=0)
    invoiced: bool = False
    expires_at: datetime | None = None


class BudgetUpdate(BaseModel):
    """Schema for updating a budget (all fields optional).

    Invoiced budgets only accept changes flagged as administrative corrections.
    """

    state: BudgetState | None = None
    total: Decimal | None = Field(default=None, ge=0)
    invoiced: bool | None = None
    expires_at: datetime | None = None
    admin_correction: bool = False


class BudgetRead(BaseModel):
    """Schema for reading a budget (includes all persisted fields)."""

    id: str
    business_id: str
    state: BudgetState
    total: Decimal = Decimal("0")
    invoiced: bool = False
    created_at: datetime | None = None
    sent_at: datetime | None = None
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    expires_at: datetime | None = None
    updated_at: datetime | None = None


# ── Business Schemas ────────────────────────────────────────────────────────


class BusinessCreate(BaseModel):
    """Schema for creating a business. The display number is assigned on insert."""

    owner_id: str
    name: str
    external_id: str | None = None
    closing_date: date | None = None


class BusinessRead(BaseModel):
    """Schema for reading a business with its ordered budgets."""

    id: str
    owner_id: str
    number: int
    name: str
    state: BusinessState
    external_id: str | None = None
    closing_date: date | None = None
    budgets: list[BudgetRead] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Derived Values ──────────────────────────────────────────────────────────


class BudgetAggregate(BaseModel):
    """Per-state counts and the priority-ruled monetary value of a budget set."""

    total: int = 0
    draft: int = 0
    published: int = 0
    approved: int = 0
    rejected: int = 0
    expired: int = 0
    cancelled: int = 0
    invoiced_approved: int = 0
    value: Decimal = Decimal("0")


class Derivation(BaseModel):
    """Result of deriving a business state, with its justification."""

    state: BusinessState
    reason: str
    confidence: Confidence
    aggregate: BudgetAggregate


# ── Numbering Audit ─────────────────────────────────────────────────────────


class NumberAssignment(BaseModel):
    """One audited assignment of a display number to a business."""

    id: str
    owner_id: str
    number: int
    business_id: str | None = None
    status: str = "assigned"
    notes: str | None = None
    assigned_at: datetime | None = None


class NumberingIssue(BaseModel):
    """A detected numbering inconsistency for one owner."""

    issue_type: str  # "duplicate" | "gap" | "unaudited"
    description: str
    expected_number: int | None = None
    actual_number: int | None = None
    business_id: str | None = None
