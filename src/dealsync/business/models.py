"""Business persistence models -- local source of truth for deals and quotes.

Three SQLAlchemy models:
- BusinessModel: A deal with its canonical state, display number and CRM link
- BudgetModel: A quote belonging to a business, ordered by position
- BusinessNumberAuditModel: Append-only trail of display number assignments

Relationships are enforced at application level (no FK constraints), so
that cleanup records written after a cascade delete are not removed with it.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.dealsync.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BusinessModel(Base):
    """A deal owned by one user.

    The stored ``state`` is a cache of the state derived from the business's
    budgets; any disagreement between the two is an inconsistency the
    auditor reports. ``number`` is unique per owner and never reassigned.
    """

    __tablename__ = "businesses"
    __table_args__ = (
        UniqueConstraint("owner_id", "number", name="uq_business_owner_number"),
        Index("ix_business_external_id", "external_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    state: Mapped[str] = mapped_column(
        String(40), nullable=False, default="opportunity_created"
    )
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    closing_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=_utcnow, nullable=True
    )


class BudgetModel(Base):
    """A quote under a business.

    Linked to its business via business_id (application-level integrity).
    Invoiced budgets are frozen; the service layer rejects edits unless they
    are flagged as administrative corrections.
    """

    __tablename__ = "budgets"
    __table_args__ = (Index("ix_budget_business_id", "business_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    business_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    invoiced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    total: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    rejected_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=_utcnow, nullable=True
    )


class BusinessNumberAuditModel(Base):
    """One display-number assignment event.

    Rows are appended on every assignment and never updated, so duplicated
    or skipped numbers remain visible after the fact.
    """

    __tablename__ = "business_number_audit"
    __table_args__ = (Index("ix_number_audit_owner", "owner_id", "number"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    business_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="assigned")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
