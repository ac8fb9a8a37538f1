"""Business repository -- async CRUD for businesses and budgets.

Provides BusinessRepository with the session_factory callable pattern.
Handles serialization between SQLAlchemy models and Pydantic schemas and
performs the application-level cascade on business deletion: budgets, sync
log entries, queue items and the external snapshot go with the business.
A log entry written after the delete (e.g. remote_deleted) survives it.

Numbers are assigned by BusinessNumberAllocator, not here.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import date, datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealsync.business.models import BudgetModel, BusinessModel
from src.dealsync.business.schemas import (
    BudgetCreate,
    BudgetRead,
    BudgetState,
    BusinessRead,
    BusinessState,
)
from src.dealsync.sync.models import ExternalSnapshotModel, SyncLogModel, SyncQueueModel

logger = structlog.get_logger(__name__)

# Budget state -> timestamp column stamped on first entry into that state
_STATE_TIMESTAMPS = {
    BudgetState.PUBLISHED: "sent_at",
    BudgetState.APPROVED: "approved_at",
    BudgetState.REJECTED: "rejected_at",
}


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_budget(model: BudgetModel) -> BudgetRead:
    """Convert BudgetModel to BudgetRead schema."""
    return BudgetRead(
        id=str(model.id),
        business_id=str(model.business_id),
        state=BudgetState(model.state),
        total=model.total,
        invoiced=model.invoiced,
        created_at=model.created_at,
        sent_at=model.sent_at,
        approved_at=model.approved_at,
        rejected_at=model.rejected_at,
        expires_at=model.expires_at,
        updated_at=model.updated_at,
    )


def _model_to_business(
    model: BusinessModel, budgets: list[BudgetModel]
) -> BusinessRead:
    """Convert BusinessModel (and its budget rows) to BusinessRead schema."""
    return BusinessRead(
        id=str(model.id),
        owner_id=model.owner_id,
        number=model.number,
        name=model.name,
        state=BusinessState(model.state),
        external_id=model.external_id,
        closing_date=model.closing_date,
        budgets=[_model_to_budget(b) for b in budgets],
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _stamp_transition(model: BudgetModel, state: BudgetState) -> None:
    column = _STATE_TIMESTAMPS.get(state)
    if column and getattr(model, column) is None:
        setattr(model, column, datetime.now(timezone.utc))


# ── Repository ──────────────────────────────────────────────────────────────


class BusinessRepository:
    """Async CRUD operations for businesses and their budgets.

    Args:
        session_factory: async_sessionmaker (or compatible callable) that
            returns an AsyncSession usable as an async context manager.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _load_budgets(
        self, session: AsyncSession, business_id: uuid.UUID
    ) -> list[BudgetModel]:
        stmt = (
            select(BudgetModel)
            .where(BudgetModel.business_id == business_id)
            .order_by(BudgetModel.position, BudgetModel.created_at)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    # ── Businesses ──────────────────────────────────────────────────────────

    async def get_business(self, business_id: str) -> BusinessRead | None:
        """Get a business with its ordered budgets, or None if it does not exist."""
        async with self._session_factory() as session:
            model = await session.get(BusinessModel, uuid.UUID(business_id))
            if model is None:
                return None
            budgets = await self._load_budgets(session, model.id)
            return _model_to_business(model, budgets)

    async def get_business_by_external_id(self, external_id: str) -> BusinessRead | None:
        """Get the business linked to a CRM deal id."""
        async with self._session_factory() as session:
            stmt = select(BusinessModel).where(BusinessModel.external_id == external_id)
            result = await session.execute(stmt)
            model = result.scalars().first()
            if model is None:
                return None
            budgets = await self._load_budgets(session, model.id)
            return _model_to_business(model, budgets)

    async def list_businesses(
        self,
        owner_id: str | None = None,
        linked_only: bool = False,
    ) -> list[BusinessRead]:
        """List businesses with their budgets.

        Args:
            owner_id: Restrict to one owner.
            linked_only: Only businesses that carry a CRM external id.
        """
        async with self._session_factory() as session:
            stmt = select(BusinessModel).order_by(
                BusinessModel.owner_id, BusinessModel.number
            )
            if owner_id is not None:
                stmt = stmt.where(BusinessModel.owner_id == owner_id)
            if linked_only:
                stmt = stmt.where(BusinessModel.external_id.is_not(None))
            result = await session.execute(stmt)
            models = list(result.scalars().all())
            if not models:
                return []

            budget_stmt = (
                select(BudgetModel)
                .where(BudgetModel.business_id.in_([m.id for m in models]))
                .order_by(BudgetModel.position, BudgetModel.created_at)
            )
            budget_rows = (await session.execute(budget_stmt)).scalars().all()
            by_business: dict[uuid.UUID, list[BudgetModel]] = {}
            for row in budget_rows:
                by_business.setdefault(row.business_id, []).append(row)

            return [_model_to_business(m, by_business.get(m.id, [])) for m in models]

    async def list_business_ids(self) -> list[str]:
        """Return every business id, oldest first."""
        async with self._session_factory() as session:
            stmt = select(BusinessModel.id).order_by(BusinessModel.created_at)
            result = await session.execute(stmt)
            return [str(row) for row in result.scalars().all()]

    async def update_business(self, business_id: str, **fields: Any) -> BusinessRead:
        """Update persisted business columns (state, external_id, closing_date, name).

        Raises:
            ValueError: If the business does not exist or a field is unknown.
        """
        allowed = {"state", "external_id", "closing_date", "name"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown business fields: {sorted(unknown)}")

        async with self._session_factory() as session:
            model = await session.get(BusinessModel, uuid.UUID(business_id))
            if model is None:
                raise ValueError(f"Business not found: id={business_id}")

            for key, value in fields.items():
                if isinstance(value, BusinessState):
                    value = value.value
                setattr(model, key, value)

            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            budgets = await self._load_budgets(session, model.id)
            return _model_to_business(model, budgets)

    async def delete_business(self, business_id: str) -> bool:
        """Delete a business with its budgets, log entries, queue items and snapshot.

        Returns:
            True if the business existed.
        """
        bid = uuid.UUID(business_id)
        async with self._session_factory() as session:
            model = await session.get(BusinessModel, bid)
            if model is None:
                return False

            await session.execute(delete(BudgetModel).where(BudgetModel.business_id == bid))
            await session.execute(delete(SyncLogModel).where(SyncLogModel.business_id == bid))
            await session.execute(
                delete(SyncQueueModel).where(SyncQueueModel.business_id == bid)
            )
            await session.execute(
                delete(ExternalSnapshotModel).where(ExternalSnapshotModel.business_id == bid)
            )
            await session.delete(model)
            await session.commit()

        logger.info("business.deleted", business_id=business_id)
        return True

    # ── Budgets ─────────────────────────────────────────────────────────────

    async def get_budget(self, budget_id: str) -> BudgetRead | None:
        """Get a single budget by ID."""
        async with self._session_factory() as session:
            model = await session.get(BudgetModel, uuid.UUID(budget_id))
            if model is None:
                return None
            return _model_to_budget(model)

    async def add_budget(self, business_id: str, data: BudgetCreate) -> BudgetRead:
        """Append a budget at the end of the business's budget list."""
        bid = uuid.UUID(business_id)
        async with self._session_factory() as session:
            stmt = select(func.coalesce(func.max(BudgetModel.position), -1)).where(
                BudgetModel.business_id == bid
            )
            last_position = (await session.execute(stmt)).scalar_one()

            model = BudgetModel(
                business_id=bid,
                position=last_position + 1,
                state=data.state.value,
                total=data.total,
                invoiced=data.invoiced,
                expires_at=data.expires_at,
            )
            _stamp_transition(model, data.state)
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_budget(model)

    async def update_budget(self, budget_id: str, **fields: Any) -> BudgetRead:
        """Apply field changes to a budget, stamping state transition times.

        Raises:
            ValueError: If the budget does not exist.
        """
        async with self._session_factory() as session:
            model = await session.get(BudgetModel, uuid.UUID(budget_id))
            if model is None:
                raise ValueError(f"Budget not found: id={budget_id}")

            for key, value in fields.items():
                if key == "state":
                    state = BudgetState(value)
                    _stamp_transition(model, state)
                    value = state.value
                setattr(model, key, value)

            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_budget(model)

    async def delete_budget(self, budget_id: str) -> bool:
        """Delete a budget. Returns True if it existed."""
        async with self._session_factory() as session:
            model = await session.get(BudgetModel, uuid.UUID(budget_id))
            if model is None:
                return False
            await session.delete(model)
            await session.commit()
            return True

    async def list_overdue_budgets(self, now: datetime) -> list[BudgetRead]:
        """Published budgets whose expiry time has passed."""
        async with self._session_factory() as session:
            stmt = (
                select(BudgetModel)
                .where(
                    BudgetModel.state == BudgetState.PUBLISHED.value,
                    BudgetModel.expires_at.is_not(None),
                    BudgetModel.expires_at < now,
                )
                .order_by(BudgetModel.business_id, BudgetModel.position)
            )
            result = await session.execute(stmt)
            return [_model_to_budget(m) for m in result.scalars().all()]

    async def set_closing_date(self, business_id: str, closing_date: date | None) -> None:
        """Store the closing date pulled from the CRM."""
        await self.update_business(business_id, closing_date=closing_date)
