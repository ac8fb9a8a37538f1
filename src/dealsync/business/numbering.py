"""Sequential business numbering per owner, with an assignment audit trail.

Each owner's businesses are numbered 1, 2, 3, ... in creation order. The
next number is read and the business inserted in one transaction; the
(owner_id, number) unique constraint turns a concurrent double assignment
into an IntegrityError, which is retried with a fresh read.

check_consistency() reports duplicates in the audit trail, gaps in the
live sequence, and businesses whose number was never audited.
"""

from __future__ import annotations

import uuid
from collections import Counter
from collections.abc import Callable

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.dealsync.business.models import BusinessModel, BusinessNumberAuditModel
from src.dealsync.business.schemas import (
    BusinessCreate,
    BusinessState,
    NumberAssignment,
    NumberingIssue,
)

logger = structlog.get_logger(__name__)


def _model_to_assignment(model: BusinessNumberAuditModel) -> NumberAssignment:
    return NumberAssignment(
        id=str(model.id),
        owner_id=model.owner_id,
        number=model.number,
        business_id=str(model.business_id) if model.business_id else None,
        status=model.status,
        notes=model.notes,
        assigned_at=model.assigned_at,
    )


class BusinessNumberAllocator:
    """Assigns display numbers and keeps their audit trail.

    Args:
        session_factory: async_sessionmaker returning AsyncSession instances.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    @retry(
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        retry=retry_if_exception_type(IntegrityError),
        reraise=True,
    )
    async def create_numbered(self, data: BusinessCreate) -> tuple[str, int]:
        """Insert a new business with the owner's next number.

        Returns:
            Tuple of (business_id, number).
        """
        async with self._session_factory() as session:
            live_max = (
                await session.execute(
                    select(func.coalesce(func.max(BusinessModel.number), 0)).where(
                        BusinessModel.owner_id == data.owner_id
                    )
                )
            ).scalar_one()
            # Released numbers stay in the audit trail and are never handed out again
            audited_max = (
                await session.execute(
                    select(func.coalesce(func.max(BusinessNumberAuditModel.number), 0)).where(
                        BusinessNumberAuditModel.owner_id == data.owner_id
                    )
                )
            ).scalar_one()
            number = max(live_max, audited_max) + 1

            business = BusinessModel(
                id=uuid.uuid4(),
                owner_id=data.owner_id,
                number=number,
                name=data.name,
                state=BusinessState.OPPORTUNITY_CREATED.value,
                external_id=data.external_id,
                closing_date=data.closing_date,
            )
            session.add(business)
            session.add(
                BusinessNumberAuditModel(
                    owner_id=data.owner_id,
                    number=number,
                    business_id=business.id,
                    status="assigned",
                )
            )
            await session.commit()

        logger.info(
            "numbering.assigned",
            owner_id=data.owner_id,
            number=number,
            business_id=str(business.id),
        )
        return str(business.id), number

    async def release(self, owner_id: str, number: int, business_id: str) -> None:
        """Record that a number's business was deleted. Numbers are never reused."""
        async with self._session_factory() as session:
            session.add(
                BusinessNumberAuditModel(
                    owner_id=owner_id,
                    number=number,
                    business_id=uuid.UUID(business_id),
                    status="released",
                    notes="business deleted",
                )
            )
            await session.commit()

    async def history(self, owner_id: str) -> list[NumberAssignment]:
        """Audit trail for one owner, ordered by number."""
        async with self._session_factory() as session:
            stmt = (
                select(BusinessNumberAuditModel)
                .where(BusinessNumberAuditModel.owner_id == owner_id)
                .order_by(BusinessNumberAuditModel.number, BusinessNumberAuditModel.assigned_at)
            )
            result = await session.execute(stmt)
            return [_model_to_assignment(m) for m in result.scalars().all()]

    async def check_consistency(self, owner_id: str) -> list[NumberingIssue]:
        """Detect duplicate, skipped, and unaudited numbers for one owner."""
        async with self._session_factory() as session:
            live_rows = (
                await session.execute(
                    select(BusinessModel.id, BusinessModel.number)
                    .where(BusinessModel.owner_id == owner_id)
                    .order_by(BusinessModel.number)
                )
            ).all()
            audit_rows = (
                await session.execute(
                    select(BusinessNumberAuditModel).where(
                        BusinessNumberAuditModel.owner_id == owner_id,
                        BusinessNumberAuditModel.status == "assigned",
                    )
                )
            ).scalars().all()

        issues: list[NumberingIssue] = []

        assigned = Counter(row.number for row in audit_rows)
        for number, count in sorted(assigned.items()):
            if count > 1:
                issues.append(
                    NumberingIssue(
                        issue_type="duplicate",
                        description=f"Number {number} assigned {count} times",
                        actual_number=number,
                    )
                )

        # Gaps are measured against every number ever assigned, so a deleted
        # business does not show up as a gap.
        known = set(assigned) | {row.number for row in live_rows}
        if known:
            for expected in range(1, max(known) + 1):
                if expected not in known:
                    issues.append(
                        NumberingIssue(
                            issue_type="gap",
                            description=f"Number {expected} was never assigned",
                            expected_number=expected,
                        )
                    )

        audited_ids = {row.business_id for row in audit_rows}
        for row in live_rows:
            if row.id not in audited_ids:
                issues.append(
                    NumberingIssue(
                        issue_type="unaudited",
                        description=f"Business number {row.number} has no assignment record",
                        actual_number=row.number,
                        business_id=str(row.id),
                    )
                )

        if issues:
            logger.warning(
                "numbering.inconsistent",
                owner_id=owner_id,
                issues=len(issues),
            )
        return issues
