"""Stage mapping resolver -- canonical business state <-> CRM pipeline stage.

Mappings are global to the deployment. A missing mapping for a state is a
configuration error: the sync for that business fails immediately and is
never retried.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealsync.business.schemas import BusinessState
from src.dealsync.sync.errors import MappingMissing
from src.dealsync.sync.models import StageMappingModel
from src.dealsync.sync.schemas import StageMappingRead, StageTarget

logger = structlog.get_logger(__name__)


def _model_to_mapping(model: StageMappingModel) -> StageMappingRead:
    return StageMappingRead(
        state=BusinessState(model.state),
        pipeline_id=model.pipeline_id,
        stage_id=model.stage_id,
        updated_at=model.updated_at or model.created_at,
    )


class StageMappingResolver:
    """Resolves states to CRM stages and back.

    Args:
        session_factory: async_sessionmaker returning AsyncSession instances.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def resolve(self, state: BusinessState) -> StageTarget:
        """Return the CRM target for a state.

        Raises:
            MappingMissing: If no mapping is configured for the state.
        """
        async with self._session_factory() as session:
            stmt = select(StageMappingModel).where(StageMappingModel.state == state.value)
            model = (await session.execute(stmt)).scalar_one_or_none()
        if model is None:
            raise MappingMissing(state.value)
        return StageTarget(pipeline_id=model.pipeline_id, stage_id=model.stage_id)

    async def states_for_stage(self, stage_id: str | None) -> list[BusinessState]:
        """Every state mapped to a CRM stage. Several states may share one stage."""
        if not stage_id:
            return []
        async with self._session_factory() as session:
            stmt = (
                select(StageMappingModel.state)
                .where(StageMappingModel.stage_id == stage_id)
                .order_by(StageMappingModel.state)
            )
            rows = (await session.execute(stmt)).scalars().all()
        return [BusinessState(state) for state in rows]

    async def reverse(self, stage_id: str | None) -> BusinessState | None:
        """Map a CRM stage id back to a state.

        Unknown stages, and stages shared by several states, return None.
        """
        states = await self.states_for_stage(stage_id)
        if len(states) != 1:
            if stage_id:
                logger.debug("mapping.stage_not_reversible", stage_id=stage_id, states=len(states))
            return None
        return states[0]

    async def upsert(
        self, state: BusinessState, pipeline_id: str, stage_id: str
    ) -> StageMappingRead:
        """Create or replace the mapping for one state."""
        async with self._session_factory() as session:
            stmt = select(StageMappingModel).where(StageMappingModel.state == state.value)
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                model = StageMappingModel(
                    state=state.value,
                    pipeline_id=pipeline_id,
                    stage_id=stage_id,
                )
                session.add(model)
            else:
                model.pipeline_id = pipeline_id
                model.stage_id = stage_id
            await session.commit()
            await session.refresh(model)

        logger.info(
            "mapping.upserted",
            state=state.value,
            pipeline_id=pipeline_id,
            stage_id=stage_id,
        )
        return _model_to_mapping(model)

    async def list(self) -> list[StageMappingRead]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(StageMappingModel).order_by(StageMappingModel.state)
            )
            return [_model_to_mapping(m) for m in result.scalars().all()]

    async def missing_states(self) -> list[BusinessState]:
        """States with no configured mapping."""
        configured = {m.state for m in await self.list()}
        return [state for state in BusinessState if state not in configured]
