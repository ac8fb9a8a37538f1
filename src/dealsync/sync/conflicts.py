"""Conflict detector -- compares derived local values with the CRM's view.

A conflict exists when the CRM stage is not one the derived canonical
state maps to, or when the CRM amount differs from the derived value by
more than the configured tolerance. Several states may share one stage; a
deal on such a stage agrees with any of them. A CRM stage with no mapping
at all never produces a state conflict.

Resolution:
- adopt_local: push local values now (manual-priority full sync)
- adopt_external: pull the deal (snapshot and closing date), re-derive the
  local state, and report whatever the budgets still contradict. The
  canonical state always comes from the budgets, so an external stage the
  budgets do not support stays a conflict until the budgets change.
"""

from __future__ import annotations

from decimal import Decimal

import structlog

from src.dealsync.business.derivation import explain_state
from src.dealsync.business.schemas import BusinessRead
from src.dealsync.business.service import BusinessService
from src.dealsync.sync.crm.client import CrmClient
from src.dealsync.sync.crm.schemas import CrmStatus, DealSnapshot
from src.dealsync.sync.dispatcher import SyncDispatcher
from src.dealsync.sync.errors import CredentialMissing
from src.dealsync.sync.mapping import StageMappingResolver
from src.dealsync.sync.repository import SyncRepository
from src.dealsync.sync.schemas import (
    Conflict,
    ConflictResolution,
    ConflictType,
    ExternalSnapshot,
    Resolution,
    SyncDirection,
    SyncLogEntry,
    SyncOperation,
    SyncOutcome,
    SyncOutcomeStatus,
    TriggerSource,
)

logger = structlog.get_logger(__name__)


class ConflictDetector:
    """Detects and resolves local/CRM divergence per business.

    Args:
        businesses: BusinessService (reads and the state-mutation entry point).
        repository: SyncRepository for snapshots and the inbound log.
        mapping: StageMappingResolver for reverse stage lookups.
        crm: CrmClient used to refresh the external view.
        dispatcher: SyncDispatcher used by adopt_local.
        amount_tolerance: Largest amount difference not reported as a conflict.
    """

    def __init__(
        self,
        businesses: BusinessService,
        repository: SyncRepository,
        mapping: StageMappingResolver,
        crm: CrmClient,
        dispatcher: SyncDispatcher,
        amount_tolerance: Decimal = Decimal("100"),
    ) -> None:
        self._businesses = businesses
        self._repo = repository
        self._mapping = mapping
        self._crm = crm
        self._dispatcher = dispatcher
        self._tolerance = amount_tolerance

    # ── Detection ───────────────────────────────────────────────────────────

    async def detect(self, business_id: str, refresh: bool = True) -> Conflict | None:
        """Compare one business with the CRM.

        Args:
            business_id: Business to check.
            refresh: Read the deal from the CRM first; when False (or when
                the read fails) the stored snapshot is used.

        Returns:
            Conflict if the two stores diverge, None otherwise (including
            unlinked businesses and businesses with no known CRM view).
        """
        business = await self._businesses.get_business(business_id)
        if not business.external_id:
            return None

        snapshot = None
        if refresh:
            snapshot = await self._refresh(business)
        if snapshot is None:
            snapshot = await self._repo.get_snapshot(business_id)
        if snapshot is None:
            return None

        return await self._compare(business, snapshot)

    async def scan(self) -> list[Conflict]:
        """Check every linked business against the CRM (drift detection)."""
        conflicts: list[Conflict] = []
        for business in await self._businesses.list_businesses(linked_only=True):
            try:
                conflict = await self.detect(business.id, refresh=True)
            except Exception:
                logger.exception("conflict.scan_business_failed", business_id=business.id)
                continue
            if conflict is not None:
                conflicts.append(conflict)
        logger.info("conflict.scan_complete", conflicts=len(conflicts))
        return conflicts

    async def _compare(
        self, business: BusinessRead, snapshot: ExternalSnapshot
    ) -> Conflict | None:
        derivation = explain_state(business.budgets)
        local_value = derivation.aggregate.value
        stage_states = await self._mapping.states_for_stage(snapshot.stage_id)
        external_state = stage_states[0] if len(stage_states) == 1 else None
        external_amount = snapshot.amount if snapshot.amount is not None else Decimal("0")

        # A deal on the stage the local state maps to agrees, even if other
        # states share that stage
        state_diverges = bool(stage_states) and derivation.state not in stage_states
        amount_diverges = abs(local_value - external_amount) > self._tolerance

        if state_diverges and amount_diverges:
            conflict_type = ConflictType.BOTH
        elif state_diverges:
            conflict_type = ConflictType.STATE
        elif amount_diverges:
            conflict_type = ConflictType.AMOUNT
        else:
            return None

        logger.warning(
            "conflict.detected",
            business_id=business.id,
            conflict_type=conflict_type.value,
            local_state=derivation.state.value,
            external_stage=snapshot.stage_id,
            local_amount=str(local_value),
            external_amount=str(snapshot.amount),
        )
        return Conflict(
            business_id=business.id,
            external_id=business.external_id,
            conflict_type=conflict_type,
            local_state=derivation.state,
            external_state=external_state,
            external_stage_id=snapshot.stage_id,
            local_amount=local_value,
            external_amount=snapshot.amount,
        )

    async def _refresh(self, business: BusinessRead) -> ExternalSnapshot | None:
        if not self._crm.is_configured:
            raise CredentialMissing()
        result = await self._crm.get_deal(business.external_id)
        if not result.ok:
            logger.warning(
                "conflict.refresh_failed",
                business_id=business.id,
                status=result.status.value,
            )
            return None
        return await self._store(business, result.deal)

    async def _store(self, business: BusinessRead, deal: DealSnapshot) -> ExternalSnapshot:
        snapshot = ExternalSnapshot(
            business_id=business.id,
            external_id=business.external_id,
            pipeline_id=deal.pipeline,
            stage_id=deal.dealstage,
            mapped_state=await self._mapping.reverse(deal.dealstage),
            amount=deal.amount,
            close_date=deal.closedate,
            remote_modified_at=deal.hs_lastmodifieddate,
        )
        await self._repo.save_snapshot(snapshot)
        return snapshot

    # ── Resolution ──────────────────────────────────────────────────────────

    async def resolve(self, business_id: str, resolution: Resolution) -> ConflictResolution:
        if resolution == Resolution.ADOPT_LOCAL:
            return await self.adopt_local(business_id)
        return await self.adopt_external(business_id)

    async def adopt_local(self, business_id: str) -> ConflictResolution:
        """Push the local derived values to the CRM immediately."""
        await self._businesses.get_business(business_id)
        outcome = await self._dispatcher.run_now(
            business_id, SyncOperation.FULL_SYNC, TriggerSource.MANUAL
        )
        remaining = None
        if outcome.status != SyncOutcomeStatus.REMOTE_DELETED:
            remaining = await self.detect(business_id, refresh=False)
        logger.info(
            "conflict.adopted_local",
            business_id=business_id,
            outcome=outcome.status.value,
            converged=remaining is None,
        )
        return ConflictResolution(
            business_id=business_id,
            resolution=Resolution.ADOPT_LOCAL,
            outcome=outcome,
            remaining=remaining,
        )

    async def adopt_external(self, business_id: str) -> ConflictResolution:
        """Pull the CRM deal into the local store and re-derive the state."""
        business = await self._businesses.get_business(business_id)
        if not business.external_id:
            return ConflictResolution(
                business_id=business_id,
                resolution=Resolution.ADOPT_EXTERNAL,
                outcome=SyncOutcome(
                    status=SyncOutcomeStatus.NO_OP,
                    reason="business not linked to CRM",
                    business_id=business_id,
                ),
            )
        if not self._crm.is_configured:
            raise CredentialMissing()

        result = await self._crm.get_deal(business.external_id)
        if not result.ok:
            status = (
                SyncOutcomeStatus.RETRYING
                if result.status == CrmStatus.TRANSIENT_ERROR
                else SyncOutcomeStatus.FAILED
            )
            return ConflictResolution(
                business_id=business_id,
                resolution=Resolution.ADOPT_EXTERNAL,
                outcome=SyncOutcome(
                    status=status,
                    reason=f"could not read external deal ({result.status.value})",
                    business_id=business_id,
                    external_id=business.external_id,
                    error=result.error,
                ),
                remaining=await self.detect(business_id, refresh=False),
            )

        deal = result.deal
        snapshot = await self._store(business, deal)
        if deal.closedate is not None and deal.closedate != business.closing_date:
            await self._businesses.set_closing_date(business_id, deal.closedate)

        refreshed = await self._businesses.refresh_state(business_id, TriggerSource.INBOUND)
        await self._repo.append_log(
            SyncLogEntry(
                business_id=business_id,
                operation=SyncOperation.FULL_SYNC,
                direction=SyncDirection.INBOUND,
                outcome=SyncOutcomeStatus.SUCCESS,
                success=True,
                old_state=business.state.value,
                new_state=snapshot.mapped_state.value if snapshot.mapped_state else None,
                old_amount=explain_state(business.budgets).aggregate.value,
                new_amount=deal.amount,
                reason="adopted external deal",
                trigger_source=TriggerSource.MANUAL,
                external_id=business.external_id,
            )
        )

        remaining = await self._compare(refreshed, snapshot)
        logger.info(
            "conflict.adopted_external",
            business_id=business_id,
            converged=remaining is None,
        )
        return ConflictResolution(
            business_id=business_id,
            resolution=Resolution.ADOPT_EXTERNAL,
            outcome=SyncOutcome(
                status=SyncOutcomeStatus.SUCCESS,
                reason="adopted external deal",
                business_id=business_id,
                external_id=business.external_id,
            ),
            remaining=remaining,
        )
