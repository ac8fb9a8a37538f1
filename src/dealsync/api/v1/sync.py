"""REST API endpoints for manual reconciliation.

Operator actions: immediate sync of one business, mass amount sync,
conflict detection and resolution, consistency audits and repairs, queue
maintenance, and stage mapping configuration. Services are read from
app.state and the endpoints answer 503 until the lifespan has built them.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel

from src.dealsync.business.schemas import BusinessState
from src.dealsync.sync.errors import BusinessNotFound, ConfigurationError
from src.dealsync.sync.schemas import (
    AuditItem,
    AuditReport,
    Conflict,
    ConflictResolution,
    QueueStats,
    Resolution,
    StageMappingRead,
    SyncLogEntry,
    SyncOperation,
    SyncOutcome,
)

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class ResolveConflictRequest(BaseModel):
    resolution: Resolution


class StageMappingRequest(BaseModel):
    pipeline_id: str
    stage_id: str


class CountResponse(BaseModel):
    count: int


# ── Helpers ──────────────────────────────────────────────────────────────────


def _get_reconciliation_service(request: Request) -> Any:
    """Retrieve ReconciliationService from app.state, 503 if not available."""
    service = getattr(request.app.state, "reconciliation_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Reconciliation not initialized",
        )
    return service


def _get_stage_mapping(request: Request) -> Any:
    """Retrieve StageMappingResolver from app.state, 503 if not available."""
    mapping = getattr(request.app.state, "stage_mapping", None)
    if mapping is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stage mapping not initialized",
        )
    return mapping


def _not_found(exc: BusinessNotFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _misconfigured(exc: ConfigurationError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


# ── Business Sync Endpoints ──────────────────────────────────────────────────


@router.post("/businesses/{business_id}/sync", response_model=SyncOutcome)
async def sync_business_now(
    business_id: str,
    request: Request,
    operation: SyncOperation = Query(default=SyncOperation.FULL_SYNC),
) -> SyncOutcome:
    """Sync one business to the CRM immediately."""
    service = _get_reconciliation_service(request)
    try:
        return await service.sync_business_now(business_id, operation)
    except BusinessNotFound as exc:
        raise _not_found(exc)


@router.post("/amounts", response_model=CountResponse, status_code=202)
async def sync_all_amounts(request: Request) -> CountResponse:
    """Queue an amount sync for every linked business."""
    service = _get_reconciliation_service(request)
    return CountResponse(count=await service.sync_all_amounts())


@router.get("/businesses/{business_id}/history", response_model=list[SyncLogEntry])
async def sync_history(
    business_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
) -> list[SyncLogEntry]:
    """Sync log for one business, newest first."""
    service = _get_reconciliation_service(request)
    try:
        return await service.sync_history(business_id, limit=limit)
    except BusinessNotFound as exc:
        raise _not_found(exc)


# ── Conflict Endpoints ───────────────────────────────────────────────────────


@router.get("/businesses/{business_id}/conflict", response_model=Conflict | None)
async def detect_conflict(
    business_id: str,
    request: Request,
    refresh: bool = Query(default=True),
) -> Conflict | None:
    """Compare one business with the CRM. Returns null when they agree."""
    service = _get_reconciliation_service(request)
    try:
        return await service.detect_conflict(business_id, refresh=refresh)
    except BusinessNotFound as exc:
        raise _not_found(exc)
    except ConfigurationError as exc:
        raise _misconfigured(exc)


@router.get("/conflicts", response_model=list[Conflict])
async def scan_conflicts(request: Request) -> list[Conflict]:
    """Check every linked business against the CRM."""
    service = _get_reconciliation_service(request)
    return await service.scan_conflicts()


@router.post("/businesses/{business_id}/resolve", response_model=ConflictResolution)
async def resolve_conflict(
    business_id: str,
    body: ResolveConflictRequest,
    request: Request,
) -> ConflictResolution:
    """Resolve a conflict by adopting the local or the external values."""
    service = _get_reconciliation_service(request)
    try:
        return await service.resolve_conflict(business_id, body.resolution)
    except BusinessNotFound as exc:
        raise _not_found(exc)
    except ConfigurationError as exc:
        raise _misconfigured(exc)


# ── Audit Endpoints ──────────────────────────────────────────────────────────


@router.post("/audit", response_model=AuditReport)
async def run_audit(
    request: Request,
    auto_fix: bool = Query(default=True),
) -> AuditReport:
    """Run a full consistency audit."""
    service = _get_reconciliation_service(request)
    return await service.run_audit(auto_fix=auto_fix)


@router.get("/audit/latest", response_model=AuditReport)
async def latest_audit(request: Request) -> AuditReport:
    """The most recent stored audit report."""
    service = _get_reconciliation_service(request)
    report = await service.latest_report()
    if report is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No audit has run yet",
        )
    return report


@router.post("/businesses/{business_id}/repair", response_model=AuditItem)
async def repair_business(business_id: str, request: Request) -> AuditItem:
    """Repair one business's stored state, whatever the confidence."""
    service = _get_reconciliation_service(request)
    try:
        return await service.repair_business(business_id)
    except BusinessNotFound as exc:
        raise _not_found(exc)


# ── Queue Endpoints ──────────────────────────────────────────────────────────


@router.get("/queue/stats", response_model=QueueStats)
async def queue_stats(request: Request) -> QueueStats:
    service = _get_reconciliation_service(request)
    return await service.queue_stats()


@router.post("/queue/retry-failed", response_model=CountResponse)
async def retry_failed(
    request: Request,
    business_id: str | None = Query(default=None),
) -> CountResponse:
    """Re-arm failed queue items (all, or one business's)."""
    service = _get_reconciliation_service(request)
    return CountResponse(count=await service.retry_failed(business_id))


# ── Stage Mapping Endpoints ──────────────────────────────────────────────────


@router.get("/mappings", response_model=list[StageMappingRead])
async def list_mappings(request: Request) -> list[StageMappingRead]:
    mapping = _get_stage_mapping(request)
    return await mapping.list()


@router.put("/mappings/{state}", response_model=StageMappingRead)
async def upsert_mapping(
    state: BusinessState,
    body: StageMappingRequest,
    request: Request,
) -> StageMappingRead:
    """Configure the CRM pipeline stage for a business state."""
    mapping = _get_stage_mapping(request)
    return await mapping.upsert(state, body.pipeline_id, body.stage_id)
