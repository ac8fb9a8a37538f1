"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks.
Readiness verifies the database, the CRM credential and the stage
mapping table.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.dealsync.config import get_settings
from src.dealsync.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database connectivity and CRM configuration. Returns check results dict."""
    checks: dict = {"database": "ok", "crm": "ok", "mappings": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    settings = get_settings()
    if not settings.CRM_ACCESS_TOKEN:
        checks["crm"] = "not_configured"

    mapping = getattr(request.app.state, "stage_mapping", None)
    if mapping is None:
        checks["mappings"] = "not_initialized"
    elif checks["database"] == "ok":
        missing = await mapping.missing_states()
        if missing:
            checks["mappings"] = "incomplete"
            checks["mappings_missing"] = [state.value for state in missing]

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 when the database is reachable, 503 otherwise.

    Missing CRM configuration is reported but does not fail readiness; syncs
    fail individually with a configuration error instead.
    """
    checks = await _check_dependencies(request)
    healthy = checks.get("database") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if healthy else "degraded",
            "checks": checks,
        },
    )
