"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, Sentry,
lifespan events that build the reconciliation components and run the
background loops (sync dispatcher and periodic maintenance audit), and the
v1 API router.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass

import httpx
import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealsync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.dealsync.api.v1.router import router as v1_router
from src.dealsync.business.numbering import BusinessNumberAllocator
from src.dealsync.business.repository import BusinessRepository
from src.dealsync.business.service import BusinessService
from src.dealsync.config import Settings, get_settings
from src.dealsync.core.database import close_db, get_session_factory, init_db
from src.dealsync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.dealsync.sync.auditor import ConsistencyAuditor
from src.dealsync.sync.conflicts import ConflictDetector
from src.dealsync.sync.crm.client import CrmClient
from src.dealsync.sync.dispatcher import SyncDispatcher
from src.dealsync.sync.mapping import StageMappingResolver
from src.dealsync.sync.notifier import ChangeBus, ChangeNotifier
from src.dealsync.sync.repository import SyncRepository
from src.dealsync.sync.service import ReconciliationService
from src.dealsync.sync.worker import ExternalSyncWorker, RetryPolicy

logger = structlog.get_logger(__name__)


@dataclass
class Components:
    """Wired reconciliation components."""

    bus: ChangeBus
    businesses: BusinessService
    mapping: StageMappingResolver
    sync_repository: SyncRepository
    dispatcher: SyncDispatcher
    notifier: ChangeNotifier
    detector: ConflictDetector
    auditor: ConsistencyAuditor
    reconciliation: ReconciliationService


def build_components(
    session_factory: Callable[[], AsyncSession],
    settings: Settings,
    crm_transport: httpx.AsyncBaseTransport | None = None,
) -> Components:
    """Wire every reconciliation component around one session factory."""
    bus = ChangeBus()
    businesses = BusinessService(
        repository=BusinessRepository(session_factory),
        allocator=BusinessNumberAllocator(session_factory),
        bus=bus,
    )
    mapping = StageMappingResolver(session_factory)
    sync_repository = SyncRepository(session_factory)
    crm = CrmClient(
        access_token=settings.CRM_ACCESS_TOKEN,
        base_url=settings.CRM_API_BASE_URL,
        timeout=settings.CRM_TIMEOUT_SECONDS,
        transport=crm_transport,
    )
    retry_policy = RetryPolicy(
        base_seconds=settings.SYNC_RETRY_BASE_SECONDS,
        max_seconds=settings.SYNC_RETRY_MAX_SECONDS,
    )
    worker = ExternalSyncWorker(
        businesses=businesses,
        repository=sync_repository,
        mapping=mapping,
        crm=crm,
        retry_policy=retry_policy,
    )
    dispatcher = SyncDispatcher(
        repository=sync_repository,
        worker=worker,
        batch_size=settings.SYNC_BATCH_SIZE,
        concurrency=settings.SYNC_CONCURRENCY,
        poll_interval=settings.SYNC_POLL_INTERVAL_SECONDS,
        max_attempts=settings.SYNC_MAX_ATTEMPTS,
        retry_policy=retry_policy,
    )
    notifier = ChangeNotifier(bus, dispatcher)
    detector = ConflictDetector(
        businesses=businesses,
        repository=sync_repository,
        mapping=mapping,
        crm=crm,
        dispatcher=dispatcher,
        amount_tolerance=settings.CONFLICT_AMOUNT_TOLERANCE,
    )
    auditor = ConsistencyAuditor(businesses=businesses, repository=sync_repository)
    reconciliation = ReconciliationService(
        businesses=businesses,
        dispatcher=dispatcher,
        detector=detector,
        auditor=auditor,
        repository=sync_repository,
        mapping=mapping,
    )
    return Components(
        bus=bus,
        businesses=businesses,
        mapping=mapping,
        sync_repository=sync_repository,
        dispatcher=dispatcher,
        notifier=notifier,
        detector=detector,
        auditor=auditor,
        reconciliation=reconciliation,
    )


async def _periodic_maintenance(auditor: ConsistencyAuditor, interval: float) -> None:
    """Expire overdue budgets and audit every ``interval`` seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            await auditor.run_maintenance()
        except Exception:
            logger.exception("maintenance.run_failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, wire components, run background loops."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    components = build_components(get_session_factory(), settings)
    app.state.business_service = components.businesses
    app.state.stage_mapping = components.mapping
    app.state.reconciliation_service = components.reconciliation

    if not settings.CRM_ACCESS_TOKEN:
        logger.warning("startup.crm_not_configured")
    missing = await components.mapping.missing_states()
    if missing:
        logger.warning("startup.stage_mappings_missing", states=[s.value for s in missing])

    components.notifier.start()
    tasks = [asyncio.create_task(components.dispatcher.run_forever())]
    if settings.AUDIT_INTERVAL_SECONDS > 0:
        tasks.append(
            asyncio.create_task(
                _periodic_maintenance(components.auditor, settings.AUDIT_INTERVAL_SECONDS)
            )
        )
    logger.info("startup.reconciliation_started", background_tasks=len(tasks))

    yield

    components.notifier.stop()
    components.dispatcher.stop()
    for task in tasks[1:]:
        task.cancel()
    for task in tasks:
        with suppress(asyncio.CancelledError):
            await task
    await close_db()
    logger.info("shutdown.complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Dealsync API",
        version="0.1.0",
        description="Business-state reconciliation between quotes and the CRM",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
