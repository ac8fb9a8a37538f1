"""Shared fixtures for the reconciliation tests.

Provides:
- A file-backed SQLite database (aiosqlite) with every table created
- FakeCrm: in-memory deals API served through httpx.MockTransport
- components: the fully wired engine around both
- Factories for businesses with budgets, and a complete stage mapping
"""

from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import src.dealsync.business.models  # noqa: F401
import src.dealsync.sync.models  # noqa: F401
from src.dealsync.business.schemas import BudgetCreate, BudgetState, BusinessCreate, BusinessState
from src.dealsync.config import Settings
from src.dealsync.core.database import Base
from src.dealsync.main import build_components

PIPELINE = "default"
STAGES = {state: f"stage_{state.value}" for state in BusinessState}


# ── Fake CRM ─────────────────────────────────────────────────────────────────


class FakeCrm:
    """In-memory CRM deals API.

    Deals are stored as raw property dicts (strings, as the real API returns
    them). Status codes queued in ``fail_next`` are answered before normal
    handling, one per request. Responses queued in ``write_errors`` answer
    PATCH requests only.
    """

    def __init__(self) -> None:
        self.deals: dict[str, dict[str, str]] = {}
        self.requests: list[httpx.Request] = []
        self.fail_next: list[int] = []
        self.write_errors: list[tuple[int, str]] = []

    def add_deal(self, deal_id: str, **properties) -> None:
        self.deals[deal_id] = {k: str(v) for k, v in properties.items()}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_next:
            status_code = self.fail_next.pop(0)
            return httpx.Response(status_code, json={"message": f"forced {status_code}"})

        deal_id = request.url.path.rsplit("/", 1)[-1]
        deal = self.deals.get(deal_id)
        if deal is None:
            return httpx.Response(
                404, json={"status": "error", "message": "resource not found"}
            )
        if request.method == "PATCH" and self.write_errors:
            status_code, body = self.write_errors.pop(0)
            return httpx.Response(status_code, text=body)
        if request.method == "PATCH":
            deal.update(json.loads(request.content)["properties"])
        return httpx.Response(200, json={"id": deal_id, "properties": dict(deal)})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def patches(self) -> list[dict]:
        return [
            json.loads(r.content)["properties"] for r in self.requests if r.method == "PATCH"
        ]


# ── Database ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory over a fresh SQLite file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dealsync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


# ── Components ───────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        CRM_ACCESS_TOKEN="test-token",
        SYNC_MAX_ATTEMPTS=3,
        SYNC_RETRY_BASE_SECONDS=60,
        SYNC_RETRY_MAX_SECONDS=600,
        SYNC_POLL_INTERVAL_SECONDS=0.05,
        CONFLICT_AMOUNT_TOLERANCE=Decimal("100"),
        AUDIT_INTERVAL_SECONDS=0,
    )


@pytest.fixture
def crm() -> FakeCrm:
    return FakeCrm()


@pytest.fixture
def components(session_factory, settings, crm):
    return build_components(session_factory, settings, crm_transport=crm.transport())


@pytest_asyncio.fixture
async def mapped(components):
    """Configure a stage for every business state."""
    for state, stage_id in STAGES.items():
        await components.mapping.upsert(state, PIPELINE, stage_id)
    return STAGES


@pytest.fixture
def make_business(components):
    """Factory: create a business and add budgets given as (state, total) pairs."""

    async def _make(
        name: str = "Office fit-out",
        owner_id: str = "owner-1",
        external_id: str | None = None,
        budgets: tuple[tuple[BudgetState, int | str], ...] = (),
        **overrides,
    ):
        service = components.businesses
        business = await service.create_business(
            BusinessCreate(owner_id=owner_id, name=name, external_id=external_id, **overrides)
        )
        for state, total in budgets:
            await service.add_budget(
                business.id, BudgetCreate(state=state, total=Decimal(str(total)))
            )
        return await service.get_business(business.id)

    return _make
