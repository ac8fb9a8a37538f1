"""Pydantic schemas for CRM synchronization, conflicts and audits.

Defines:
- Enums: SyncOperation, SyncDirection, QueueStatus, TriggerSource,
  SyncOutcomeStatus, ConflictType, Resolution
- Queue and log records: QueueItem, SyncLogEntry, QueueStats
- Outcomes: SyncOutcome
- Mapping: StageTarget, StageMappingRead
- Change bus payload: ChangeEvent
- Divergence: ExternalSnapshot, Conflict, ConflictResolution
- Auditing: AuditItem, AuditReport
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from src.dealsync.business.schemas import BusinessState, Confidence


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class SyncOperation(str, Enum):
    """What a queued sync pushes to the CRM."""

    STATE_SYNC = "state_sync"
    AMOUNT_SYNC = "amount_sync"
    FULL_SYNC = "full_sync"

    def merge(self, other: SyncOperation) -> SyncOperation:
        """Combine two pending operations for the same business."""
        if self == other:
            return self
        return SyncOperation.FULL_SYNC


class SyncDirection(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"
    INTERNAL = "internal"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"


class TriggerSource(str, Enum):
    """Who asked for the sync. Determines queue priority."""

    MANUAL = "manual"
    AUDIT = "audit"
    AUTOMATIC = "automatic"
    MAINTENANCE = "maintenance"
    INBOUND = "inbound"


# Lower number = more urgent
PRIORITY_BY_TRIGGER: dict[TriggerSource, int] = {
    TriggerSource.MANUAL: 1,
    TriggerSource.AUDIT: 3,
    TriggerSource.INBOUND: 3,
    TriggerSource.AUTOMATIC: 5,
    TriggerSource.MAINTENANCE: 5,
}


class SyncOutcomeStatus(str, Enum):
    SUCCESS = "success"
    NO_OP = "no_op"
    FAILED = "failed"
    RETRYING = "retrying"
    REMOTE_DELETED = "remote_deleted"


class ConflictType(str, Enum):
    STATE = "state"
    AMOUNT = "amount"
    BOTH = "both"


class Resolution(str, Enum):
    ADOPT_LOCAL = "adopt_local"
    ADOPT_EXTERNAL = "adopt_external"


# ── Queue & Log ─────────────────────────────────────────────────────────────


class QueueItem(BaseModel):
    """A durable sync intent."""

    id: str
    business_id: str
    operation: SyncOperation
    payload: dict = Field(default_factory=dict)
    priority: int = 5
    trigger_source: TriggerSource = TriggerSource.AUTOMATIC
    attempts: int = 0
    max_attempts: int = 3
    status: QueueStatus = QueueStatus.PENDING
    scheduled_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    processed_at: datetime | None = None


class SyncLogEntry(BaseModel):
    """One append-only sync log record."""

    id: str | None = None
    business_id: str
    queue_item_id: str | None = None
    operation: SyncOperation
    direction: SyncDirection = SyncDirection.OUTBOUND
    outcome: SyncOutcomeStatus
    success: bool
    old_state: str | None = None
    new_state: str | None = None
    old_amount: Decimal | None = None
    new_amount: Decimal | None = None
    reason: str | None = None
    error_message: str | None = None
    trigger_source: TriggerSource | None = None
    external_id: str | None = None
    created_at: datetime | None = None


class QueueStats(BaseModel):
    """Queue counters for operators."""

    pending: int = 0
    processing: int = 0
    retrying: int = 0
    failed: int = 0
    succeeded_today: int = 0
    failed_today: int = 0
    success_rate: float = 0.0


class SyncOutcome(BaseModel):
    """Result of executing one sync intent."""

    status: SyncOutcomeStatus
    reason: str
    business_id: str
    operation: SyncOperation | None = None
    external_id: str | None = None
    error: str | None = None
    retry_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.status in (
            SyncOutcomeStatus.SUCCESS,
            SyncOutcomeStatus.NO_OP,
            SyncOutcomeStatus.REMOTE_DELETED,
        )


# ── Mapping ─────────────────────────────────────────────────────────────────


class StageTarget(BaseModel):
    """Where a canonical state lives in the CRM."""

    pipeline_id: str
    stage_id: str


class StageMappingRead(BaseModel):
    state: BusinessState
    pipeline_id: str
    stage_id: str
    updated_at: datetime | None = None


# ── Change Bus ──────────────────────────────────────────────────────────────


class ChangeEvent(BaseModel):
    """A committed local change to a business's state or value."""

    business_id: str
    external_id: str | None = None
    old_state: BusinessState | None = None
    new_state: BusinessState
    old_value: Decimal = Decimal("0")
    new_value: Decimal = Decimal("0")
    trigger_source: TriggerSource = TriggerSource.AUTOMATIC
    requested_operation: SyncOperation | None = None
    occurred_at: datetime = Field(default_factory=_utcnow)

    @property
    def state_changed(self) -> bool:
        return self.old_state != self.new_state

    @property
    def value_changed(self) -> bool:
        return self.old_value != self.new_value


# ── Divergence ──────────────────────────────────────────────────────────────


class ExternalSnapshot(BaseModel):
    """Last observed CRM values for a linked business."""

    business_id: str
    external_id: str
    pipeline_id: str | None = None
    stage_id: str | None = None
    mapped_state: BusinessState | None = None
    amount: Decimal | None = None
    close_date: date | None = None
    remote_modified_at: str | None = None
    fetched_at: datetime | None = None


class Conflict(BaseModel):
    """Divergence between the derived local values and the CRM. Never stored."""

    business_id: str
    external_id: str
    conflict_type: ConflictType
    local_state: BusinessState
    external_state: BusinessState | None = None
    external_stage_id: str | None = None
    local_amount: Decimal
    external_amount: Decimal | None = None
    detected_at: datetime = Field(default_factory=_utcnow)


class ConflictResolution(BaseModel):
    """What happened when an operator resolved a conflict."""

    business_id: str
    resolution: Resolution
    outcome: SyncOutcome | None = None
    remaining: Conflict | None = None

    @property
    def converged(self) -> bool:
        return self.remaining is None


# ── Auditing ────────────────────────────────────────────────────────────────


class AuditItem(BaseModel):
    """One business whose stored state disagrees with its derived state."""

    business_id: str
    number: int | None = None
    current_state: BusinessState | None = None
    expected_state: BusinessState | None = None
    reason: str
    confidence: Confidence | None = None
    auto_fixed: bool = False
    error: str | None = None


class AuditReport(BaseModel):
    """Result of one consistency audit run."""

    id: str | None = None
    total_scanned: int = 0
    inconsistent: int = 0
    auto_fixed: int = 0
    high_confidence: int = 0
    errors: int = 0
    items: list[AuditItem] = Field(default_factory=list)
    failed_queue_items: list[QueueItem] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=_utcnow)
