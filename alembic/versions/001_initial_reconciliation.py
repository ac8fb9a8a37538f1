"""Initial reconciliation schema: businesses, budgets, sync queue and audit tables.

Revision ID: 001_initial_reconciliation
Revises:
Create Date: 2026-10-18

Creates eight tables:
- businesses: Deals with canonical state, per-owner number and CRM link
- budgets: Quotes under a business
- business_number_audit: Append-only number assignment trail
- sync_queue: Durable queue of CRM sync intents
- sync_log: Append-only record of sync attempts
- stage_mappings: Canonical state -> CRM pipeline/stage
- external_snapshots: Last observed CRM deal per business
- audit_reports: Stored consistency audit runs

No foreign key constraints (application-level referential integrity via
repository, so sync log rows can outlive a deleted business).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial_reconciliation"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=True)]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True))
    return columns


def upgrade() -> None:
    # ── businesses table ────────────────────────────────────────────────

    op.create_table(
        "businesses",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("owner_id", sa.String(100), nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("state", sa.String(40), nullable=False),
        sa.Column("external_id", sa.String(100), nullable=True),
        sa.Column("closing_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("owner_id", "number", name="uq_business_owner_number"),
    )
    op.create_index("ix_business_external_id", "businesses", ["external_id"])

    # ── budgets table ───────────────────────────────────────────────────

    op.create_table(
        "budgets",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("business_id", sa.Uuid(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(20), nullable=False),
        sa.Column("invoiced", sa.Boolean(), nullable=False),
        sa.Column("total", sa.Numeric(14, 2), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_budget_business_id", "budgets", ["business_id"])

    # ── business_number_audit table ─────────────────────────────────────

    op.create_table(
        "business_number_audit",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("owner_id", sa.String(100), nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("business_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_number_audit_owner", "business_number_audit", ["owner_id", "number"]
    )

    # ── sync_queue table ────────────────────────────────────────────────

    op.create_table(
        "sync_queue",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("business_id", sa.Uuid(), nullable=False),
        sa.Column("operation", sa.String(20), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("trigger_source", sa.String(20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_sync_queue_claim", "sync_queue", ["status", "priority", "created_at"]
    )
    op.create_index("ix_sync_queue_business", "sync_queue", ["business_id", "status"])

    # ── sync_log table ──────────────────────────────────────────────────

    op.create_table(
        "sync_log",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("business_id", sa.Uuid(), nullable=False),
        sa.Column("queue_item_id", sa.Uuid(), nullable=True),
        sa.Column("operation", sa.String(20), nullable=False),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("old_state", sa.String(40), nullable=True),
        sa.Column("new_state", sa.String(40), nullable=True),
        sa.Column("old_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("new_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("trigger_source", sa.String(20), nullable=True),
        sa.Column("external_id", sa.String(100), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_sync_log_business", "sync_log", ["business_id", "created_at"])

    # ── stage_mappings table ────────────────────────────────────────────

    op.create_table(
        "stage_mappings",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("state", sa.String(40), nullable=False, unique=True),
        sa.Column("pipeline_id", sa.String(100), nullable=False),
        sa.Column("stage_id", sa.String(100), nullable=False),
        *_timestamps(),
    )

    # ── external_snapshots table ────────────────────────────────────────

    op.create_table(
        "external_snapshots",
        sa.Column("business_id", sa.Uuid(), primary_key=True),
        sa.Column("external_id", sa.String(100), nullable=False),
        sa.Column("pipeline_id", sa.String(100), nullable=True),
        sa.Column("stage_id", sa.String(100), nullable=True),
        sa.Column("mapped_state", sa.String(40), nullable=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("close_date", sa.Date(), nullable=True),
        sa.Column("remote_modified_at", sa.String(50), nullable=True),
        sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=True),
    )

    # ── audit_reports table ─────────────────────────────────────────────

    op.create_table(
        "audit_reports",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("total_scanned", sa.Integer(), nullable=False),
        sa.Column("inconsistent", sa.Integer(), nullable=False),
        sa.Column("auto_fixed", sa.Integer(), nullable=False),
        sa.Column("report", sa.JSON(), nullable=True),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_audit_reports_generated", "audit_reports", ["generated_at"])


def downgrade() -> None:
    op.drop_table("audit_reports")
    op.drop_table("external_snapshots")
    op.drop_table("stage_mappings")
    op.drop_table("sync_log")
    op.drop_table("sync_queue")
    op.drop_table("business_number_audit")
    op.drop_table("budgets")
    op.drop_table("businesses")
