"""create journey tables

Revision ID: 3c1f0a9d2b71
Revises:
Create Date: 2026-10-19 09:12:44.201733
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "3c1f0a9d2b71"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    op.create_table(
        "automations",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("edition_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_type", sa.String(), nullable=False),
        sa.Column("trigger_config", JSONType, nullable=False),
        sa.Column("status", sa.String(), server_default="draft", nullable=False),
        sa.Column("reentry_policy", sa.String(), server_default="one_shot", nullable=False),
        sa.Column("current_version", sa.Integer(), nullable=True),
        sa.Column("enrollment_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("completed_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("status IN ('draft', 'active', 'paused')", name="ck_automations_status"),
        sa.CheckConstraint("reentry_policy IN ('one_shot', 'reenterable')", name="ck_automations_reentry_policy"),
        sa.CheckConstraint(
            "enrollment_count >= 0 AND completed_count >= 0", name="ck_automations_counters_nonnegative"
        ),
    )
    op.create_index(op.f("ix_automations_event_id"), "automations", ["event_id"], unique=False)
    op.create_index(op.f("ix_automations_edition_id"), "automations", ["edition_id"], unique=False)
    op.create_index(op.f("ix_automations_trigger_type"), "automations", ["trigger_type"], unique=False)
    op.create_index(op.f("ix_automations_status"), "automations", ["status"], unique=False)
    op.create_index("ix_automations_dispatch", "automations", ["event_id", "status", "trigger_type"], unique=False)

    op.create_table(
        "automation_versions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "automation_id",
            sa.String(),
            sa.ForeignKey("automations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("start_step_id", sa.String(length=50), nullable=False),
        sa.Column("steps", JSONType, nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("automation_id", "version", name="uq_automation_versions_version"),
    )
    op.create_index(
        op.f("ix_automation_versions_automation_id"), "automation_versions", ["automation_id"], unique=False
    )

    op.create_table(
        "enrollments",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("automation_id", sa.String(), sa.ForeignKey("automations.id"), nullable=False),
        sa.Column("automation_version", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("contact_id", sa.String(), nullable=False),
        sa.Column("cycle", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("trigger_event_key", sa.String(), nullable=True),
        sa.Column("current_step_id", sa.String(length=50), nullable=True),
        sa.Column("status", sa.String(), server_default="active", nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exit_reason", sa.Text(), nullable=True),
        sa.Column("wait_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claim_token", sa.String(), nullable=True),
        sa.Column("claim_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lock_version", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("steps_executed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "automation_id", "contact_id", "cycle", name="uq_enrollments_automation_contact_cycle"
        ),
        sa.UniqueConstraint("automation_id", "trigger_event_key", name="uq_enrollments_trigger_event"),
        sa.CheckConstraint(
            "status IN ('active', 'completed', 'exited', 'failed')",
            name="ck_enrollments_status",
        ),
        sa.CheckConstraint(
            "NOT (completed_at IS NOT NULL AND exited_at IS NOT NULL)",
            name="ck_enrollments_single_terminal_timestamp",
        ),
    )
    op.create_index(op.f("ix_enrollments_automation_id"), "enrollments", ["automation_id"], unique=False)
    op.create_index(op.f("ix_enrollments_event_id"), "enrollments", ["event_id"], unique=False)
    op.create_index(op.f("ix_enrollments_contact_id"), "enrollments", ["contact_id"], unique=False)
    op.create_index(op.f("ix_enrollments_status"), "enrollments", ["status"], unique=False)
    op.create_index("ix_enrollments_ready", "enrollments", ["status", "wait_until"], unique=False)
    op.create_index("ix_enrollments_automation_status", "enrollments", ["automation_id", "status"], unique=False)

    op.create_table(
        "execution_log",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("automation_id", sa.String(), sa.ForeignKey("automations.id"), nullable=False),
        sa.Column("enrollment_id", sa.String(), sa.ForeignKey("enrollments.id"), nullable=False),
        sa.Column("contact_id", sa.String(), nullable=False),
        sa.Column("step_id", sa.String(length=50), nullable=False),
        sa.Column("step_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("is_recovery", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("input", JSONType, nullable=True),
        sa.Column("output", JSONType, nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'executing', 'completed', 'failed', 'skipped')",
            name="ck_execution_log_status",
        ),
    )
    op.create_index(op.f("ix_execution_log_automation_id"), "execution_log", ["automation_id"], unique=False)
    op.create_index(op.f("ix_execution_log_enrollment_id"), "execution_log", ["enrollment_id"], unique=False)
    op.create_index(op.f("ix_execution_log_contact_id"), "execution_log", ["contact_id"], unique=False)
    op.create_index(op.f("ix_execution_log_status"), "execution_log", ["status"], unique=False)
    op.create_index(op.f("ix_execution_log_idempotency_key"), "execution_log", ["idempotency_key"], unique=False)
    op.create_index("ix_execution_log_enrollment_id_id", "execution_log", ["enrollment_id", "id"], unique=False)

    op.create_table(
        "trigger_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("contact_id", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("edition_id", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("payload", JSONType, nullable=False),
        sa.Column("processed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("event_id", "event_type", "idempotency_key", name="uq_trigger_events_idempotency"),
    )
    op.create_index(op.f("ix_trigger_events_event_type"), "trigger_events", ["event_type"], unique=False)
    op.create_index(op.f("ix_trigger_events_event_id"), "trigger_events", ["event_id"], unique=False)
    op.create_index("ix_trigger_events_due", "trigger_events", ["processed", "next_attempt_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_trigger_events_due", table_name="trigger_events")
    op.drop_index(op.f("ix_trigger_events_event_id"), table_name="trigger_events")
    op.drop_index(op.f("ix_trigger_events_event_type"), table_name="trigger_events")
    op.drop_table("trigger_events")

    op.drop_index("ix_execution_log_enrollment_id_id", table_name="execution_log")
    op.drop_index(op.f("ix_execution_log_idempotency_key"), table_name="execution_log")
    op.drop_index(op.f("ix_execution_log_status"), table_name="execution_log")
    op.drop_index(op.f("ix_execution_log_contact_id"), table_name="execution_log")
    op.drop_index(op.f("ix_execution_log_enrollment_id"), table_name="execution_log")
    op.drop_index(op.f("ix_execution_log_automation_id"), table_name="execution_log")
    op.drop_table("execution_log")

    op.drop_index("ix_enrollments_automation_status", table_name="enrollments")
    op.drop_index("ix_enrollments_ready", table_name="enrollments")
    op.drop_index(op.f("ix_enrollments_status"), table_name="enrollments")
    op.drop_index(op.f("ix_enrollments_contact_id"), table_name="enrollments")
    op.drop_index(op.f("ix_enrollments_event_id"), table_name="enrollments")
    op.drop_index(op.f("ix_enrollments_automation_id"), table_name="enrollments")
    op.drop_table("enrollments")

    op.drop_index(op.f("ix_automation_versions_automation_id"), table_name="automation_versions")
    op.drop_table("automation_versions")

    op.drop_index("ix_automations_dispatch", table_name="automations")
    op.drop_index(op.f("ix_automations_status"), table_name="automations")
    op.drop_index(op.f("ix_automations_trigger_type"), table_name="automations")
    op.drop_index(op.f("ix_automations_edition_id"), table_name="automations")
    op.drop_index(op.f("ix_automations_event_id"), table_name="automations")
    op.drop_table("automations")
