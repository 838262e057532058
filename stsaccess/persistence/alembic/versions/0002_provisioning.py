"""add provisioning tables

Revision ID: 0002_provisioning
Revises: 0001_init
Create Date: 2026-10-03
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_provisioning"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One row per (user, strategy); job_id and version serialize concurrent jobs.
    op.create_table(
        "strategy_access",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("strategy_id", sa.String(), sa.ForeignKey("strategies.id"), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("requested_action", sa.String(), nullable=False, server_default="grant"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_backoff_s", sa.Integer(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "strategy_id", name="uq_strategy_access_user_strategy"),
    )
    op.create_index("ix_strategy_access_user_id", "strategy_access", ["user_id"], unique=False)
    op.create_index("ix_strategy_access_strategy_id", "strategy_access", ["strategy_id"], unique=False)
    op.create_index("ix_strategy_access_status", "strategy_access", ["status"], unique=False)
    op.create_index("ix_strategy_access_job_id", "strategy_access", ["job_id"], unique=False)

    op.create_table(
        "provisioning_credentials",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("api_url", sa.String(), nullable=False),
        sa.Column("session_id_encrypted", sa.Text(), nullable=False),
        sa.Column("signature_encrypted", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("validated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=False),
        sa.Column("age_alert_level", sa.Integer(), nullable=False, server_default="0"),
    )
    # At most one active credential row.
    op.create_index(
        "uq_provisioning_credentials_active",
        "provisioning_credentials",
        ["is_active"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "provisioning_state",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("state", sa.String(), nullable=False, server_default="HEALTHY"),
        sa.Column("mode", sa.String(), nullable=False, server_default="AUTO"),
        sa.Column("degraded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("incident_id", sa.String(), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_check_error", sa.Text(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    # Seed the singleton so the first read never races on insert.
    op.execute(
        "INSERT INTO provisioning_state (id, state, mode, consecutive_failures, version) "
        "VALUES (1, 'HEALTHY', 'AUTO', 0, 1)"
    )

    op.create_table(
        "manual_tasks",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("username", sa.String(), nullable=True),
        sa.Column("pine_id", sa.String(), nullable=False),
        sa.Column("strategy_access_id", sa.String(), sa.ForeignKey("strategy_access.id"), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.String(), nullable=True),
    )
    op.create_index("ix_manual_tasks_strategy_access_id", "manual_tasks", ["strategy_access_id"], unique=False)
    op.create_index("ix_manual_tasks_status_created", "manual_tasks", ["status", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_manual_tasks_status_created", table_name="manual_tasks")
    op.drop_index("ix_manual_tasks_strategy_access_id", table_name="manual_tasks")
    op.drop_table("manual_tasks")
    op.drop_table("provisioning_state")
    op.drop_index("uq_provisioning_credentials_active", table_name="provisioning_credentials")
    op.drop_table("provisioning_credentials")
    op.drop_index("ix_strategy_access_job_id", table_name="strategy_access")
    op.drop_index("ix_strategy_access_status", table_name="strategy_access")
    op.drop_index("ix_strategy_access_strategy_id", table_name="strategy_access")
    op.drop_index("ix_strategy_access_user_id", table_name="strategy_access")
    op.drop_table("strategy_access")
