from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping the schema portable to SQLite test databases.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    # Users are owned by the storefront; provisioning only reads them.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Upstream username; grants cannot proceed without it.
    tradingview_username: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Strategy(Base):
    __tablename__ = "strategies"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String, unique=True)
    # Upstream script identifier sent with every grant/revoke.
    pine_id: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Strategies opted out of automation always route to a manual task.
    auto_provision: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Purchase(Base):
    __tablename__ = "purchases"
    __table_args__ = (
        Index("ix_purchases_user_status", "user_id", "status"),
    )

    # Completed purchases entitle a user to every active strategy.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    status: Mapped[str] = mapped_column(String, default="PENDING", nullable=False)
    amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class StrategyAccess(Base):
    __tablename__ = "strategy_access"
    __table_args__ = (
        UniqueConstraint("user_id", "strategy_id", name="uq_strategy_access_user_strategy"),
        Index("ix_strategy_access_status", "status"),
    )

    # One row per (user, strategy); the row is the serialization point for provisioning jobs.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    strategy_id: Mapped[str] = mapped_column(String, ForeignKey("strategies.id"), index=True)
    # PENDING, GRANTED, FAILED, or REVOKED.
    status: Mapped[str] = mapped_column(String, default="PENDING", nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    granted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Queue job that currently owns this row; stale jobs are ignored.
    job_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Action the owning job performs (grant or revoke) so retries replay it.
    requested_action: Mapped[str] = mapped_column(String, default="grant", nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Last scheduled backoff, kept so delays never shrink within one job.
    last_backoff_s: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Optimistic concurrency guard for status transitions.
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ProvisioningCredential(Base):
    __tablename__ = "provisioning_credentials"
    __table_args__ = (
        # Enforce a single active credential at the database level as well.
        Index(
            "uq_provisioning_credentials_active",
            "is_active",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    api_url: Mapped[str] = mapped_column(String)
    # Secrets are Fernet ciphertext; plaintext never reaches the database.
    session_id_encrypted: Mapped[str] = mapped_column(Text)
    signature_encrypted: Mapped[str] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String)
    # Highest age alert already sent: 0 none, 1 warning, 2 critical.
    age_alert_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class ProvisioningState(Base):
    __tablename__ = "provisioning_state"

    # Singleton row read before every provisioning attempt.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    # HEALTHY or DEGRADED.
    state: Mapped[str] = mapped_column(String, default="HEALTHY", nullable=False)
    # AUTO, MANUAL, or DISABLED.
    mode: Mapped[str] = mapped_column(String, default="AUTO", nullable=False)
    degraded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    incident_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Health-check bookkeeping persisted so worker restarts do not reset the streak.
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_check_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    # Compare-and-swap token for every write.
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ManualTask(Base):
    __tablename__ = "manual_tasks"
    __table_args__ = (
        Index("ix_manual_tasks_status_created", "status", "created_at"),
    )

    # Provisioning work an operator performs by hand.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # grant or revoke.
    type: Mapped[str] = mapped_column(String)
    username: Mapped[str | None] = mapped_column(String, nullable=True)
    pine_id: Mapped[str] = mapped_column(String)
    strategy_access_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("strategy_access.id"), nullable=True, index=True
    )
    # pending, completed, or failed.
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    # Why automation handed off (mode_manual, mode_disabled, retries_exhausted, ...).
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String, nullable=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Capture the actor identity (system, worker, or admin id).
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Persist a stable event taxonomy for investigation queries.
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Keep metadata sanitized for flexible investigation.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
