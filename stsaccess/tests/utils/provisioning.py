from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select

from stsaccess.domain.models import (
    AuditEvent,
    ManualTask,
    ProvisioningState,
    Purchase,
    Strategy,
    StrategyAccess,
    User,
)
from stsaccess.persistence.db import SessionLocal
from stsaccess.persistence.repos.access import PURCHASE_COMPLETED


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Seeded:
    user_id: str
    strategy_id: str
    access_id: str | None = None


class RecordingNotifier:
    """Collect notifications instead of sending them."""

    def __init__(self) -> None:
        self.granted: list[tuple[str, str]] = []
        self.failed: list[tuple[str, str, str]] = []
        self.alerts: list[tuple[str, str, dict[str, Any]]] = []

    async def send_access_granted(self, user: User, strategy: Strategy) -> None:
        self.granted.append((user.email, strategy.name))

    async def send_access_failed(self, user: User, strategy: Strategy, reason: str) -> None:
        self.failed.append((user.email, strategy.name, reason))

    async def send_admin_alert(self, alert_type: str, title: str, details: dict[str, Any]) -> None:
        self.alerts.append((alert_type, title, details))

    def alert_types(self) -> list[str]:
        return [alert_type for alert_type, _, _ in self.alerts]


async def create_user(*, username: str | None = "trader123", purchased: bool = True) -> str:
    user_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            User(
                id=user_id,
                email=f"{user_id[:8]}@example.com",
                name="Test Trader",
                tradingview_username=username,
                created_at=_utc_now(),
            )
        )
        if purchased:
            session.add(Purchase(user_id=user_id, status=PURCHASE_COMPLETED, amount=99.0, created_at=_utc_now()))
        await session.commit()
    return user_id


async def create_strategy(*, is_active: bool = True, auto_provision: bool = True, name: str = "Trend Rider") -> str:
    strategy_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            Strategy(
                id=strategy_id,
                name=name,
                slug=f"{name.lower().replace(' ', '-')}-{strategy_id[:6]}",
                pine_id=f"PUB;{strategy_id[:12]}",
                is_active=is_active,
                auto_provision=auto_provision,
                created_at=_utc_now(),
            )
        )
        await session.commit()
    return strategy_id


async def create_access(user_id: str, strategy_id: str, *, status: str = "PENDING", job_id: str | None = None) -> str:
    access_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            StrategyAccess(
                id=access_id,
                user_id=user_id,
                strategy_id=strategy_id,
                status=status,
                job_id=job_id,
                granted_at=_utc_now() if status == "GRANTED" else None,
                created_at=_utc_now(),
            )
        )
        await session.commit()
    return access_id


async def seed_pending_grant(*, username: str | None = "trader123", auto_provision: bool = True) -> Seeded:
    user_id = await create_user(username=username)
    strategy_id = await create_strategy(auto_provision=auto_provision)
    access_id = await create_access(user_id, strategy_id)
    return Seeded(user_id=user_id, strategy_id=strategy_id, access_id=access_id)


async def set_state_row(*, state: str = "HEALTHY", mode: str = "AUTO", consecutive_failures: int = 0) -> None:
    async with SessionLocal() as session:
        row = await session.get(ProvisioningState, 1)
        if row is None:
            row = ProvisioningState(id=1, version=1)
            session.add(row)
        row.state = state
        row.mode = mode
        row.consecutive_failures = consecutive_failures
        if state == "DEGRADED":
            row.degraded_at = _utc_now()
            row.reason = "seeded"
        await session.commit()


async def fetch_access(access_id: str) -> StrategyAccess:
    async with SessionLocal() as session:
        access = await session.get(StrategyAccess, access_id)
        assert access is not None
        return access


async def fetch_tasks(access_id: str | None = None) -> list[ManualTask]:
    async with SessionLocal() as session:
        stmt = select(ManualTask)
        if access_id is not None:
            stmt = stmt.where(ManualTask.strategy_access_id == access_id)
        result = await session.execute(stmt.order_by(ManualTask.created_at))
        return list(result.scalars().all())


async def count_events(event_type: str) -> int:
    async with SessionLocal() as session:
        result = await session.execute(
            select(func.count()).select_from(AuditEvent).where(AuditEvent.event_type == event_type)
        )
        return int(result.scalar() or 0)


class FakeArqPool:
    """Record enqueued jobs the way arq does, returning None for a duplicate job id."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.jobs: list[dict[str, Any]] = []

    async def enqueue_job(self, function: str, *args: Any, _job_id: str | None = None, **kwargs: Any):
        if self.fail:
            raise ConnectionError("redis unavailable")
        if any(job["job_id"] == _job_id for job in self.jobs):
            return None
        job = {"function": function, "args": args, "job_id": _job_id, **kwargs}
        self.jobs.append(job)
        return job

    def job_ids(self) -> list[str]:
        return [job["job_id"] for job in self.jobs]


def use_queue_mode(monkeypatch, pool: FakeArqPool) -> None:
    from stsaccess.core.config import get_settings
    from stsaccess.services.provisioning import bulk_grant, queue

    async def _pool():
        return pool

    monkeypatch.setenv("PROVISIONING_EXECUTION_MODE", "queue")
    get_settings.cache_clear()
    monkeypatch.setattr(queue, "get_redis_pool", _pool)
    monkeypatch.setattr(bulk_grant, "get_redis_pool", _pool)
