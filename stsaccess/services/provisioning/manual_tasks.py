from __future__ import annotations

from datetime import datetime, timezone
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stsaccess.core.errors import InvalidTaskStateError, NotFoundError, ValidationError
from stsaccess.domain.models import ManualTask, Strategy, StrategyAccess, User
from stsaccess.domain.state import (
    ACCESS_FAILED,
    ACCESS_GRANTED,
    ACCESS_REVOKED,
    ACTION_GRANT,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_PENDING,
)
from stsaccess.persistence.repos import access as access_repo
from stsaccess.services.audit import record_event
from stsaccess.services.notifications import Notifier, get_notifier


logger = logging.getLogger(__name__)

TASK_STATUSES = (TASK_PENDING, TASK_COMPLETED, TASK_FAILED)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_or_refresh_task(
    session: AsyncSession,
    *,
    task_type: str,
    username: str | None,
    pine_id: str,
    strategy_access_id: str | None,
    reason: str,
    notes: str | None = None,
) -> tuple[ManualTask, bool]:
    """Create a pending task, or refresh the pending one already linked to the access.

    Flushes but does not commit; the caller owns the transaction. Returns the
    task and whether it was newly created.
    """
    if strategy_access_id is not None:
        result = await session.execute(
            select(ManualTask).where(
                ManualTask.strategy_access_id == strategy_access_id,
                ManualTask.type == task_type,
                ManualTask.status == TASK_PENDING,
            )
        )
        existing = result.scalars().first()
        if existing is not None:
            existing.username = username
            existing.pine_id = pine_id
            existing.reason = reason
            if notes:
                existing.notes = notes
            await session.flush()
            return existing, False
    task = ManualTask(
        type=task_type,
        username=username,
        pine_id=pine_id,
        strategy_access_id=strategy_access_id,
        status=TASK_PENDING,
        reason=reason,
        notes=notes,
        created_at=_utc_now(),
    )
    session.add(task)
    await session.flush()
    return task, True


async def resolve_pending_tasks(
    session: AsyncSession,
    *,
    strategy_access_id: str,
    task_type: str,
    resolved_by: str,
) -> int:
    # Close tasks made obsolete by an automated success; caller commits.
    result = await session.execute(
        update(ManualTask)
        .where(
            ManualTask.strategy_access_id == strategy_access_id,
            ManualTask.type == task_type,
            ManualTask.status == TASK_PENDING,
        )
        .values(
            status=TASK_COMPLETED,
            completed_at=_utc_now(),
            completed_by=resolved_by,
            notes="Resolved automatically",
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def list_manual_tasks(
    session: AsyncSession,
    *,
    status: str | None = TASK_PENDING,
    limit: int = 100,
) -> list[ManualTask]:
    stmt = select(ManualTask)
    if status is not None:
        if status not in TASK_STATUSES:
            raise ValidationError(f"Unsupported task status: {status}")
        stmt = stmt.where(ManualTask.status == status)
    result = await session.execute(stmt.order_by(ManualTask.created_at, ManualTask.id).limit(limit))
    return list(result.scalars().all())


async def _load_pending_task(session: AsyncSession, task_id: str) -> ManualTask:
    task = await session.get(ManualTask, task_id, populate_existing=True)
    if task is None:
        raise NotFoundError(f"Manual task {task_id} not found")
    if task.status != TASK_PENDING:
        raise InvalidTaskStateError(f"Manual task {task_id} is already {task.status}")
    return task


async def complete_manual_task(
    session: AsyncSession,
    task_id: str,
    notes: str | None = None,
    *,
    completed_by: str,
    notifier: Notifier | None = None,
) -> ManualTask:
    """Record that an operator performed the task by hand.

    The linked access moves straight to GRANTED or REVOKED without calling
    the provider. Bumping its version makes any job still holding the row
    drop its result.
    """
    task = await _load_pending_task(session, task_id)
    now = _utc_now()
    task.status = TASK_COMPLETED
    task.completed_at = now
    task.completed_by = completed_by
    if notes is not None:
        task.notes = notes

    access: StrategyAccess | None = None
    if task.strategy_access_id is not None:
        access = await session.get(StrategyAccess, task.strategy_access_id, populate_existing=True)
    if access is not None:
        if task.type == ACTION_GRANT:
            values = {"status": ACCESS_GRANTED, "granted_at": now, "revoked_at": None}
        else:
            values = {"status": ACCESS_REVOKED, "revoked_at": now, "granted_at": None}
        await access_repo.override_access(session, access, {**values, "failure_reason": None, "job_id": None})
    await session.commit()

    logger.info("manual_task_completed task_id=%s type=%s completed_by=%s", task.id, task.type, completed_by)
    await record_event(
        actor_type="admin",
        actor_id=completed_by,
        event_type="provisioning.manual_task_completed",
        outcome="success",
        resource_type="manual_task",
        resource_id=task.id,
        metadata={
            "type": task.type,
            "username": task.username,
            "pine_id": task.pine_id,
            "strategy_access_id": task.strategy_access_id,
            "notes": notes,
        },
    )
    if access is not None and task.type == ACTION_GRANT:
        user = await session.get(User, access.user_id)
        strategy = await session.get(Strategy, access.strategy_id)
        if user is not None and strategy is not None:
            await (notifier or get_notifier()).send_access_granted(user, strategy)
    return task


async def fail_manual_task(
    session: AsyncSession,
    task_id: str,
    *,
    reason: str,
    failed_by: str,
    notifier: Notifier | None = None,
) -> ManualTask:
    # Operators could not perform the action; the access becomes FAILED with their reason.
    if not (reason or "").strip():
        raise ValidationError("A failure reason is required")
    task = await _load_pending_task(session, task_id)
    task.status = TASK_FAILED
    task.completed_at = _utc_now()
    task.completed_by = failed_by
    task.notes = reason

    access: StrategyAccess | None = None
    if task.strategy_access_id is not None:
        access = await session.get(StrategyAccess, task.strategy_access_id, populate_existing=True)
    if access is not None:
        await access_repo.override_access(
            session,
            access,
            {"status": ACCESS_FAILED, "failure_reason": reason, "job_id": None},
        )
    await session.commit()

    logger.info("manual_task_failed task_id=%s type=%s failed_by=%s", task.id, task.type, failed_by)
    await record_event(
        actor_type="admin",
        actor_id=failed_by,
        event_type="provisioning.manual_task_failed",
        outcome="failure",
        resource_type="manual_task",
        resource_id=task.id,
        metadata={"type": task.type, "strategy_access_id": task.strategy_access_id, "reason": reason},
    )
    if access is not None and task.type == ACTION_GRANT:
        user = await session.get(User, access.user_id)
        strategy = await session.get(Strategy, access.strategy_id)
        if user is not None and strategy is not None:
            await (notifier or get_notifier()).send_access_failed(user, strategy, reason)
    return task
