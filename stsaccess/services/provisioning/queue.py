from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Literal

from arq import Retry, create_pool
from arq.connections import RedisSettings
from arq.jobs import Job, JobStatus
from pydantic import BaseModel

from stsaccess.core.config import get_settings
from stsaccess.core.errors import NotFoundError, QueueUnavailableError, ValidationError
from stsaccess.domain.state import (
    ACCESS_FAILED,
    ACCESS_PENDING,
    ACTION_GRANT,
    ACTION_REVOKE,
)
from stsaccess.persistence.db import SessionLocal
from stsaccess.persistence.repos import access as access_repo
from stsaccess.services.audit import record_event
from stsaccess.services.provisioning.processor import process_provisioning_job


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Keep heartbeat key stable for the admin state endpoint.
WORKER_HEARTBEAT_KEY = "stsaccess:worker:heartbeat"
PROVISION_FUNCTION = "provision_access"
BULK_GRANT_FUNCTION = "bulk_auto_grant"
_IN_FLIGHT_STATUSES = {JobStatus.queued, JobStatus.deferred, JobStatus.in_progress}


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


class ProvisioningJobPayload(BaseModel):
    # Queue-level job; everything else is read from the access row at execution time.
    strategy_access_id: str
    user_id: str
    strategy_id: str
    action: Literal["grant", "revoke"] = "grant"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp_ms() -> int:
    return int(_utc_now().timestamp() * 1000)


def is_inline_mode() -> bool:
    return get_settings().provisioning_execution_mode.lower() == "inline"


def initial_job_id(strategy_access_id: str, action: str, *, first_grant: bool = True) -> str:
    # Only a never-processed row gets the fixed id; arq keeps results under it, so later grants need a fresh one.
    if action == ACTION_GRANT and first_grant:
        return f"grant-{strategy_access_id}"
    return f"{action}-{strategy_access_id}-{_timestamp_ms()}"


def retry_job_id(strategy_access_id: str) -> str:
    # Timestamped ids never collide with a prior attempt that is still settling.
    return f"retry-{strategy_access_id}-{_timestamp_ms()}"


def resume_job_id(strategy_access_id: str) -> str:
    return f"resume-{strategy_access_id}-{_timestamp_ms()}"


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.provisioning_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # Return None to signal Redis unavailability to the state endpoint.
    settings = get_settings()
    if is_inline_mode():
        return 0
    try:
        redis = await get_redis_pool()
        depth = await redis.zcard(_queue_key(settings.provisioning_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - state endpoint handles degraded Redis
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    if is_inline_mode():
        return
    redis = await get_redis_pool()
    heartbeat_time = timestamp or _utc_now()
    await redis.set(WORKER_HEARTBEAT_KEY, heartbeat_time.isoformat())


async def get_worker_heartbeat() -> datetime | None:
    if is_inline_mode():
        return None
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - state endpoint handles degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


async def _job_in_flight(job_id: str) -> bool:
    if is_inline_mode():
        return False
    settings = get_settings()
    try:
        redis = await get_redis_pool()
        status = await Job(job_id, redis, _queue_name=settings.provisioning_queue_name).status()
    except Exception as exc:  # noqa: BLE001 - surfaced as a queue outage
        raise QueueUnavailableError("Provisioning queue unavailable") from exc
    return status in _IN_FLIGHT_STATUSES


async def enqueue_provisioning_job(
    strategy_access_id: str,
    user_id: str,
    strategy_id: str,
    *,
    action: str = ACTION_GRANT,
    job_id: str | None = None,
    defer_s: float | None = None,
    force: bool = False,
) -> str:
    """Hand a grant or revoke for one access row to the worker pool.

    The row is stamped with the new job id first, which supersedes any
    older job for the same pair. A job already queued or running for the
    same action is reused unless ``force`` is set. Returns the job id that
    owns the row.
    """
    if action not in (ACTION_GRANT, ACTION_REVOKE):
        raise ValidationError(f"Unsupported provisioning action: {action}")
    payload = ProvisioningJobPayload(
        strategy_access_id=strategy_access_id,
        user_id=user_id,
        strategy_id=strategy_id,
        action=action,
    )
    settings = get_settings()

    async with SessionLocal() as session:
        access = await access_repo.get_access(session, strategy_access_id)
        if access is None:
            raise NotFoundError(f"Strategy access {strategy_access_id} not found")
        if job_id is None:
            job_id = initial_job_id(
                strategy_access_id,
                action,
                first_grant=access.job_id is None and access.status == ACCESS_PENDING,
            )
        current_job_id = access.job_id
        if current_job_id != job_id:
            if (
                not force
                and current_job_id
                and access.status == ACCESS_PENDING
                and access.requested_action == action
                and await _job_in_flight(current_job_id)
            ):
                logger.info(
                    "provisioning_job_already_in_flight access_id=%s job_id=%s",
                    strategy_access_id,
                    current_job_id,
                )
                return current_job_id
            await access_repo.assign_job(session, access, job_id=job_id, action=action)
            await session.commit()

    if is_inline_mode():
        await _run_inline_job(payload, job_id=job_id, max_attempts=settings.provisioning_max_attempts)
        return job_id

    try:
        redis = await get_redis_pool()
        job = await redis.enqueue_job(
            PROVISION_FUNCTION,
            payload.model_dump(),
            _job_id=job_id,
            _queue_name=settings.provisioning_queue_name,
            _defer_by=defer_s,
        )
    except Exception as exc:  # noqa: BLE001 - row stays PENDING for resume_pending_jobs
        logger.warning("provisioning_enqueue_failed access_id=%s job_id=%s", strategy_access_id, job_id, exc_info=exc)
        raise QueueUnavailableError("Provisioning queue unavailable") from exc
    if job is None:
        # arq returns None for an existing job id; the existing job keeps ownership.
        logger.info("provisioning_job_deduplicated access_id=%s job_id=%s", strategy_access_id, job_id)
    else:
        logger.info("provisioning_job_enqueued access_id=%s job_id=%s action=%s", strategy_access_id, job_id, action)
    return job_id


async def _run_inline_job(payload: ProvisioningJobPayload, *, job_id: str, max_attempts: int) -> None:
    # Inline mode mimics worker retries without requiring Redis; backoff delays are skipped.
    attempt = 1
    while True:
        try:
            await process_provisioning_job(
                payload,
                job_id=job_id,
                attempt=attempt,
                max_attempts=max_attempts,
            )
            return
        except Retry:
            attempt += 1
            continue


async def retry_provisioning(strategy_access_id: str, *, actor_id: str = "admin") -> str:
    """Reset a failed or stuck access to PENDING and run its last action again."""
    async with SessionLocal() as session:
        access = await access_repo.get_access(session, strategy_access_id)
        if access is None:
            raise NotFoundError(f"Strategy access {strategy_access_id} not found")
        if access.status not in (ACCESS_FAILED, ACCESS_PENDING):
            raise ValidationError(f"Only failed or pending access can be retried (status={access.status})")
        previous_status = access.status
        previous_reason = access.failure_reason
        updated = await access_repo.transition_access(
            session,
            access,
            {
                "status": ACCESS_PENDING,
                "failure_reason": None,
                "attempts": 0,
                "last_backoff_s": None,
            },
        )
        if not updated:
            await session.rollback()
            raise ValidationError("Strategy access changed concurrently; retry the request")
        await session.commit()
        user_id = access.user_id
        strategy_id = access.strategy_id
        action = access.requested_action

    await record_event(
        actor_type="admin",
        actor_id=actor_id,
        event_type="admin.access.retry",
        outcome="success",
        resource_type="strategy_access",
        resource_id=strategy_access_id,
        metadata={"previous_status": previous_status, "previous_reason": previous_reason, "action": action},
    )
    return await enqueue_provisioning_job(
        strategy_access_id,
        user_id,
        strategy_id,
        action=action,
        job_id=retry_job_id(strategy_access_id),
        force=True,
    )
