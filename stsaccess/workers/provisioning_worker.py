from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings
from arq.cron import cron
from arq.worker import func

from stsaccess.core.config import get_settings
from stsaccess.core.logging import configure_logging
from stsaccess.services.provisioning.bulk_grant import run_bulk_auto_grant
from stsaccess.services.provisioning.health import run_credential_health_check
from stsaccess.services.provisioning.processor import process_provisioning_job
from stsaccess.services.provisioning.queue import ProvisioningJobPayload, set_worker_heartbeat


logger = logging.getLogger(__name__)

BULK_GRANT_TIMEOUT_S = 3600


async def provision_access(ctx, payload: dict) -> dict:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = ProvisioningJobPayload.model_validate(payload)
    settings = get_settings()
    outcome = await process_provisioning_job(
        job_payload,
        job_id=ctx["job_id"],
        attempt=ctx.get("job_try", 1),
        max_attempts=settings.provisioning_max_attempts,
    )
    return outcome.as_dict()


async def bulk_auto_grant(ctx, strategy_id: str) -> dict:
    summary = await run_bulk_auto_grant(strategy_id)
    return {
        "strategy_id": summary.strategy_id,
        "eligible": summary.eligible,
        "enqueued": summary.enqueued,
        "failed": summary.failed,
        "skipped": summary.skipped,
    }


async def credential_health_check(ctx) -> str:
    result = await run_credential_health_check()
    return result.status


async def _heartbeat_loop() -> None:
    # Emit heartbeats on a fixed interval for the admin state endpoint.
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat()
        except Exception:  # noqa: BLE001 - keep heartbeats alive across Redis blips
            logger.exception("worker heartbeat failed")
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())


async def _shutdown(ctx) -> None:
    # Cancel the heartbeat task to avoid dangling coroutines on exit.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


def _health_check_minutes(interval_minutes: int) -> set[int]:
    step = min(60, max(1, int(interval_minutes)))
    return set(range(0, 60, step))


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.provisioning_queue_name
    # Bounded concurrency caps simultaneous provider calls.
    max_jobs = max(1, int(settings.provisioning_concurrency))
    # One spare try lets a job redelivered after a crash on its last attempt still reach a terminal state.
    max_tries = max(1, int(settings.provisioning_max_attempts)) + 1
    # The in-progress key expires with the job timeout, so stalled jobs are redelivered.
    job_timeout = max(1, int(settings.provisioning_job_timeout_s))
    functions = [
        provision_access,
        # Bulk batches pace enqueues one second apart, so they outlive the per-job timeout.
        func(bulk_auto_grant, timeout=BULK_GRANT_TIMEOUT_S, max_tries=3),
    ]
    cron_jobs = [
        cron(
            credential_health_check,
            minute=_health_check_minutes(settings.health_check_interval_minutes),
            run_at_startup=False,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
