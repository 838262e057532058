from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging

from stsaccess.core.config import get_settings
from stsaccess.core.errors import NotFoundError, QueueUnavailableError
from stsaccess.domain.models import Strategy, StrategyAccess
from stsaccess.domain.state import ACCESS_PENDING, ACTION_GRANT
from stsaccess.persistence.db import SessionLocal
from stsaccess.persistence.repos import access as access_repo
from stsaccess.services.audit import record_event
from stsaccess.services.provisioning.queue import (
    BULK_GRANT_FUNCTION,
    enqueue_provisioning_job,
    get_redis_pool,
    is_inline_mode,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BulkGrantSummary:
    strategy_id: str
    eligible: int
    enqueued: int
    failed: int
    skipped: int
    job_ids: list[str] = field(default_factory=list)


def bulk_job_id(strategy_id: str, user_id: str) -> str:
    # Deterministic per pair so an interrupted batch can be re-run safely.
    return f"new-strategy-{strategy_id}-{user_id}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def enqueue_bulk_auto_grant(strategy_id: str) -> str:
    # One batch job per strategy; arq collapses duplicate activations of the same strategy.
    job_id = f"new-strategy-grant-{strategy_id}"
    if is_inline_mode():
        await run_bulk_auto_grant(strategy_id)
        return job_id
    settings = get_settings()
    try:
        redis = await get_redis_pool()
        job = await redis.enqueue_job(
            BULK_GRANT_FUNCTION,
            strategy_id,
            _job_id=job_id,
            _queue_name=settings.provisioning_queue_name,
        )
    except Exception as exc:  # noqa: BLE001 - callers decide whether to retry activation
        raise QueueUnavailableError("Provisioning queue unavailable") from exc
    if job is None:
        logger.info("bulk_grant_job_deduplicated strategy_id=%s job_id=%s", strategy_id, job_id)
    return job_id


async def run_bulk_auto_grant(
    strategy_id: str,
    *,
    enqueue_delay_s: float | None = None,
) -> BulkGrantSummary:
    """Grant a newly activated strategy to every purchaser still missing it.

    Missing access rows are created together in one transaction, each
    already owned by its deterministic bulk job id. Jobs are then enqueued
    one at a time with a short delay. Re-running the batch only touches
    users without access or with a bulk row that never left PENDING.
    """
    settings = get_settings()
    delay_s = settings.bulk_grant_enqueue_delay_s if enqueue_delay_s is None else enqueue_delay_s

    async with SessionLocal() as session:
        strategy = await session.get(Strategy, strategy_id)
        if strategy is None:
            raise NotFoundError(f"Strategy {strategy_id} not found")
        if not strategy.is_active:
            logger.info("bulk_grant_skipped_inactive strategy_id=%s", strategy_id)
            return BulkGrantSummary(strategy_id=strategy_id, eligible=0, enqueued=0, failed=0, skipped=0)

        targets: list[tuple[str, str]] = []
        skipped = 0
        for user, access in await access_repo.list_purchasers_with_access(session, strategy_id):
            job_id = bulk_job_id(strategy_id, user.id)
            if access is None:
                access = StrategyAccess(
                    user_id=user.id,
                    strategy_id=strategy_id,
                    status=ACCESS_PENDING,
                    job_id=job_id,
                    requested_action=ACTION_GRANT,
                    created_at=_utc_now(),
                )
                session.add(access)
            elif access.status != ACCESS_PENDING or access.job_id != job_id:
                # Already granted, failed, revoked, or owned by another workflow.
                skipped += 1
                continue
            targets.append((user.id, access))
        await session.flush()
        pending = [(user_id, access.id) for user_id, access in targets]
        await session.commit()

    logger.info(
        "bulk_grant_started strategy_id=%s eligible=%s skipped=%s",
        strategy_id,
        len(pending),
        skipped,
    )
    job_ids: list[str] = []
    failed = 0
    for index, (user_id, access_id) in enumerate(pending):
        if index and delay_s > 0:
            await asyncio.sleep(delay_s)
        try:
            job_ids.append(
                await enqueue_provisioning_job(
                    access_id,
                    user_id,
                    strategy_id,
                    action=ACTION_GRANT,
                    job_id=bulk_job_id(strategy_id, user_id),
                )
            )
        except Exception as exc:  # noqa: BLE001 - one bad enqueue must not abort the batch
            failed += 1
            logger.warning(
                "bulk_grant_enqueue_failed strategy_id=%s user_id=%s",
                strategy_id,
                user_id,
                exc_info=exc,
            )

    summary = BulkGrantSummary(
        strategy_id=strategy_id,
        eligible=len(pending),
        enqueued=len(job_ids),
        failed=failed,
        skipped=skipped,
        job_ids=job_ids,
    )
    await record_event(
        actor_type="system",
        actor_id="bulk_auto_grant",
        event_type="strategy.auto_grant_batch",
        outcome="success" if failed == 0 else "partial",
        resource_type="strategy",
        resource_id=strategy_id,
        metadata={"eligible": summary.eligible, "enqueued": summary.enqueued, "failed": failed, "skipped": skipped},
    )
    return summary
