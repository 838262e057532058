from __future__ import annotations

import pytest
from sqlalchemy import select

from stsaccess.core.errors import NotFoundError, QueueUnavailableError
from stsaccess.domain.models import StrategyAccess
from stsaccess.persistence.db import SessionLocal
from stsaccess.providers.provisioning.fake import FakeProvisioningProvider
from stsaccess.services.provisioning import processor
from stsaccess.services.provisioning.bulk_grant import (
    bulk_job_id,
    enqueue_bulk_auto_grant,
    run_bulk_auto_grant,
)
from stsaccess.tests.utils.provisioning import (
    FakeArqPool,
    RecordingNotifier,
    create_access,
    create_strategy,
    create_user,
    use_queue_mode,
)


async def _strategy_with_purchasers() -> tuple[str, list[str], str]:
    """Four purchasers, one already granted, plus two ineligible users."""
    strategy_id = await create_strategy(name="Mean Reverter")
    buyers = [await create_user(username=f"trader{i}") for i in range(4)]
    granted_user = buyers[0]
    await create_access(granted_user, strategy_id, status="GRANTED")
    await create_user(username="browser", purchased=False)
    await create_user(username=None)
    return strategy_id, buyers, granted_user


async def _access_rows(strategy_id: str) -> dict[str, StrategyAccess]:
    async with SessionLocal() as session:
        result = await session.execute(select(StrategyAccess).where(StrategyAccess.strategy_id == strategy_id))
        return {row.user_id: row for row in result.scalars().all()}


@pytest.mark.asyncio
async def test_bulk_grant_enqueues_only_users_missing_access(monkeypatch) -> None:
    pool = FakeArqPool()
    use_queue_mode(monkeypatch, pool)
    strategy_id, buyers, granted_user = await _strategy_with_purchasers()

    summary = await run_bulk_auto_grant(strategy_id)

    expected = [bulk_job_id(strategy_id, user_id) for user_id in buyers[1:]]
    assert summary.eligible == 3
    assert summary.enqueued == 3
    assert summary.skipped == 1
    assert summary.failed == 0
    assert sorted(pool.job_ids()) == sorted(expected)
    assert all(job["function"] == "provision_access" for job in pool.jobs)

    rows = await _access_rows(strategy_id)
    assert set(rows) == set(buyers)
    assert rows[granted_user].status == "GRANTED"
    for user_id in buyers[1:]:
        assert rows[user_id].status == "PENDING"
        assert rows[user_id].job_id == bulk_job_id(strategy_id, user_id)


@pytest.mark.asyncio
async def test_rerunning_batch_does_not_duplicate_rows_or_jobs(monkeypatch) -> None:
    pool = FakeArqPool()
    use_queue_mode(monkeypatch, pool)
    strategy_id, buyers, _ = await _strategy_with_purchasers()

    await run_bulk_auto_grant(strategy_id)
    await run_bulk_auto_grant(strategy_id)

    assert len(pool.jobs) == 3
    assert len(await _access_rows(strategy_id)) == len(buyers)


@pytest.mark.asyncio
async def test_inline_batch_grants_each_pending_user(monkeypatch) -> None:
    provider = FakeProvisioningProvider()
    notifier = RecordingNotifier()
    monkeypatch.setattr(processor, "get_provisioning_provider", lambda creds: provider)
    monkeypatch.setattr(processor, "get_notifier", lambda: notifier)
    strategy_id, buyers, granted_user = await _strategy_with_purchasers()

    summary = await run_bulk_auto_grant(strategy_id)

    assert summary.enqueued == 3
    assert provider.count("grant") == 3
    assert ("grant", "trader0") not in provider.calls
    rows = await _access_rows(strategy_id)
    assert {row.status for row in rows.values()} == {"GRANTED"}
    assert len(notifier.granted) == 3


@pytest.mark.asyncio
async def test_inactive_strategy_is_skipped(monkeypatch) -> None:
    pool = FakeArqPool()
    use_queue_mode(monkeypatch, pool)
    strategy_id = await create_strategy(is_active=False)
    await create_user()

    summary = await run_bulk_auto_grant(strategy_id)

    assert summary.eligible == 0
    assert pool.jobs == []
    assert await _access_rows(strategy_id) == {}


@pytest.mark.asyncio
async def test_unknown_strategy_raises() -> None:
    with pytest.raises(NotFoundError):
        await run_bulk_auto_grant("missing-strategy")


@pytest.mark.asyncio
async def test_failed_enqueue_is_counted_and_batch_continues(monkeypatch) -> None:
    pool = FakeArqPool(fail=True)
    use_queue_mode(monkeypatch, pool)
    strategy_id, _, _ = await _strategy_with_purchasers()

    summary = await run_bulk_auto_grant(strategy_id)

    assert summary.eligible == 3
    assert summary.failed == 3
    assert summary.enqueued == 0
    # Rows stay PENDING under their bulk job id so a re-run picks them up.
    rows = await _access_rows(strategy_id)
    assert sorted(row.status for row in rows.values()) == ["GRANTED", "PENDING", "PENDING", "PENDING"]


@pytest.mark.asyncio
async def test_enqueue_batch_job_is_deduplicated_per_strategy(monkeypatch) -> None:
    pool = FakeArqPool()
    use_queue_mode(monkeypatch, pool)

    first = await enqueue_bulk_auto_grant("strategy-1")
    second = await enqueue_bulk_auto_grant("strategy-1")

    assert first == second == "new-strategy-grant-strategy-1"
    assert [(job["function"], job["args"]) for job in pool.jobs] == [("bulk_auto_grant", ("strategy-1",))]


@pytest.mark.asyncio
async def test_enqueue_batch_job_surfaces_queue_outage(monkeypatch) -> None:
    use_queue_mode(monkeypatch, FakeArqPool(fail=True))
    with pytest.raises(QueueUnavailableError):
        await enqueue_bulk_auto_grant("strategy-1")
