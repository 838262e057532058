from __future__ import annotations

import pytest

from stsaccess.core.errors import NotFoundError, QueueUnavailableError, ValidationError
from stsaccess.providers.provisioning.base import ERROR_TIMEOUT, ProvisioningResult
from stsaccess.providers.provisioning.fake import FakeProvisioningProvider
from stsaccess.persistence.db import SessionLocal
from stsaccess.services.provisioning import processor, queue
from stsaccess.services.provisioning.admin import get_provisioning_state, resume_pending_jobs
from stsaccess.services.provisioning.queue import (
    ProvisioningJobPayload,
    enqueue_provisioning_job,
    initial_job_id,
    retry_job_id,
    retry_provisioning,
)
from stsaccess.tests.utils.provisioning import (
    FakeArqPool,
    RecordingNotifier,
    count_events,
    create_access,
    create_strategy,
    create_user,
    fetch_access,
    fetch_tasks,
    seed_pending_grant,
    set_state_row,
    use_queue_mode,
)


@pytest.fixture
def fake_provider(monkeypatch) -> FakeProvisioningProvider:
    provider = FakeProvisioningProvider()
    monkeypatch.setattr(processor, "get_provisioning_provider", lambda creds: provider)
    return provider


@pytest.fixture
def notifier(monkeypatch) -> RecordingNotifier:
    recording = RecordingNotifier()
    monkeypatch.setattr(processor, "get_notifier", lambda: recording)
    return recording


def test_job_id_formats() -> None:
    assert initial_job_id("acc-1", "grant") == "grant-acc-1"
    assert initial_job_id("acc-1", "grant", first_grant=False).startswith("grant-acc-1-")
    assert initial_job_id("acc-1", "revoke").startswith("revoke-acc-1-")
    assert retry_job_id("acc-1").startswith("retry-acc-1-")


@pytest.mark.asyncio
async def test_enqueue_stamps_row_and_hands_payload_to_arq(monkeypatch) -> None:
    pool = FakeArqPool()
    use_queue_mode(monkeypatch, pool)
    seeded = await seed_pending_grant()

    job_id = await enqueue_provisioning_job(seeded.access_id, seeded.user_id, seeded.strategy_id)

    assert job_id == f"grant-{seeded.access_id}"
    assert pool.jobs[0]["function"] == "provision_access"
    assert pool.jobs[0]["args"][0] == {
        "strategy_access_id": seeded.access_id,
        "user_id": seeded.user_id,
        "strategy_id": seeded.strategy_id,
        "action": "grant",
    }
    assert pool.jobs[0]["_queue_name"] == "provisioning"
    access = await fetch_access(seeded.access_id)
    assert access.job_id == job_id
    assert access.requested_action == "grant"


@pytest.mark.asyncio
async def test_in_flight_job_is_reused(monkeypatch) -> None:
    pool = FakeArqPool()
    use_queue_mode(monkeypatch, pool)
    seeded = await seed_pending_grant()
    first = await enqueue_provisioning_job(seeded.access_id, seeded.user_id, seeded.strategy_id)

    async def _in_flight(job_id):
        return True

    monkeypatch.setattr(queue, "_job_in_flight", _in_flight)
    second = await enqueue_provisioning_job(
        seeded.access_id, seeded.user_id, seeded.strategy_id, job_id="resume-other"
    )

    assert second == first
    assert pool.job_ids() == [first]
    assert (await fetch_access(seeded.access_id)).job_id == first


@pytest.mark.asyncio
async def test_revoke_supersedes_pending_grant(monkeypatch) -> None:
    pool = FakeArqPool()
    use_queue_mode(monkeypatch, pool)
    seeded = await seed_pending_grant()
    await enqueue_provisioning_job(seeded.access_id, seeded.user_id, seeded.strategy_id)

    revoke_id = await enqueue_provisioning_job(
        seeded.access_id, seeded.user_id, seeded.strategy_id, action="revoke"
    )

    access = await fetch_access(seeded.access_id)
    assert access.job_id == revoke_id
    assert access.requested_action == "revoke"
    assert len(pool.jobs) == 2


async def _run_latest_job(pool: FakeArqPool, provider: FakeProvisioningProvider) -> None:
    job = pool.jobs[-1]
    await processor.process_provisioning_job(
        ProvisioningJobPayload(**job["args"][0]),
        job_id=job["job_id"],
        attempt=1,
        provider=provider,
        notifier=RecordingNotifier(),
    )


@pytest.mark.asyncio
async def test_grant_after_revoke_runs_under_fresh_job_id(monkeypatch) -> None:
    pool = FakeArqPool()
    use_queue_mode(monkeypatch, pool)
    provider = FakeProvisioningProvider()
    seeded = await seed_pending_grant()

    first = await enqueue_provisioning_job(seeded.access_id, seeded.user_id, seeded.strategy_id)
    await _run_latest_job(pool, provider)
    assert (await fetch_access(seeded.access_id)).status == "GRANTED"

    await enqueue_provisioning_job(seeded.access_id, seeded.user_id, seeded.strategy_id, action="revoke")
    await _run_latest_job(pool, provider)
    assert (await fetch_access(seeded.access_id)).status == "REVOKED"

    again = await enqueue_provisioning_job(seeded.access_id, seeded.user_id, seeded.strategy_id)
    assert again != first
    assert again.startswith(f"grant-{seeded.access_id}-")
    assert len(pool.jobs) == 3
    await _run_latest_job(pool, provider)

    access = await fetch_access(seeded.access_id)
    assert access.status == "GRANTED"
    assert access.job_id == again
    assert provider.count("grant") == 2
    assert provider.count("revoke") == 1


@pytest.mark.asyncio
async def test_queue_outage_leaves_row_pending(monkeypatch) -> None:
    use_queue_mode(monkeypatch, FakeArqPool(fail=True))
    seeded = await seed_pending_grant()

    with pytest.raises(QueueUnavailableError):
        await enqueue_provisioning_job(seeded.access_id, seeded.user_id, seeded.strategy_id)

    access = await fetch_access(seeded.access_id)
    assert access.status == "PENDING"
    assert access.job_id == f"grant-{seeded.access_id}"


@pytest.mark.asyncio
async def test_enqueue_rejects_unknown_action_and_access() -> None:
    with pytest.raises(ValidationError):
        await enqueue_provisioning_job("acc", "user", "strategy", action="extend")
    with pytest.raises(NotFoundError):
        await enqueue_provisioning_job("missing", "user", "strategy")


@pytest.mark.asyncio
async def test_inline_mode_retries_until_exhausted(monkeypatch, notifier) -> None:
    provider = FakeProvisioningProvider(
        grant_results=[ProvisioningResult(False, "timed out", error_category=ERROR_TIMEOUT)]
    )
    monkeypatch.setattr(processor, "get_provisioning_provider", lambda creds: provider)
    seeded = await seed_pending_grant()

    await enqueue_provisioning_job(seeded.access_id, seeded.user_id, seeded.strategy_id)

    access = await fetch_access(seeded.access_id)
    assert access.status == "FAILED"
    assert access.attempts == 3
    assert provider.count("grant") == 3
    tasks = await fetch_tasks(seeded.access_id)
    assert [(task.type, task.status) for task in tasks] == [("grant", "pending")]
    assert notifier.alert_types() == ["provisioning_failed"]
    assert len(notifier.failed) == 1


@pytest.mark.asyncio
async def test_inline_mode_while_disabled_makes_no_provider_calls(fake_provider, notifier) -> None:
    await set_state_row(mode="DISABLED")
    seeded = await seed_pending_grant()

    await enqueue_provisioning_job(seeded.access_id, seeded.user_id, seeded.strategy_id)

    assert fake_provider.calls == []
    assert (await fetch_access(seeded.access_id)).status == "PENDING"
    assert len(await fetch_tasks(seeded.access_id)) == 1


@pytest.mark.asyncio
async def test_retry_reopens_failed_access(fake_provider, notifier) -> None:
    user_id = await create_user()
    strategy_id = await create_strategy()
    access_id = await create_access(user_id, strategy_id, status="FAILED")

    job_id = await retry_provisioning(access_id, actor_id="admin-1")

    assert job_id.startswith(f"retry-{access_id}-")
    access = await fetch_access(access_id)
    assert access.status == "GRANTED"
    assert access.job_id == job_id
    assert access.failure_reason is None
    assert await count_events("admin.access.retry") == 1


@pytest.mark.asyncio
async def test_retry_rejects_granted_and_missing_access() -> None:
    user_id = await create_user()
    strategy_id = await create_strategy()
    access_id = await create_access(user_id, strategy_id, status="GRANTED")

    with pytest.raises(ValidationError):
        await retry_provisioning(access_id)
    with pytest.raises(NotFoundError):
        await retry_provisioning("missing")


@pytest.mark.asyncio
async def test_resume_runs_every_pending_access(fake_provider, notifier) -> None:
    await seed_pending_grant()
    await seed_pending_grant()
    user_id = await create_user()
    strategy_id = await create_strategy()
    await create_access(user_id, strategy_id, status="GRANTED")

    resumed = await resume_pending_jobs(actor_id="admin-1")

    assert resumed == 2
    assert fake_provider.count("grant") == 2
    async with SessionLocal() as session:
        status = await get_provisioning_state(session)
    assert status.pending_jobs_count == 0


@pytest.mark.asyncio
async def test_state_reports_pending_jobs_count() -> None:
    await seed_pending_grant()
    await seed_pending_grant()
    async with SessionLocal() as session:
        status = await get_provisioning_state(session)
    assert status.pending_jobs_count == 2
    assert status.state == "HEALTHY"
    assert status.effective_mode == "AUTO"
    # Inline mode has no Redis queue or worker.
    assert status.queue_depth == 0
    assert status.worker_heartbeat_at is None
