from __future__ import annotations

import pytest

from stsaccess.core.errors import InvalidTaskStateError, NotFoundError, ValidationError
from stsaccess.persistence.db import SessionLocal
from stsaccess.persistence.repos import access as access_repo
from stsaccess.providers.provisioning.fake import FakeProvisioningProvider
from stsaccess.services.provisioning.manual_tasks import (
    complete_manual_task,
    fail_manual_task,
    list_manual_tasks,
)
from stsaccess.services.provisioning.processor import process_provisioning_job
from stsaccess.services.provisioning.queue import ProvisioningJobPayload
from stsaccess.tests.utils.provisioning import (
    RecordingNotifier,
    count_events,
    fetch_access,
    fetch_tasks,
    seed_pending_grant,
    set_state_row,
)


async def _open_task(*, action: str = "grant"):
    await set_state_row(mode="MANUAL")
    seeded = await seed_pending_grant()
    outcome = await process_provisioning_job(
        ProvisioningJobPayload(
            strategy_access_id=seeded.access_id,
            user_id=seeded.user_id,
            strategy_id=seeded.strategy_id,
            action=action,
        ),
        job_id=f"{action}-{seeded.access_id}",
        attempt=1,
        provider=FakeProvisioningProvider(),
        notifier=RecordingNotifier(),
    )
    return seeded, outcome.manual_task_id


@pytest.mark.asyncio
async def test_completing_grant_task_grants_access_and_notifies_user() -> None:
    seeded, task_id = await _open_task()
    notifier = RecordingNotifier()
    before = await fetch_access(seeded.access_id)

    async with SessionLocal() as session:
        task = await complete_manual_task(session, task_id, "added by hand", completed_by="admin-1", notifier=notifier)

    assert task.status == "completed"
    assert task.completed_by == "admin-1"
    assert task.notes == "added by hand"
    access = await fetch_access(seeded.access_id)
    assert access.status == "GRANTED"
    assert access.granted_at is not None
    assert access.job_id is None
    assert access.version > before.version
    assert len(notifier.granted) == 1
    assert await count_events("provisioning.manual_task_completed") == 1


@pytest.mark.asyncio
async def test_completing_revoke_task_revokes_access() -> None:
    seeded, task_id = await _open_task(action="revoke")
    notifier = RecordingNotifier()
    async with SessionLocal() as session:
        await complete_manual_task(session, task_id, completed_by="admin-1", notifier=notifier)
    access = await fetch_access(seeded.access_id)
    assert access.status == "REVOKED"
    assert access.revoked_at is not None
    assert notifier.granted == []


@pytest.mark.asyncio
async def test_failing_task_fails_access_with_reason() -> None:
    seeded, task_id = await _open_task()
    notifier = RecordingNotifier()
    async with SessionLocal() as session:
        task = await fail_manual_task(session, task_id, reason="user blocked upstream", failed_by="admin-1", notifier=notifier)
    assert task.status == "failed"
    access = await fetch_access(seeded.access_id)
    assert access.status == "FAILED"
    assert access.failure_reason == "user blocked upstream"
    assert notifier.failed[0][2] == "user blocked upstream"


@pytest.mark.asyncio
async def test_failing_task_requires_reason() -> None:
    _, task_id = await _open_task()
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await fail_manual_task(session, task_id, reason="  ", failed_by="admin-1")


@pytest.mark.asyncio
async def test_closed_or_missing_task_cannot_be_completed() -> None:
    _, task_id = await _open_task()
    async with SessionLocal() as session:
        await complete_manual_task(session, task_id, completed_by="admin-1", notifier=RecordingNotifier())
    async with SessionLocal() as session:
        with pytest.raises(InvalidTaskStateError):
            await complete_manual_task(session, task_id, completed_by="admin-2", notifier=RecordingNotifier())
        with pytest.raises(NotFoundError):
            await complete_manual_task(session, "missing", completed_by="admin-1")


@pytest.mark.asyncio
async def test_stale_job_result_is_dropped_after_manual_completion() -> None:
    seeded, task_id = await _open_task()
    async with SessionLocal() as session:
        await complete_manual_task(session, task_id, completed_by="admin-1", notifier=RecordingNotifier())

    await set_state_row(mode="AUTO")
    provider = FakeProvisioningProvider()
    outcome = await process_provisioning_job(
        ProvisioningJobPayload(
            strategy_access_id=seeded.access_id,
            user_id=seeded.user_id,
            strategy_id=seeded.strategy_id,
        ),
        job_id=f"grant-{seeded.access_id}",
        attempt=2,
        provider=provider,
        notifier=RecordingNotifier(),
    )
    assert outcome.status == "noop"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_list_filters_by_status() -> None:
    seeded_a, task_a = await _open_task()
    await _open_task()
    async with SessionLocal() as session:
        await complete_manual_task(session, task_a, completed_by="admin-1", notifier=RecordingNotifier())

    async with SessionLocal() as session:
        pending = await list_manual_tasks(session)
        completed = await list_manual_tasks(session, status="completed")
        everything = await list_manual_tasks(session, status=None)
        with pytest.raises(ValidationError):
            await list_manual_tasks(session, status="archived")

    assert len(pending) == 1
    assert [task.id for task in completed] == [task_a]
    assert len(everything) == 2
    assert len(await fetch_tasks(seeded_a.access_id)) == 1


@pytest.mark.asyncio
async def test_operator_override_advances_past_concurrent_worker_write() -> None:
    seeded = await seed_pending_grant()
    async with SessionLocal() as admin_session:
        stale = await access_repo.get_access(admin_session, seeded.access_id)
        loaded_version = stale.version
        async with SessionLocal() as worker_session:
            racing = await access_repo.get_access(worker_session, seeded.access_id)
            assert await access_repo.transition_access(worker_session, racing, {"attempts": 1})
            await worker_session.commit()

        await access_repo.override_access(admin_session, stale, {"status": "GRANTED", "job_id": None})
        await admin_session.commit()

    access = await fetch_access(seeded.access_id)
    assert access.status == "GRANTED"
    assert access.attempts == 1
    assert access.version == loaded_version + 2
