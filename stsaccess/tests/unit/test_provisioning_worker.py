from __future__ import annotations

import pytest

from stsaccess.providers.provisioning.fake import FakeProvisioningProvider
from stsaccess.services.provisioning import processor
from stsaccess.tests.utils.provisioning import RecordingNotifier, fetch_access, seed_pending_grant
from stsaccess.workers import provisioning_worker
from stsaccess.workers.provisioning_worker import WorkerSettings, _health_check_minutes, provision_access


def test_worker_runs_five_jobs_at_once_with_spare_try() -> None:
    assert WorkerSettings.max_jobs == 5
    assert WorkerSettings.max_tries == 4
    assert WorkerSettings.queue_name == "provisioning"


def test_health_check_runs_every_fifteen_minutes() -> None:
    assert _health_check_minutes(15) == {0, 15, 30, 45}
    assert _health_check_minutes(0) == set(range(60))


@pytest.mark.asyncio
async def test_worker_function_processes_payload(monkeypatch) -> None:
    provider = FakeProvisioningProvider()
    monkeypatch.setattr(processor, "get_provisioning_provider", lambda creds: provider)
    monkeypatch.setattr(processor, "get_notifier", lambda: RecordingNotifier())
    seeded = await seed_pending_grant()

    result = await provision_access(
        {"job_id": "grant-worker", "job_try": 1},
        {
            "strategy_access_id": seeded.access_id,
            "user_id": seeded.user_id,
            "strategy_id": seeded.strategy_id,
            "action": "grant",
        },
    )

    assert result["status"] == "granted"
    assert (await fetch_access(seeded.access_id)).status == "GRANTED"


@pytest.mark.asyncio
async def test_health_cron_reports_status(monkeypatch) -> None:
    async def _check():
        from stsaccess.services.provisioning.health import HealthCheckResult

        return HealthCheckResult(status="ok")

    monkeypatch.setattr(provisioning_worker, "run_credential_health_check", _check)
    assert await provisioning_worker.credential_health_check({}) == "ok"
