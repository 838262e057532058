"""Periodic credential health check.

Each run validates a known-good upstream username with the active
credentials. Failures increment a persisted streak and, at the configured
threshold, degrade provisioning. Success only clears the streak; leaving
DEGRADED always takes an operator. Credential age is checked on the same
run and alerts once per threshold.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from stsaccess.core.config import get_settings
from stsaccess.core.errors import CredentialEncryptionError
from stsaccess.domain.models import ProvisioningCredential
from stsaccess.persistence.db import SessionLocal
from stsaccess.providers.provisioning.base import ProviderCredentials, ProvisioningProvider
from stsaccess.providers.provisioning.factory import get_provisioning_provider
from stsaccess.services.notifications import Notifier, get_notifier
from stsaccess.services.provisioning import credentials as credential_store
from stsaccess.services.provisioning.state import (
    degrade,
    get_state,
    record_check_failure,
    record_check_success,
)
from stsaccess.services.resilience import acquire_run_lock, release_run_lock


logger = logging.getLogger(__name__)

HEALTH_CHECK_LOCK_KEY = "stsaccess:provisioning:health_check:lock"

CHECK_OK = "ok"
CHECK_FAILED = "failed"
CHECK_DEGRADED = "degraded"
CHECK_NOT_CONFIGURED = "not_configured"
CHECK_SKIPPED_LOCK = "skipped_lock"


@dataclass(frozen=True)
class HealthCheckResult:
    status: str
    state: str | None = None
    mode: str | None = None
    consecutive_failures: int | None = None
    credential_age_hours: int | None = None
    age_level: str | None = None
    error: str | None = None


async def run_credential_health_check(
    *,
    provider: ProvisioningProvider | None = None,
    notifier: Notifier | None = None,
) -> HealthCheckResult:
    # Serialize runs across workers; an overlapping run is skipped, not queued.
    settings = get_settings()
    lock = await acquire_run_lock(HEALTH_CHECK_LOCK_KEY, ttl_s=settings.health_check_lock_ttl_s)
    if lock is None:
        logger.info("credential_health_check_skipped_lock")
        return HealthCheckResult(status=CHECK_SKIPPED_LOCK)
    try:
        async with SessionLocal() as session:
            return await _run_check(session, provider=provider, notifier=notifier or get_notifier())
    finally:
        await release_run_lock(lock)


async def _run_check(
    session: AsyncSession,
    *,
    provider: ProvisioningProvider | None,
    notifier: Notifier,
) -> HealthCheckResult:
    settings = get_settings()
    credential = await credential_store.get_active_credential(session)
    age_hours, age_level = await _check_credential_age(session, credential, notifier)

    creds: ProviderCredentials | None = None
    try:
        creds = await credential_store.get_active_credentials(session)
    except CredentialEncryptionError as exc:
        logger.error("credential_health_check_unreadable_credentials", exc_info=exc)
    provider = provider or get_provisioning_provider(creds)

    if not provider.is_configured():
        snapshot = await get_state(session)
        logger.warning("credential_health_check_not_configured provider=%s", provider.name)
        return HealthCheckResult(
            status=CHECK_NOT_CONFIGURED,
            state=snapshot.state,
            mode=snapshot.mode,
            consecutive_failures=snapshot.consecutive_failures,
            credential_age_hours=age_hours,
            age_level=age_level,
        )

    validation = await provider.validate_username(settings.health_check_reference_username)
    if validation.success:
        snapshot = await record_check_success(session)
        await credential_store.mark_credentials_validated(session, creds.credential_id if creds else None)
        logger.info("credential_health_check_ok state=%s mode=%s", snapshot.state, snapshot.mode)
        return HealthCheckResult(
            status=CHECK_OK,
            state=snapshot.state,
            mode=snapshot.mode,
            consecutive_failures=snapshot.consecutive_failures,
            credential_age_hours=age_hours,
            age_level=age_level,
        )

    error = validation.error or validation.reason
    snapshot = await record_check_failure(session, error=error)
    threshold = max(1, int(settings.health_check_failure_threshold))
    logger.warning(
        "credential_health_check_failed consecutive_failures=%s threshold=%s reason=%s",
        snapshot.consecutive_failures,
        threshold,
        validation.reason,
    )
    if snapshot.consecutive_failures < threshold:
        return HealthCheckResult(
            status=CHECK_FAILED,
            state=snapshot.state,
            mode=snapshot.mode,
            consecutive_failures=snapshot.consecutive_failures,
            credential_age_hours=age_hours,
            age_level=age_level,
            error=error,
        )

    change = await degrade(
        session,
        reason=f"Health check failed {snapshot.consecutive_failures} consecutive times: {error}",
        actor_id="health_check",
    )
    if change.changed:
        await notifier.send_admin_alert(
            "provisioning_degraded",
            "Provisioning degraded to manual mode",
            {
                "incident_id": change.snapshot.incident_id,
                "reason": change.snapshot.reason,
                "mode": change.snapshot.mode,
                "action": "Rotate provisioning credentials, then restore automatic mode.",
            },
        )
    return HealthCheckResult(
        status=CHECK_DEGRADED,
        state=change.snapshot.state,
        mode=change.snapshot.mode,
        consecutive_failures=change.snapshot.consecutive_failures,
        credential_age_hours=age_hours,
        age_level=age_level,
        error=error,
    )


async def _check_credential_age(
    session: AsyncSession,
    credential: ProvisioningCredential | None,
    notifier: Notifier,
) -> tuple[int | None, str | None]:
    # Alert at most once per threshold per credential; state is never touched here.
    if credential is None:
        return None, None
    age_hours = credential_store.get_credential_age_hours(credential)
    level = credential_store.credential_age_level(age_hours)
    level_name = credential_store.AGE_LEVEL_NAMES[level]
    if level <= credential.age_alert_level:
        return age_hours, level_name

    await session.execute(
        update(ProvisioningCredential)
        .where(ProvisioningCredential.id == credential.id)
        .values(age_alert_level=level)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    days = age_hours // 24
    logger.warning("credential_age_threshold credential_id=%s age_hours=%s level=%s", credential.id, age_hours, level_name)
    await notifier.send_admin_alert(
        "credential_age_critical" if level == credential_store.AGE_LEVEL_CRITICAL else "credential_age_warning",
        f"Provisioning credentials are {days} days old",
        {
            "credential_id": credential.id,
            "age_hours": age_hours,
            "created_at": credential.created_at.isoformat(),
            "action": "Rotate the session id and signature before they expire.",
        },
    )
    return age_hours, level_name
