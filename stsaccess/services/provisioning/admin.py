from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from stsaccess.core.config import get_settings
from stsaccess.core.errors import ValidationError
from stsaccess.domain.models import ProvisioningCredential
from stsaccess.domain.state import MODE_AUTO, STATE_DEGRADED
from stsaccess.persistence.db import SessionLocal
from stsaccess.persistence.repos import access as access_repo
from stsaccess.providers.provisioning.base import ProviderCredentials, ProvisioningProvider
from stsaccess.providers.provisioning.factory import get_provisioning_provider
from stsaccess.services.audit import record_event
from stsaccess.services.provisioning import credentials as credential_store
from stsaccess.services.provisioning.queue import (
    enqueue_provisioning_job,
    get_queue_depth,
    get_worker_heartbeat,
    resume_job_id,
)
from stsaccess.services.provisioning.state import get_state, restore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisioningStatus:
    state: str
    mode: str
    effective_mode: str
    degraded_at: datetime | None
    reason: str | None
    incident_id: str | None
    pending_jobs_count: int
    consecutive_failures: int
    last_checked_at: datetime | None
    queue_depth: int | None
    worker_heartbeat_at: datetime | None


@dataclass(frozen=True)
class RotationResult:
    credential: ProvisioningCredential
    restored: bool
    resumed_jobs: int


async def get_provisioning_state(session: AsyncSession) -> ProvisioningStatus:
    snapshot = await get_state(session)
    pending = await access_repo.count_pending(session)
    return ProvisioningStatus(
        state=snapshot.state,
        mode=snapshot.mode,
        effective_mode=snapshot.effective_mode,
        degraded_at=snapshot.degraded_at,
        reason=snapshot.reason,
        incident_id=snapshot.incident_id,
        pending_jobs_count=pending,
        consecutive_failures=snapshot.consecutive_failures,
        last_checked_at=snapshot.last_checked_at,
        queue_depth=await get_queue_depth(),
        worker_heartbeat_at=await get_worker_heartbeat(),
    )


async def resume_pending_jobs(*, actor_id: str) -> int:
    """Re-enqueue every PENDING access, typically after restore or rotation.

    Rows whose current job is still queued or running keep that job.
    """
    async with SessionLocal() as session:
        pending = [
            (access.id, access.user_id, access.strategy_id, access.requested_action)
            for access in await access_repo.list_pending(session)
        ]

    resumed = 0
    for access_id, user_id, strategy_id, action in pending:
        try:
            await enqueue_provisioning_job(
                access_id,
                user_id,
                strategy_id,
                action=action,
                job_id=resume_job_id(access_id),
            )
            resumed += 1
        except Exception as exc:  # noqa: BLE001 - keep resuming the remaining rows
            logger.warning("resume_enqueue_failed access_id=%s", access_id, exc_info=exc)

    logger.info("provisioning_jobs_resumed count=%s total=%s actor_id=%s", resumed, len(pending), actor_id)
    await record_event(
        actor_type="admin",
        actor_id=actor_id,
        event_type="provisioning.jobs_resumed",
        outcome="success" if resumed == len(pending) else "partial",
        resource_type="provisioning_state",
        metadata={"resumed": resumed, "pending": len(pending)},
    )
    return resumed


async def restore_provisioning(session: AsyncSession, *, actor_id: str, resume_jobs: bool = True) -> int:
    # Operator restore followed by a sweep of work that piled up while degraded.
    await restore(session, actor_id=actor_id)
    if not resume_jobs:
        return 0
    return await resume_pending_jobs(actor_id=actor_id)


async def rotate_credentials(
    session: AsyncSession,
    *,
    api_url: str,
    session_id: str,
    signature: str,
    created_by: str,
    restore_state: bool = True,
    resume_jobs: bool = True,
    provider: ProvisioningProvider | None = None,
) -> RotationResult:
    """Validate new credentials upstream, then make them active.

    Nothing is stored when validation fails. With ``restore_state`` a
    DEGRADED system is restored, since an operator has just supplied and
    verified fresh credentials.
    """
    api_url, session_id, signature = credential_store.require_credential_fields(api_url, session_id, signature)
    settings = get_settings()
    candidate = ProviderCredentials(api_url=api_url, session_id=session_id, signature=signature)
    provider = provider or get_provisioning_provider(candidate)
    validation = await provider.validate_username(settings.health_check_reference_username)
    if not validation.success:
        logger.warning("credential_rotation_rejected created_by=%s reason=%s", created_by, validation.reason)
        raise ValidationError(f"Credential validation failed: {validation.error or validation.reason}")

    credential = await credential_store.store_credentials(
        session,
        api_url=api_url,
        session_id=session_id,
        signature=signature,
        created_by=created_by,
    )
    await credential_store.mark_credentials_validated(session, credential.id)
    await record_event(
        actor_type="admin",
        actor_id=created_by,
        event_type="provisioning.credentials_updated",
        outcome="success",
        resource_type="provisioning_credential",
        resource_id=credential.id,
        metadata={"api_url": api_url},
    )

    restored = False
    snapshot = await get_state(session)
    if restore_state and snapshot.state == STATE_DEGRADED:
        await restore(session, actor_id=created_by)
        restored = True
        snapshot = await get_state(session)
    resumed = 0
    if resume_jobs and snapshot.effective_mode == MODE_AUTO:
        resumed = await resume_pending_jobs(actor_id=created_by)
    return RotationResult(credential=credential, restored=restored, resumed_jobs=resumed)
