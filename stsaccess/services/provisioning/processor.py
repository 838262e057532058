"""Execute one grant or revoke attempt for a strategy access row.

The processor is the only place that turns provider results into access
status changes and manual tasks. Each attempt reads the row, the
provisioning state and the credentials fresh, so redelivered and
duplicate jobs converge on the same outcome:

* a row already GRANTED (or REVOKED for revokes) short-circuits;
* a row owned by a newer job id is left alone;
* every status write is a compare-and-swap on the row version, and a lost
  swap means a later operation took over.

Transient failures raise ``arq.Retry`` with the delay from the backoff
policy; once attempts are exhausted the row becomes FAILED and an
operator task is opened.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
import logging
from typing import Any, TYPE_CHECKING

from arq import Retry
from sqlalchemy.ext.asyncio import AsyncSession

from stsaccess.core.config import get_settings
from stsaccess.core.errors import CredentialEncryptionError
from stsaccess.domain.models import Strategy, StrategyAccess, User
from stsaccess.domain.state import (
    ACCESS_FAILED,
    ACCESS_GRANTED,
    ACCESS_REVOKED,
    ACTION_GRANT,
    ACTION_REVOKE,
    MODE_DISABLED,
    MODE_MANUAL,
    REASON_INVALID_USERNAME,
    REASON_MISSING_USERNAME,
)
from stsaccess.persistence.db import SessionLocal
from stsaccess.persistence.repos import access as access_repo
from stsaccess.providers.provisioning.base import (
    ERROR_AUTH,
    ERROR_NOT_CONFIGURED,
    ERROR_RATE_LIMITED,
    ERROR_TIMEOUT,
    ERROR_UPSTREAM,
    VALIDATION_INVALID,
    VALIDATION_NOT_CONFIGURED,
    VALIDATION_RATE_LIMITED,
    VALIDATION_TIMEOUT,
    AccessRequest,
    ProvisioningProvider,
    ProvisioningResult,
)
from stsaccess.providers.provisioning.factory import get_provisioning_provider
from stsaccess.services.audit import record_event
from stsaccess.services.notifications import Notifier, get_notifier
from stsaccess.services.provisioning import credentials as credential_store
from stsaccess.services.provisioning.manual_tasks import create_or_refresh_task, resolve_pending_tasks
from stsaccess.services.provisioning.retry import BackoffPolicy, decide_retry
from stsaccess.services.provisioning.state import get_state

if TYPE_CHECKING:
    from stsaccess.services.provisioning.queue import ProvisioningJobPayload


logger = logging.getLogger(__name__)

# Outcome statuses reported back to the worker.
OUTCOME_GRANTED = "granted"
OUTCOME_REVOKED = "revoked"
OUTCOME_NOOP = "noop"
OUTCOME_DEFERRED = "deferred"
OUTCOME_MANUAL = "manual"
OUTCOME_FAILED = "failed"
OUTCOME_SUPERSEDED = "superseded"
OUTCOME_NOT_FOUND = "not_found"

# Why a manual task was opened.
TASK_REASON_DISABLED = "mode_disabled"
TASK_REASON_MANUAL = "mode_manual"
TASK_REASON_NOT_CONFIGURED = "not_configured"
TASK_REASON_PROVIDER = "provider_manual"
TASK_REASON_OPTED_OUT = "auto_provision_disabled"
TASK_REASON_EXHAUSTED = "retries_exhausted"
TASK_REASON_NO_USERNAME = "missing_username"

_VALIDATION_CATEGORIES = {
    VALIDATION_TIMEOUT: ERROR_TIMEOUT,
    VALIDATION_RATE_LIMITED: ERROR_RATE_LIMITED,
}


@dataclass(frozen=True)
class ProvisioningOutcome:
    status: str
    access_status: str | None
    message: str
    manual_task_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _JobContext:
    session: AsyncSession
    access_id: str
    access: StrategyAccess
    user: User
    strategy: Strategy
    action: str
    job_id: str
    attempt: int
    policy: BackoffPolicy
    notifier: Notifier
    provider: ProvisioningProvider | None
    credential_id: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def process_provisioning_job(
    payload: "ProvisioningJobPayload",
    *,
    job_id: str,
    attempt: int,
    max_attempts: int | None = None,
    provider: ProvisioningProvider | None = None,
    notifier: Notifier | None = None,
) -> ProvisioningOutcome:
    # Centralize execution so the arq worker and inline mode share behavior.
    settings = get_settings()
    policy = BackoffPolicy.from_settings(settings)
    if max_attempts is not None:
        policy = BackoffPolicy.build(
            policy.schedule_s,
            max_attempts=max_attempts,
            rate_limit_skip=policy.rate_limit_skip,
        )

    async with SessionLocal() as session:
        access = await access_repo.get_access(session, payload.strategy_access_id)
        if access is None:
            logger.warning("provisioning_access_missing access_id=%s job_id=%s", payload.strategy_access_id, job_id)
            return ProvisioningOutcome(OUTCOME_NOT_FOUND, None, "Strategy access no longer exists")
        if access.job_id and access.job_id != job_id:
            logger.info(
                "provisioning_job_superseded access_id=%s job_id=%s owner=%s",
                access.id,
                job_id,
                access.job_id,
            )
            return ProvisioningOutcome(OUTCOME_SUPERSEDED, access.status, "A newer job owns this access")
        user = await session.get(User, access.user_id)
        strategy = await session.get(Strategy, access.strategy_id)
        if user is None or strategy is None:
            logger.warning("provisioning_references_missing access_id=%s job_id=%s", access.id, job_id)
            return ProvisioningOutcome(OUTCOME_NOT_FOUND, access.status, "User or strategy no longer exists")

        ctx = _JobContext(
            session=session,
            access_id=access.id,
            access=access,
            user=user,
            strategy=strategy,
            action=payload.action,
            job_id=job_id,
            attempt=attempt,
            policy=policy,
            notifier=notifier or get_notifier(),
            provider=provider,
        )
        if payload.action == ACTION_REVOKE:
            return await _process_revoke(ctx)
        return await _process_grant(ctx)


async def _process_grant(ctx: _JobContext) -> ProvisioningOutcome:
    access = ctx.access
    if access.status == ACCESS_GRANTED:
        return ProvisioningOutcome(OUTCOME_NOOP, access.status, "Access already granted")
    if access.status == ACCESS_FAILED:
        # Redelivery after a terminal failure; only an admin retry reopens the row.
        return ProvisioningOutcome(OUTCOME_NOOP, access.status, "Access already failed")

    username = (ctx.user.tradingview_username or "").strip()
    if not username:
        return await _fail_terminal(
            ctx,
            failure_reason=REASON_MISSING_USERNAME,
            user_message="Add your TradingView username in account settings so we can grant access.",
        )

    handoff = await _gate(ctx)
    if handoff is not None:
        return handoff

    validation = await ctx.provider.validate_username(username)
    if not validation.success:
        if validation.reason == VALIDATION_INVALID:
            return await _fail_terminal(
                ctx,
                failure_reason=REASON_INVALID_USERNAME,
                user_message=(
                    f"We could not find the TradingView username '{username}'. "
                    "Correct your username in account settings, then contact support to retry."
                ),
                detail=validation.error,
            )
        if validation.reason == VALIDATION_NOT_CONFIGURED:
            return await _hand_off(ctx, TASK_REASON_NOT_CONFIGURED, OUTCOME_MANUAL)
        category = _VALIDATION_CATEGORIES.get(validation.reason, ERROR_UPSTREAM)
        return await _handle_failure(ctx, category, validation.error or validation.reason)

    result = await ctx.provider.grant_access(AccessRequest(username=username, pine_id=ctx.strategy.pine_id))
    return await _apply_result(ctx, result)


async def _process_revoke(ctx: _JobContext) -> ProvisioningOutcome:
    access = ctx.access
    if access.status == ACCESS_REVOKED:
        return ProvisioningOutcome(OUTCOME_NOOP, access.status, "Access already revoked")

    username = (ctx.user.tradingview_username or "").strip()
    if not username:
        # Someone must confirm upstream state by hand when the username is gone.
        return await _hand_off(ctx, TASK_REASON_NO_USERNAME, OUTCOME_MANUAL)

    handoff = await _gate(ctx)
    if handoff is not None:
        return handoff

    result = await ctx.provider.revoke_access(AccessRequest(username=username, pine_id=ctx.strategy.pine_id))
    return await _apply_result(ctx, result)


async def _gate(ctx: _JobContext) -> ProvisioningOutcome | None:
    # Decide whether this attempt may call the provider at all.
    async with SessionLocal() as state_session:
        snapshot = await get_state(state_session)
    if snapshot.effective_mode == MODE_DISABLED:
        return await _hand_off(ctx, TASK_REASON_DISABLED, OUTCOME_DEFERRED)
    if snapshot.effective_mode == MODE_MANUAL:
        return await _hand_off(ctx, TASK_REASON_MANUAL, OUTCOME_MANUAL)
    if not ctx.strategy.auto_provision:
        return await _hand_off(ctx, TASK_REASON_OPTED_OUT, OUTCOME_MANUAL)

    if ctx.provider is None:
        try:
            creds = await credential_store.get_active_credentials(ctx.session)
        except CredentialEncryptionError as exc:
            logger.error("provisioning_credentials_unreadable access_id=%s", ctx.access.id, exc_info=exc)
            return await _hand_off(ctx, TASK_REASON_NOT_CONFIGURED, OUTCOME_MANUAL)
        ctx.provider = get_provisioning_provider(creds)
        ctx.credential_id = creds.credential_id if creds else None
    if not ctx.provider.is_configured():
        logger.warning("provisioning_provider_not_configured access_id=%s provider=%s", ctx.access.id, ctx.provider.name)
        return await _hand_off(ctx, TASK_REASON_NOT_CONFIGURED, OUTCOME_MANUAL)
    return None


async def _apply_result(ctx: _JobContext, result: ProvisioningResult) -> ProvisioningOutcome:
    if result.requires_manual_action:
        return await _hand_off(ctx, TASK_REASON_PROVIDER, OUTCOME_MANUAL, notes=result.message)
    if not result.success:
        if result.error_category == ERROR_NOT_CONFIGURED:
            return await _hand_off(ctx, TASK_REASON_NOT_CONFIGURED, OUTCOME_MANUAL)
        if result.error_category == ERROR_AUTH:
            logger.warning("provisioning_upstream_auth_rejected access_id=%s job_id=%s", ctx.access.id, ctx.job_id)
        return await _handle_failure(ctx, result.error_category, result.message)
    return await _succeed(ctx, result)


async def _succeed(ctx: _JobContext, result: ProvisioningResult) -> ProvisioningOutcome:
    now = _utc_now()
    if ctx.action == ACTION_GRANT:
        values = {"status": ACCESS_GRANTED, "granted_at": now, "revoked_at": None}
        outcome_status, event_type = OUTCOME_GRANTED, "access.granted"
    else:
        values = {"status": ACCESS_REVOKED, "revoked_at": now, "granted_at": None}
        outcome_status, event_type = OUTCOME_REVOKED, "access.revoked"
    values.update(failure_reason=None, attempts=ctx.attempt, last_attempt_at=now, last_backoff_s=None)

    session = ctx.session
    if not await access_repo.transition_access(session, ctx.access, values):
        await session.rollback()
        return _superseded(ctx)
    await resolve_pending_tasks(
        session,
        strategy_access_id=ctx.access.id,
        task_type=ctx.action,
        resolved_by="system",
    )
    await session.commit()
    await credential_store.mark_credentials_used(session, ctx.credential_id)

    logger.info(
        "provisioning_%s_succeeded access_id=%s job_id=%s attempt=%s",
        ctx.action,
        ctx.access.id,
        ctx.job_id,
        ctx.attempt,
    )
    await record_event(
        actor_type="worker",
        actor_id=ctx.job_id,
        event_type=event_type,
        outcome="success",
        resource_type="strategy_access",
        resource_id=ctx.access.id,
        metadata={
            "user_id": ctx.user.id,
            "strategy_id": ctx.strategy.id,
            "attempt": ctx.attempt,
            "provider": ctx.provider.name if ctx.provider else None,
            "message": result.message,
        },
    )
    if ctx.action == ACTION_GRANT:
        await ctx.notifier.send_access_granted(ctx.user, ctx.strategy)
    return ProvisioningOutcome(outcome_status, ctx.access.status, result.message)


async def _handle_failure(ctx: _JobContext, category: str | None, message: str) -> ProvisioningOutcome:
    decision = decide_retry(
        ctx.policy,
        attempt=ctx.attempt,
        category=category,
        previous_delay_s=ctx.access.last_backoff_s,
    )
    if not decision.retry:
        return await _fail_exhausted(ctx, message, category)

    session = ctx.session
    updated = await access_repo.transition_access(
        session,
        ctx.access,
        {
            "failure_reason": message,
            "attempts": ctx.attempt,
            "last_attempt_at": _utc_now(),
            "last_backoff_s": decision.delay_s,
        },
    )
    if not updated:
        await session.rollback()
        return _superseded(ctx)
    await session.commit()
    logger.warning(
        "provisioning_%s_retry_scheduled access_id=%s job_id=%s attempt=%s category=%s delay_s=%s",
        ctx.action,
        ctx.access.id,
        ctx.job_id,
        ctx.attempt,
        category,
        decision.delay_s,
    )
    raise Retry(defer=decision.delay_s)


async def _fail_exhausted(ctx: _JobContext, message: str, category: str | None) -> ProvisioningOutcome:
    # Out of attempts: FAILED for the user, a task for operators, and an alert.
    session = ctx.session
    updated = await access_repo.transition_access(
        session,
        ctx.access,
        {
            "status": ACCESS_FAILED,
            "failure_reason": message,
            "attempts": ctx.attempt,
            "last_attempt_at": _utc_now(),
        },
    )
    if not updated:
        await session.rollback()
        return _superseded(ctx)
    task, _ = await create_or_refresh_task(
        session,
        task_type=ctx.action,
        username=ctx.user.tradingview_username,
        pine_id=ctx.strategy.pine_id,
        strategy_access_id=ctx.access.id,
        reason=TASK_REASON_EXHAUSTED,
        notes=message,
    )
    await session.commit()

    logger.error(
        "provisioning_%s_failed access_id=%s job_id=%s attempts=%s category=%s",
        ctx.action,
        ctx.access.id,
        ctx.job_id,
        ctx.attempt,
        category,
    )
    await record_event(
        actor_type="worker",
        actor_id=ctx.job_id,
        event_type="access.failed",
        outcome="failure",
        resource_type="strategy_access",
        resource_id=ctx.access.id,
        metadata={"attempts": ctx.attempt, "category": category, "message": message, "manual_task_id": task.id},
        error_code=(category or "unknown").upper(),
    )
    if ctx.action == ACTION_GRANT:
        await ctx.notifier.send_access_failed(
            ctx.user,
            ctx.strategy,
            "We could not grant access automatically. Our team has been notified and will finish it by hand.",
        )
    await ctx.notifier.send_admin_alert(
        "provisioning_failed",
        f"{ctx.action.title()} failed after {ctx.attempt} attempts",
        {
            "strategy_access_id": ctx.access.id,
            "user_email": ctx.user.email,
            "username": ctx.user.tradingview_username,
            "strategy": ctx.strategy.name,
            "pine_id": ctx.strategy.pine_id,
            "error": message,
            "manual_task_id": task.id,
        },
    )
    return ProvisioningOutcome(OUTCOME_FAILED, ctx.access.status, message, manual_task_id=task.id)


async def _fail_terminal(
    ctx: _JobContext,
    *,
    failure_reason: str,
    user_message: str,
    detail: str | None = None,
) -> ProvisioningOutcome:
    # Terminal: retrying cannot fix the input and no operator task is opened.
    session = ctx.session
    updated = await access_repo.transition_access(
        session,
        ctx.access,
        {
            "status": ACCESS_FAILED,
            "failure_reason": failure_reason,
            "attempts": ctx.attempt,
            "last_attempt_at": _utc_now(),
        },
    )
    if not updated:
        await session.rollback()
        return _superseded(ctx)
    await session.commit()

    logger.info("provisioning_%s_rejected access_id=%s reason=%s", ctx.action, ctx.access.id, failure_reason)
    await record_event(
        actor_type="worker",
        actor_id=ctx.job_id,
        event_type="access.failed",
        outcome="failure",
        resource_type="strategy_access",
        resource_id=ctx.access.id,
        metadata={"reason": failure_reason, "detail": detail},
        error_code=failure_reason,
    )
    await ctx.notifier.send_access_failed(ctx.user, ctx.strategy, user_message)
    return ProvisioningOutcome(OUTCOME_FAILED, ctx.access.status, failure_reason)


async def _hand_off(
    ctx: _JobContext,
    reason: str,
    outcome_status: str,
    *,
    notes: str | None = None,
) -> ProvisioningOutcome:
    """Open (or refresh) an operator task; the access stays PENDING.

    The version bump in the same transaction proves this job still owns
    the row when the task is written.
    """
    session = ctx.session
    if not await access_repo.transition_access(session, ctx.access, {"last_attempt_at": _utc_now()}):
        await session.rollback()
        return _superseded(ctx)
    task, created = await create_or_refresh_task(
        session,
        task_type=ctx.action,
        username=ctx.user.tradingview_username,
        pine_id=ctx.strategy.pine_id,
        strategy_access_id=ctx.access.id,
        reason=reason,
        notes=notes,
    )
    await session.commit()

    logger.info(
        "provisioning_%s_handed_off access_id=%s job_id=%s reason=%s task_id=%s",
        ctx.action,
        ctx.access.id,
        ctx.job_id,
        reason,
        task.id,
    )
    await record_event(
        actor_type="worker",
        actor_id=ctx.job_id,
        event_type="access.deferred" if outcome_status == OUTCOME_DEFERRED else "access.manual_task_created",
        outcome="success",
        resource_type="strategy_access",
        resource_id=ctx.access.id,
        metadata={"reason": reason, "manual_task_id": task.id, "created": created},
    )
    if created:
        await ctx.notifier.send_admin_alert(
            "manual_task",
            f"Manual {ctx.action} required",
            {
                "manual_task_id": task.id,
                "reason": reason,
                "username": ctx.user.tradingview_username,
                "pine_id": ctx.strategy.pine_id,
                "strategy": ctx.strategy.name,
                "instructions": _task_instructions(ctx),
            },
        )
    message = "Provisioning deferred while disabled" if outcome_status == OUTCOME_DEFERRED else "Manual action required"
    return ProvisioningOutcome(outcome_status, ctx.access.status, message, manual_task_id=task.id)


def _task_instructions(ctx: _JobContext) -> str:
    username = ctx.user.tradingview_username or "<unknown username>"
    if ctx.action == ACTION_GRANT:
        return (
            f"Open script {ctx.strategy.pine_id} on TradingView, add '{username}' under "
            "invite-only access, then complete this task."
        )
    return (
        f"Open script {ctx.strategy.pine_id} on TradingView, remove '{username}' from "
        "invite-only access, then complete this task."
    )


def _superseded(ctx: _JobContext) -> ProvisioningOutcome:
    logger.info("provisioning_write_lost access_id=%s job_id=%s", ctx.access_id, ctx.job_id)
    return ProvisioningOutcome(OUTCOME_SUPERSEDED, None, "A concurrent operation updated this access first")
