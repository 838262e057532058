"""Persisted provisioning health and service mode.

State (HEALTHY/DEGRADED) and mode (AUTO/MANUAL/DISABLED) live on a single
row. Every write is a compare-and-swap on ``version`` so a health-check
degrade and an admin restore racing each other cannot lose an update.
Nothing here restores AUTO on its own; only ``restore`` does.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import secrets
import time
from typing import Any, Callable

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from stsaccess.core.errors import ProvisioningStateConflictError, ValidationError
from stsaccess.domain.models import ProvisioningState
from stsaccess.domain.state import (
    MODE_AUTO,
    MODE_DISABLED,
    MODE_MANUAL,
    SERVICE_MODES,
    STATE_DEGRADED,
    STATE_HEALTHY,
    effective_mode,
)
from stsaccess.services.audit import record_event


logger = logging.getLogger(__name__)

STATE_ROW_ID = 1
_CAS_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class StateSnapshot:
    state: str
    mode: str
    effective_mode: str
    degraded_at: datetime | None
    reason: str | None
    incident_id: str | None
    consecutive_failures: int
    last_checked_at: datetime | None
    last_check_error: str | None
    version: int


@dataclass(frozen=True)
class StateChange:
    snapshot: StateSnapshot
    previous: StateSnapshot
    changed: bool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def new_incident_id() -> str:
    # Time-ordered prefix keeps incidents sortable; the suffix avoids collisions.
    return f"INC-{int(time.time() * 1000):X}-{secrets.token_hex(3).upper()}"


def _snapshot(row: ProvisioningState) -> StateSnapshot:
    return StateSnapshot(
        state=row.state,
        mode=row.mode,
        effective_mode=effective_mode(row.state, row.mode),
        degraded_at=_as_utc(row.degraded_at),
        reason=row.reason,
        incident_id=row.incident_id,
        consecutive_failures=row.consecutive_failures,
        last_checked_at=_as_utc(row.last_checked_at),
        last_check_error=row.last_check_error,
        version=row.version,
    )


async def _get_or_create_state(session: AsyncSession) -> ProvisioningState:
    # Keep the singleton durable; concurrent first readers race on the primary key.
    row = await session.get(ProvisioningState, STATE_ROW_ID, populate_existing=True)
    if row is not None:
        return row
    row = ProvisioningState(
        id=STATE_ROW_ID,
        state=STATE_HEALTHY,
        mode=MODE_AUTO,
        consecutive_failures=0,
        version=1,
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        row = await session.get(ProvisioningState, STATE_ROW_ID, populate_existing=True)
        if row is None:
            raise
    return row


async def get_state(session: AsyncSession) -> StateSnapshot:
    # Point read on the hot path; never cached across jobs or workers.
    return _snapshot(await _get_or_create_state(session))


async def _mutate(
    session: AsyncSession,
    decide: Callable[[ProvisioningState], dict[str, Any] | None],
) -> StateChange:
    for _ in range(_CAS_MAX_ATTEMPTS):
        row = await _get_or_create_state(session)
        previous = _snapshot(row)
        values = decide(row)
        if values is None:
            return StateChange(snapshot=previous, previous=previous, changed=False)
        result = await session.execute(
            update(ProvisioningState)
            .where(ProvisioningState.id == STATE_ROW_ID, ProvisioningState.version == previous.version)
            .values(version=previous.version + 1, updated_at=_utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await session.commit()
            return StateChange(snapshot=await get_state(session), previous=previous, changed=True)
        await session.rollback()
        logger.info("provisioning_state_cas_conflict version=%s", previous.version)
    raise ProvisioningStateConflictError("Provisioning state changed concurrently; retry the operation")


async def degrade(
    session: AsyncSession,
    *,
    reason: str,
    incident_id: str | None = None,
    actor_id: str = "health_check",
) -> StateChange:
    """Move to DEGRADED and force MANUAL unless an operator chose DISABLED.

    ``changed`` on the result is True only for the HEALTHY to DEGRADED
    transition. A repeat call while degraded refreshes the reason and keeps
    the original incident.
    """

    def _decide(row: ProvisioningState) -> dict[str, Any] | None:
        if row.state == STATE_DEGRADED:
            if row.reason == reason:
                return None
            return {"reason": reason, "updated_by": actor_id}
        return {
            "state": STATE_DEGRADED,
            "mode": row.mode if row.mode == MODE_DISABLED else MODE_MANUAL,
            "degraded_at": _utc_now(),
            "reason": reason,
            "incident_id": incident_id or new_incident_id(),
            "updated_by": actor_id,
        }

    change = await _mutate(session, _decide)
    transitioned = change.changed and change.previous.state == STATE_HEALTHY
    if transitioned:
        logger.warning(
            "provisioning_degraded incident_id=%s mode=%s reason=%s",
            change.snapshot.incident_id,
            change.snapshot.mode,
            reason,
        )
        await record_event(
            actor_type="system",
            actor_id=actor_id,
            event_type="provisioning.state_degraded",
            outcome="success",
            resource_type="provisioning_state",
            resource_id=str(STATE_ROW_ID),
            metadata={
                "reason": reason,
                "incident_id": change.snapshot.incident_id,
                "previous_mode": change.previous.mode,
                "mode": change.snapshot.mode,
            },
        )
    return StateChange(snapshot=change.snapshot, previous=change.previous, changed=transitioned)


async def restore(session: AsyncSession, *, actor_id: str) -> StateChange:
    # Explicit operator action: back to HEALTHY/AUTO with incident bookkeeping cleared.
    def _decide(row: ProvisioningState) -> dict[str, Any] | None:
        return {
            "state": STATE_HEALTHY,
            "mode": MODE_AUTO,
            "degraded_at": None,
            "reason": None,
            "incident_id": None,
            "consecutive_failures": 0,
            "updated_by": actor_id,
        }

    change = await _mutate(session, _decide)
    logger.info(
        "provisioning_restored actor_id=%s previous_state=%s previous_mode=%s",
        actor_id,
        change.previous.state,
        change.previous.mode,
    )
    await record_event(
        actor_type="admin",
        actor_id=actor_id,
        event_type="provisioning.state_healthy",
        outcome="success",
        resource_type="provisioning_state",
        resource_id=str(STATE_ROW_ID),
        metadata={
            "previous_state": change.previous.state,
            "previous_mode": change.previous.mode,
            "incident_id": change.previous.incident_id,
        },
    )
    return change


async def set_mode(
    session: AsyncSession,
    *,
    mode: str,
    actor_id: str,
    reason: str | None = None,
) -> StateChange:
    # Operator override of the mode axis; health state is left untouched.
    normalized = (mode or "").upper()
    if normalized not in SERVICE_MODES:
        raise ValidationError(f"Unsupported provisioning mode: {mode}")

    def _decide(row: ProvisioningState) -> dict[str, Any] | None:
        if row.mode == normalized:
            return None
        return {"mode": normalized, "updated_by": actor_id}

    change = await _mutate(session, _decide)
    if change.changed:
        if normalized == MODE_AUTO and change.snapshot.state == STATE_DEGRADED:
            logger.warning("provisioning_mode_auto_while_degraded actor_id=%s", actor_id)
        await record_event(
            actor_type="admin",
            actor_id=actor_id,
            event_type="provisioning.mode_changed",
            outcome="success",
            resource_type="provisioning_state",
            resource_id=str(STATE_ROW_ID),
            metadata={"previous_mode": change.previous.mode, "mode": normalized, "reason": reason},
        )
    return change


async def record_check_success(session: AsyncSession) -> StateSnapshot:
    # Reset the streak only; a degraded state stays degraded.
    change = await _mutate(
        session,
        lambda row: {"consecutive_failures": 0, "last_checked_at": _utc_now(), "last_check_error": None},
    )
    return change.snapshot


async def record_check_failure(session: AsyncSession, *, error: str) -> StateSnapshot:
    change = await _mutate(
        session,
        lambda row: {
            "consecutive_failures": row.consecutive_failures + 1,
            "last_checked_at": _utc_now(),
            "last_check_error": error,
        },
    )
    return change.snapshot
