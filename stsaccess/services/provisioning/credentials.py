from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stsaccess.core.config import get_settings
from stsaccess.core.errors import ValidationError
from stsaccess.domain.models import ProvisioningCredential
from stsaccess.providers.provisioning.base import ProviderCredentials
from stsaccess.services.security.secrets import decrypt_secret, encrypt_secret


logger = logging.getLogger(__name__)

AGE_LEVEL_OK = 0
AGE_LEVEL_WARNING = 1
AGE_LEVEL_CRITICAL = 2
AGE_LEVEL_NAMES = {AGE_LEVEL_OK: "ok", AGE_LEVEL_WARNING: "warning", AGE_LEVEL_CRITICAL: "critical"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip; stored values are always UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def require_credential_fields(api_url: str, session_id: str, signature: str) -> tuple[str, str, str]:
    # Reject blanks before any write so a bad submission leaves no partial state.
    values = {"api_url": api_url, "session_id": session_id, "signature": signature}
    missing = [name for name, value in values.items() if not (value or "").strip()]
    if missing:
        raise ValidationError(f"Missing required credential fields: {', '.join(missing)}")
    return api_url.strip(), session_id.strip(), signature.strip()


async def store_credentials(
    session: AsyncSession,
    *,
    api_url: str,
    session_id: str,
    signature: str,
    created_by: str,
) -> ProvisioningCredential:
    # Swap the active credential in one transaction: deactivate the old row, insert the new one.
    api_url, session_id, signature = require_credential_fields(api_url, session_id, signature)
    session_cipher = encrypt_secret(session_id)
    signature_cipher = encrypt_secret(signature)
    credential = ProvisioningCredential(
        api_url=api_url,
        session_id_encrypted=session_cipher,
        signature_encrypted=signature_cipher,
        is_active=True,
        created_at=_utc_now(),
        created_by=created_by,
        age_alert_level=AGE_LEVEL_OK,
    )
    try:
        await session.execute(
            update(ProvisioningCredential)
            .where(ProvisioningCredential.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        session.add(credential)
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        raise
    logger.info("credentials_stored credential_id=%s created_by=%s", credential.id, created_by)
    return credential


async def get_active_credential(session: AsyncSession) -> ProvisioningCredential | None:
    result = await session.execute(
        select(ProvisioningCredential)
        .where(ProvisioningCredential.is_active.is_(True))
        .order_by(ProvisioningCredential.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_active_credentials(session: AsyncSession) -> ProviderCredentials | None:
    """Return decrypted credentials for building a provider.

    Stored credentials win; otherwise the environment fallback is used when
    all three values are set. Returns None when neither is available.
    """
    row = await get_active_credential(session)
    if row is not None:
        return ProviderCredentials(
            api_url=row.api_url,
            session_id=decrypt_secret(row.session_id_encrypted),
            signature=decrypt_secret(row.signature_encrypted),
            credential_id=row.id,
        )
    settings = get_settings()
    if settings.provider_api_url and settings.provider_session_id and settings.provider_signature:
        return ProviderCredentials(
            api_url=settings.provider_api_url,
            session_id=settings.provider_session_id,
            signature=settings.provider_signature,
        )
    return None


async def mark_credentials_validated(session: AsyncSession, credential_id: str | None) -> None:
    # Environment fallback credentials have no row to stamp.
    if credential_id is None:
        return
    await session.execute(
        update(ProvisioningCredential)
        .where(ProvisioningCredential.id == credential_id)
        .values(validated_at=_utc_now())
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def mark_credentials_used(session: AsyncSession, credential_id: str | None) -> None:
    if credential_id is None:
        return
    await session.execute(
        update(ProvisioningCredential)
        .where(ProvisioningCredential.id == credential_id)
        .values(last_used_at=_utc_now())
        .execution_options(synchronize_session=False)
    )
    await session.commit()


def get_credential_age_hours(credential: ProvisioningCredential, *, now: datetime | None = None) -> int:
    elapsed = (now or _utc_now()) - _as_utc(credential.created_at)
    return max(0, int(elapsed.total_seconds() // 3600))


def credential_age_level(age_hours: int) -> int:
    settings = get_settings()
    if age_hours >= settings.credential_alert_age_hours:
        return AGE_LEVEL_CRITICAL
    if age_hours >= settings.credential_warning_age_hours:
        return AGE_LEVEL_WARNING
    return AGE_LEVEL_OK


async def get_credential_history(session: AsyncSession, *, limit: int | None = None) -> list[ProvisioningCredential]:
    settings = get_settings()
    resolved_limit = max(1, int(limit or settings.credential_history_limit))
    result = await session.execute(
        select(ProvisioningCredential)
        .order_by(ProvisioningCredential.created_at.desc(), ProvisioningCredential.id)
        .limit(resolved_limit)
    )
    return list(result.scalars().all())


async def get_credential_status(session: AsyncSession) -> dict[str, Any]:
    # Summarize the active credential without exposing secret material.
    row = await get_active_credential(session)
    if row is None:
        settings = get_settings()
        env_configured = bool(
            settings.provider_api_url and settings.provider_session_id and settings.provider_signature
        )
        return {
            "configured": env_configured,
            "source": "environment" if env_configured else "none",
            "credential_id": None,
            "api_url": settings.provider_api_url if env_configured else None,
            "created_at": None,
            "validated_at": None,
            "last_used_at": None,
            "created_by": None,
            "age_hours": None,
            "age_level": None,
        }
    age_hours = get_credential_age_hours(row)
    return {
        "configured": True,
        "source": "stored",
        "credential_id": row.id,
        "api_url": row.api_url,
        "created_at": _as_utc(row.created_at),
        "validated_at": _as_utc(row.validated_at) if row.validated_at else None,
        "last_used_at": _as_utc(row.last_used_at) if row.last_used_at else None,
        "created_by": row.created_by,
        "age_hours": age_hours,
        "age_level": AGE_LEVEL_NAMES[credential_age_level(age_hours)],
    }
