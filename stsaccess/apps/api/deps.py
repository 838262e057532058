from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from stsaccess.core.config import get_settings
from stsaccess.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class AdminPrincipal(BaseModel):
    # Operator identity recorded on audit events and manual task completions.
    admin_id: str


async def require_admin(
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
    x_admin_id: str | None = Header(default=None, alias="X-Admin-Id"),
) -> AdminPrincipal:
    # Sessions live in the storefront; this surface only checks the shared operator token.
    settings = get_settings()
    expected = settings.admin_api_token
    if not expected:
        raise HTTPException(
            status_code=503,
            detail={"code": "ADMIN_API_DISABLED", "message": "Admin API token is not configured"},
        )
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(
            status_code=401,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Invalid admin token"},
        )
    return AdminPrincipal(admin_id=(x_admin_id or "admin").strip() or "admin")


AdminDep = Depends(require_admin)
