from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from stsaccess.core.config import get_settings
from stsaccess.providers.provisioning.base import (
    ERROR_AUTH,
    ERROR_NETWORK,
    ERROR_NOT_CONFIGURED,
    ERROR_RATE_LIMITED,
    ERROR_TIMEOUT,
    ERROR_UPSTREAM,
    VALIDATION_INVALID,
    VALIDATION_NOT_CONFIGURED,
    VALIDATION_RATE_LIMITED,
    VALIDATION_SERVICE_DOWN,
    VALIDATION_TIMEOUT,
    VALIDATION_VALID,
    AccessRequest,
    ProviderCredentials,
    ProvisioningResult,
    ValidationResult,
)


logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Session-Id"
SIGNATURE_HEADER = "X-Signature"


def _json_body(response: httpx.Response) -> dict[str, Any]:
    # Upstream occasionally answers with plain text; treat it as an empty body.
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class HttpAccessProvider:
    name = "http"

    def __init__(
        self,
        credentials: ProviderCredentials | None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = get_settings()
        self._credentials = credentials
        self._client = client

    def is_configured(self) -> bool:
        creds = self._credentials
        return bool(creds and creds.api_url and creds.session_id and creds.signature)

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, **kwargs)
        # One client per call; nothing outlives the request.
        async with httpx.AsyncClient() as client:
            return await client.request(method, url, **kwargs)

    def _headers(self) -> dict[str, str]:
        assert self._credentials is not None
        return {
            "Content-Type": "application/json",
            SESSION_HEADER: self._credentials.session_id,
            SIGNATURE_HEADER: self._credentials.signature,
        }

    def _url(self, path: str) -> str:
        assert self._credentials is not None
        return f"{self._credentials.api_url.rstrip('/')}{path}"

    async def validate_username(self, username: str) -> ValidationResult:
        if not self.is_configured():
            return ValidationResult(
                success=False,
                reason=VALIDATION_NOT_CONFIGURED,
                error="Provisioning credentials are not configured",
            )
        timeout_s = self._settings.provider_validate_timeout_s
        try:
            response = await self._send(
                "GET",
                self._url(f"/validate/{quote(username, safe='')}"),
                headers=self._headers(),
                timeout=timeout_s,
            )
        except httpx.TimeoutException:
            logger.warning("provider_validate_timeout username=%s timeout_s=%s", username, timeout_s)
            return ValidationResult(
                success=False,
                reason=VALIDATION_TIMEOUT,
                error=f"Validation timed out after {timeout_s:g}s",
            )
        except httpx.HTTPError as exc:
            logger.warning("provider_validate_unreachable username=%s", username, exc_info=exc)
            return ValidationResult(
                success=False,
                reason=VALIDATION_SERVICE_DOWN,
                error=f"Validation service unreachable: {type(exc).__name__}",
            )

        if response.status_code == 404:
            return ValidationResult(success=False, reason=VALIDATION_INVALID, error="Username not found")
        if response.status_code == 429:
            return ValidationResult(
                success=False,
                reason=VALIDATION_RATE_LIMITED,
                error="Validation service is rate limiting requests",
            )
        if response.status_code >= 400:
            return ValidationResult(
                success=False,
                reason=VALIDATION_SERVICE_DOWN,
                error=f"Validation service returned HTTP {response.status_code}",
            )

        body = _json_body(response)
        if body.get("success") is False or body.get("error"):
            return ValidationResult(
                success=False,
                reason=VALIDATION_INVALID,
                error=str(body.get("error") or "Username not found"),
            )
        return ValidationResult(
            success=True,
            reason=VALIDATION_VALID,
            username=str(body.get("username") or username),
        )

    async def grant_access(self, request: AccessRequest) -> ProvisioningResult:
        payload = {
            "pine_id": request.pine_id,
            "duration": request.duration or self._settings.provider_grant_duration,
        }
        return await self._access_call("POST", request, payload, action="grant")

    async def revoke_access(self, request: AccessRequest) -> ProvisioningResult:
        return await self._access_call("DELETE", request, {"pine_id": request.pine_id}, action="revoke")

    async def _access_call(
        self,
        method: str,
        request: AccessRequest,
        payload: dict[str, Any],
        *,
        action: str,
    ) -> ProvisioningResult:
        if not self.is_configured():
            return ProvisioningResult(
                success=False,
                message="Provisioning credentials are not configured",
                error_category=ERROR_NOT_CONFIGURED,
            )
        timeout_s = self._settings.provider_access_timeout_s
        try:
            response = await self._send(
                method,
                self._url(f"/access/{quote(request.username, safe='')}"),
                json=payload,
                headers=self._headers(),
                timeout=timeout_s,
            )
        except httpx.TimeoutException:
            logger.warning("provider_%s_timeout username=%s timeout_s=%s", action, request.username, timeout_s)
            return ProvisioningResult(
                success=False,
                message=f"Upstream {action} timed out after {timeout_s:g}s",
                error_category=ERROR_TIMEOUT,
            )
        except httpx.HTTPError as exc:
            logger.warning("provider_%s_unreachable username=%s", action, request.username, exc_info=exc)
            return ProvisioningResult(
                success=False,
                message=f"Upstream {action} failed: {type(exc).__name__}",
                error_category=ERROR_NETWORK,
            )

        body = _json_body(response)
        metadata = {"status_code": response.status_code}
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                metadata["retry_after"] = retry_after
            return ProvisioningResult(
                success=False,
                message=f"Upstream is rate limiting {action} requests",
                error_category=ERROR_RATE_LIMITED,
                metadata=metadata,
            )
        if response.status_code in {401, 403}:
            return ProvisioningResult(
                success=False,
                message=f"Upstream rejected credentials (HTTP {response.status_code})",
                error_category=ERROR_AUTH,
                metadata=metadata,
            )
        if response.status_code >= 400 or body.get("success") is False:
            detail = body.get("error") or body.get("message") or f"HTTP {response.status_code}"
            return ProvisioningResult(
                success=False,
                message=f"Upstream {action} failed: {detail}",
                error_category=ERROR_UPSTREAM,
                metadata=metadata,
            )
        message = body.get("message") or f"Access {action} succeeded for {request.username}"
        return ProvisioningResult(success=True, message=str(message), metadata=metadata)
