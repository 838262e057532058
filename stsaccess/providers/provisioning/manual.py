from __future__ import annotations

from stsaccess.providers.provisioning.base import (
    VALIDATION_VALID,
    AccessRequest,
    ProvisioningResult,
    ValidationResult,
)


class ManualProvider:
    """Hand every grant and revoke to an operator."""

    name = "manual"

    def is_configured(self) -> bool:
        return True

    async def validate_username(self, username: str) -> ValidationResult:
        # Operators verify the username while performing the task.
        return ValidationResult(success=True, reason=VALIDATION_VALID, username=username)

    async def grant_access(self, request: AccessRequest) -> ProvisioningResult:
        return ProvisioningResult(
            success=True,
            message=f"Manual grant required for {request.username}",
            requires_manual_action=True,
        )

    async def revoke_access(self, request: AccessRequest) -> ProvisioningResult:
        return ProvisioningResult(
            success=True,
            message=f"Manual revoke required for {request.username}",
            requires_manual_action=True,
        )
