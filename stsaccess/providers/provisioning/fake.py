from __future__ import annotations

from stsaccess.providers.provisioning.base import (
    ERROR_NOT_CONFIGURED,
    VALIDATION_NOT_CONFIGURED,
    VALIDATION_VALID,
    AccessRequest,
    ProvisioningResult,
    ValidationResult,
)


class FakeProvisioningProvider:
    """Scripted in-memory provider for local runs and tests.

    Each result list is consumed in order and its last entry repeats, so a
    single entry scripts every call. Calls are recorded as
    ``(operation, username)`` tuples.
    """

    name = "fake"

    def __init__(
        self,
        *,
        configured: bool = True,
        validation_results: list[ValidationResult] | None = None,
        grant_results: list[ProvisioningResult] | None = None,
        revoke_results: list[ProvisioningResult] | None = None,
    ) -> None:
        self._configured = configured
        self._validation_results = list(validation_results or [])
        self._grant_results = list(grant_results or [])
        self._revoke_results = list(revoke_results or [])
        self.calls: list[tuple[str, str]] = []

    @staticmethod
    def _next(results: list, default):
        if not results:
            return default
        if len(results) == 1:
            return results[0]
        return results.pop(0)

    def is_configured(self) -> bool:
        return self._configured

    async def validate_username(self, username: str) -> ValidationResult:
        self.calls.append(("validate", username))
        if not self._configured:
            return ValidationResult(success=False, reason=VALIDATION_NOT_CONFIGURED, error="Fake provider disabled")
        return self._next(
            self._validation_results,
            ValidationResult(success=True, reason=VALIDATION_VALID, username=username),
        )

    async def grant_access(self, request: AccessRequest) -> ProvisioningResult:
        self.calls.append(("grant", request.username))
        if not self._configured:
            return ProvisioningResult(False, "Fake provider disabled", error_category=ERROR_NOT_CONFIGURED)
        return self._next(self._grant_results, ProvisioningResult(True, f"Granted {request.pine_id}"))

    async def revoke_access(self, request: AccessRequest) -> ProvisioningResult:
        self.calls.append(("revoke", request.username))
        if not self._configured:
            return ProvisioningResult(False, "Fake provider disabled", error_category=ERROR_NOT_CONFIGURED)
        return self._next(self._revoke_results, ProvisioningResult(True, f"Revoked {request.pine_id}"))

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)
