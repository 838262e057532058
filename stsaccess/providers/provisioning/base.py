from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


# Validation outcomes; only INVALID is terminal for a job.
VALIDATION_VALID = "VALID"
VALIDATION_INVALID = "INVALID"
VALIDATION_TIMEOUT = "TIMEOUT"
VALIDATION_SERVICE_DOWN = "SERVICE_DOWN"
VALIDATION_RATE_LIMITED = "RATE_LIMITED"
VALIDATION_NOT_CONFIGURED = "NOT_CONFIGURED"

# Failure categories carried on provisioning results.
ERROR_TIMEOUT = "timeout"
ERROR_NETWORK = "network"
ERROR_RATE_LIMITED = "rate_limited"
ERROR_AUTH = "auth"
ERROR_UPSTREAM = "upstream"
ERROR_NOT_CONFIGURED = "not_configured"


@dataclass(frozen=True)
class ProviderCredentials:
    api_url: str
    session_id: str = field(repr=False)
    signature: str = field(repr=False)
    # None for environment fallback credentials that are not stored.
    credential_id: str | None = None


@dataclass(frozen=True)
class ValidationResult:
    success: bool
    reason: str
    username: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class AccessRequest:
    username: str
    pine_id: str
    duration: str | None = None


@dataclass(frozen=True)
class ProvisioningResult:
    success: bool
    message: str
    requires_manual_action: bool = False
    error_category: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ProvisioningProvider(Protocol):
    """Upstream access management capability.

    Implementations return results as data; network failures and timeouts
    must never raise past these methods.
    """

    name: str

    def is_configured(self) -> bool:
        ...

    async def validate_username(self, username: str) -> ValidationResult:
        ...

    async def grant_access(self, request: AccessRequest) -> ProvisioningResult:
        ...

    async def revoke_access(self, request: AccessRequest) -> ProvisioningResult:
        ...
