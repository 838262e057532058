from __future__ import annotations

from typing import Literal


# Strategy access lifecycle.
ACCESS_PENDING = "PENDING"
ACCESS_GRANTED = "GRANTED"
ACCESS_FAILED = "FAILED"
ACCESS_REVOKED = "REVOKED"

# Provider health as observed by the checker.
STATE_HEALTHY = "HEALTHY"
STATE_DEGRADED = "DEGRADED"

# Operator-selected service mode.
MODE_AUTO = "AUTO"
MODE_MANUAL = "MANUAL"
MODE_DISABLED = "DISABLED"
SERVICE_MODES = (MODE_AUTO, MODE_MANUAL, MODE_DISABLED)

ACTION_GRANT = "grant"
ACTION_REVOKE = "revoke"

TASK_PENDING = "pending"
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"

# Failure reasons recorded on terminal access rows.
REASON_INVALID_USERNAME = "INVALID"
REASON_MISSING_USERNAME = "MISSING_USERNAME"

ProvisioningAction = Literal["grant", "revoke"]
ServiceMode = Literal["AUTO", "MANUAL", "DISABLED"]


def effective_mode(state: str, mode: str) -> str:
    # AUTO only survives while the provider is healthy; everything else is manual or off.
    if mode == MODE_DISABLED:
        return MODE_DISABLED
    if mode == MODE_AUTO and state == STATE_HEALTHY:
        return MODE_AUTO
    return MODE_MANUAL
