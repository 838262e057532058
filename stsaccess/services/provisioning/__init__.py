from stsaccess.services.provisioning.admin import (
    ProvisioningStatus,
    get_provisioning_state,
    restore_provisioning,
    resume_pending_jobs,
    rotate_credentials,
)
from stsaccess.services.provisioning.bulk_grant import enqueue_bulk_auto_grant, run_bulk_auto_grant
from stsaccess.services.provisioning.health import run_credential_health_check
from stsaccess.services.provisioning.manual_tasks import (
    complete_manual_task,
    fail_manual_task,
    list_manual_tasks,
)
from stsaccess.services.provisioning.processor import ProvisioningOutcome, process_provisioning_job
from stsaccess.services.provisioning.queue import (
    ProvisioningJobPayload,
    enqueue_provisioning_job,
    retry_provisioning,
)
from stsaccess.services.provisioning.state import degrade, restore, set_mode

__all__ = [
    "ProvisioningJobPayload",
    "ProvisioningOutcome",
    "ProvisioningStatus",
    "complete_manual_task",
    "degrade",
    "enqueue_bulk_auto_grant",
    "enqueue_provisioning_job",
    "fail_manual_task",
    "get_provisioning_state",
    "list_manual_tasks",
    "process_provisioning_job",
    "restore",
    "restore_provisioning",
    "resume_pending_jobs",
    "retry_provisioning",
    "rotate_credentials",
    "run_bulk_auto_grant",
    "run_credential_health_check",
    "set_mode",
]
