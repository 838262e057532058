from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from stsaccess.apps.api.deps import AdminPrincipal, get_db, require_admin
from stsaccess.apps.api.errors import domain_http_exception
from stsaccess.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stsaccess.apps.api.response import SuccessEnvelope, success_response
from stsaccess.core.errors import StsAccessError
from stsaccess.domain.models import ManualTask, ProvisioningCredential
from stsaccess.services.provisioning import credentials as credential_store
from stsaccess.services.provisioning.admin import (
    get_provisioning_state,
    restore_provisioning,
    resume_pending_jobs,
    rotate_credentials,
)
from stsaccess.services.provisioning.bulk_grant import enqueue_bulk_auto_grant
from stsaccess.services.provisioning.health import run_credential_health_check
from stsaccess.services.provisioning.manual_tasks import (
    complete_manual_task,
    fail_manual_task,
    list_manual_tasks,
)
from stsaccess.services.provisioning.queue import enqueue_provisioning_job, retry_provisioning
from stsaccess.services.provisioning.state import set_mode


router = APIRouter(
    prefix="/admin/provisioning",
    tags=["provisioning-admin"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class ProvisioningStateResponse(BaseModel):
    state: str
    mode: str
    effective_mode: str
    degraded_at: datetime | None
    reason: str | None
    incident_id: str | None
    pending_jobs_count: int
    consecutive_failures: int
    last_checked_at: datetime | None
    queue_depth: int | None
    worker_heartbeat_at: datetime | None


class RestoreRequest(BaseModel):
    resume_jobs: bool = True


class RestoreResponse(BaseModel):
    state: ProvisioningStateResponse
    resumed_jobs: int


class ModeRequest(BaseModel):
    mode: Literal["AUTO", "MANUAL", "DISABLED"]
    reason: str | None = None


class HealthCheckResponse(BaseModel):
    status: str
    state: str | None = None
    mode: str | None = None
    consecutive_failures: int | None = None
    credential_age_hours: int | None = None
    age_level: str | None = None
    error: str | None = None


class CredentialStatusResponse(BaseModel):
    # Secret material is never returned.
    configured: bool
    source: str
    credential_id: str | None
    api_url: str | None
    created_at: datetime | None
    validated_at: datetime | None
    last_used_at: datetime | None
    created_by: str | None
    age_hours: int | None
    age_level: str | None


class CredentialHistoryItem(BaseModel):
    id: str
    api_url: str
    is_active: bool
    created_at: datetime
    validated_at: datetime | None
    last_used_at: datetime | None
    created_by: str | None


class CredentialRotateRequest(BaseModel):
    api_url: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    signature: str = Field(min_length=1)
    restore_state: bool = True
    resume_jobs: bool = True


class CredentialRotateResponse(BaseModel):
    credential_id: str
    restored: bool
    resumed_jobs: int


class ManualTaskResponse(BaseModel):
    id: str
    type: str
    username: str | None
    pine_id: str
    strategy_access_id: str | None
    status: str
    reason: str | None
    notes: str | None
    created_at: datetime
    completed_at: datetime | None
    completed_by: str | None


class ManualTaskListResponse(BaseModel):
    items: list[ManualTaskResponse]


class CompleteTaskRequest(BaseModel):
    notes: str | None = None


class FailTaskRequest(BaseModel):
    reason: str = Field(min_length=1)


class EnqueueJobRequest(BaseModel):
    strategy_access_id: str
    user_id: str
    strategy_id: str
    action: Literal["grant", "revoke"] = "grant"


class JobResponse(BaseModel):
    job_id: str


class ResumeJobsResponse(BaseModel):
    resumed_jobs: int


def _state_payload(status: Any) -> ProvisioningStateResponse:
    return ProvisioningStateResponse(
        state=status.state,
        mode=status.mode,
        effective_mode=status.effective_mode,
        degraded_at=status.degraded_at,
        reason=status.reason,
        incident_id=status.incident_id,
        pending_jobs_count=status.pending_jobs_count,
        consecutive_failures=status.consecutive_failures,
        last_checked_at=status.last_checked_at,
        queue_depth=status.queue_depth,
        worker_heartbeat_at=status.worker_heartbeat_at,
    )


def _task_payload(task: ManualTask) -> ManualTaskResponse:
    return ManualTaskResponse(
        id=task.id,
        type=task.type,
        username=task.username,
        pine_id=task.pine_id,
        strategy_access_id=task.strategy_access_id,
        status=task.status,
        reason=task.reason,
        notes=task.notes,
        created_at=task.created_at,
        completed_at=task.completed_at,
        completed_by=task.completed_by,
    )


def _credential_payload(row: ProvisioningCredential) -> CredentialHistoryItem:
    return CredentialHistoryItem(
        id=row.id,
        api_url=row.api_url,
        is_active=row.is_active,
        created_at=row.created_at,
        validated_at=row.validated_at,
        last_used_at=row.last_used_at,
        created_by=row.created_by,
    )


@router.get("/state", response_model=SuccessEnvelope[ProvisioningStateResponse])
async def get_state_endpoint(
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        status = await get_provisioning_state(db)
    except StsAccessError as exc:
        raise domain_http_exception(exc) from exc
    return success_response(request=request, data=_state_payload(status).model_dump(mode="json"))


@router.post("/restore", response_model=SuccessEnvelope[RestoreResponse])
async def restore_endpoint(
    request: Request,
    payload: RestoreRequest | None = None,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Restoring is the only way out of DEGRADED; health checks never auto-recover.
    payload = payload or RestoreRequest()
    try:
        resumed = await restore_provisioning(db, actor_id=principal.admin_id, resume_jobs=payload.resume_jobs)
        status = await get_provisioning_state(db)
    except StsAccessError as exc:
        raise domain_http_exception(exc) from exc
    data = RestoreResponse(state=_state_payload(status), resumed_jobs=resumed)
    return success_response(request=request, data=data.model_dump(mode="json"))


@router.post("/mode", response_model=SuccessEnvelope[ProvisioningStateResponse])
async def set_mode_endpoint(
    payload: ModeRequest,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        await set_mode(db, mode=payload.mode, actor_id=principal.admin_id, reason=payload.reason)
        status = await get_provisioning_state(db)
    except StsAccessError as exc:
        raise domain_http_exception(exc) from exc
    return success_response(request=request, data=_state_payload(status).model_dump(mode="json"))


@router.post("/health-check", response_model=SuccessEnvelope[HealthCheckResponse])
async def run_health_check_endpoint(
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
) -> dict:
    try:
        result = await run_credential_health_check()
    except StsAccessError as exc:
        raise domain_http_exception(exc) from exc
    data = HealthCheckResponse(
        status=result.status,
        state=result.state,
        mode=result.mode,
        consecutive_failures=result.consecutive_failures,
        credential_age_hours=result.credential_age_hours,
        age_level=result.age_level,
        error=result.error,
    )
    return success_response(request=request, data=data.model_dump(mode="json"))


@router.get("/credentials", response_model=SuccessEnvelope[CredentialStatusResponse])
async def get_credentials_endpoint(
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    status = await credential_store.get_credential_status(db)
    return success_response(request=request, data=CredentialStatusResponse(**status).model_dump(mode="json"))


@router.get("/credentials/history", response_model=SuccessEnvelope[list[CredentialHistoryItem]])
async def get_credential_history_endpoint(
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=100),
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await credential_store.get_credential_history(db, limit=limit)
    items = [_credential_payload(row).model_dump(mode="json") for row in rows]
    return success_response(request=request, data=items)


@router.post("/credentials", response_model=SuccessEnvelope[CredentialRotateResponse])
async def rotate_credentials_endpoint(
    payload: CredentialRotateRequest,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        result = await rotate_credentials(
            db,
            api_url=payload.api_url,
            session_id=payload.session_id,
            signature=payload.signature,
            created_by=principal.admin_id,
            restore_state=payload.restore_state,
            resume_jobs=payload.resume_jobs,
        )
    except StsAccessError as exc:
        raise domain_http_exception(exc) from exc
    data = CredentialRotateResponse(
        credential_id=result.credential.id,
        restored=result.restored,
        resumed_jobs=result.resumed_jobs,
    )
    return success_response(request=request, data=data.model_dump(mode="json"))


@router.get("/tasks", response_model=SuccessEnvelope[ManualTaskListResponse])
async def list_tasks_endpoint(
    request: Request,
    status: str | None = Query(default="pending"),
    limit: int = Query(default=100, ge=1, le=500),
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        tasks = await list_manual_tasks(db, status=status or None, limit=limit)
    except StsAccessError as exc:
        raise domain_http_exception(exc) from exc
    data = ManualTaskListResponse(items=[_task_payload(task) for task in tasks])
    return success_response(request=request, data=data.model_dump(mode="json"))


@router.post("/tasks/{task_id}/complete", response_model=SuccessEnvelope[ManualTaskResponse])
async def complete_task_endpoint(
    task_id: str,
    request: Request,
    payload: CompleteTaskRequest | None = None,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    notes = payload.notes if payload else None
    try:
        task = await complete_manual_task(db, task_id, notes, completed_by=principal.admin_id)
    except StsAccessError as exc:
        raise domain_http_exception(exc) from exc
    return success_response(request=request, data=_task_payload(task).model_dump(mode="json"))


@router.post("/tasks/{task_id}/fail", response_model=SuccessEnvelope[ManualTaskResponse])
async def fail_task_endpoint(
    task_id: str,
    payload: FailTaskRequest,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        task = await fail_manual_task(db, task_id, reason=payload.reason, failed_by=principal.admin_id)
    except StsAccessError as exc:
        raise domain_http_exception(exc) from exc
    return success_response(request=request, data=_task_payload(task).model_dump(mode="json"))


@router.post("/jobs", response_model=SuccessEnvelope[JobResponse], status_code=202)
async def enqueue_job_endpoint(
    payload: EnqueueJobRequest,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
) -> dict:
    # Entry point for purchase and cancellation hooks in the storefront.
    try:
        job_id = await enqueue_provisioning_job(
            payload.strategy_access_id,
            payload.user_id,
            payload.strategy_id,
            action=payload.action,
        )
    except StsAccessError as exc:
        raise domain_http_exception(exc) from exc
    return success_response(request=request, data=JobResponse(job_id=job_id).model_dump())


@router.post("/jobs/resume", response_model=SuccessEnvelope[ResumeJobsResponse])
async def resume_jobs_endpoint(
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
) -> dict:
    resumed = await resume_pending_jobs(actor_id=principal.admin_id)
    return success_response(request=request, data=ResumeJobsResponse(resumed_jobs=resumed).model_dump())


@router.post("/access/{strategy_access_id}/retry", response_model=SuccessEnvelope[JobResponse], status_code=202)
async def retry_access_endpoint(
    strategy_access_id: str,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
) -> dict:
    try:
        job_id = await retry_provisioning(strategy_access_id, actor_id=principal.admin_id)
    except StsAccessError as exc:
        raise domain_http_exception(exc) from exc
    return success_response(request=request, data=JobResponse(job_id=job_id).model_dump())


@router.post("/strategies/{strategy_id}/auto-grant", response_model=SuccessEnvelope[JobResponse], status_code=202)
async def auto_grant_endpoint(
    strategy_id: str,
    request: Request,
    principal: AdminPrincipal = Depends(require_admin),
) -> dict:
    try:
        job_id = await enqueue_bulk_auto_grant(strategy_id)
    except StsAccessError as exc:
        raise domain_http_exception(exc) from exc
    return success_response(request=request, data=JobResponse(job_id=job_id).model_dump())
