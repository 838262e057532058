from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from stsaccess.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stsaccess.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    # Process liveness only; upstream provider health lives under the admin state endpoint.
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload.model_dump())
