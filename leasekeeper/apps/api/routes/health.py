from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from leasekeeper.apps.api.deps import get_storage
from leasekeeper.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from leasekeeper.apps.api.response import SuccessEnvelope, error_response, success_response
from leasekeeper.providers.storage.base import StorageProvider

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class StorageHealthResponse(BaseModel):
    status: str
    ready: bool
    reason: str | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload.model_dump())


@router.get("/health/storage", response_model=SuccessEnvelope[StorageHealthResponse])
async def storage_health(
    request: Request,
    storage: StorageProvider = Depends(get_storage),
):
    # Readiness probe only; object-level failures show up in download audit rows.
    readiness = await storage.probe_readiness()
    if not readiness.ready:
        return JSONResponse(
            status_code=503,
            content=error_response(
                request=request,
                code="SERVICE_UNAVAILABLE",
                message="Artifact storage is not ready",
                details={"reason": readiness.reason},
            ),
        )
    payload = StorageHealthResponse(status="ok", ready=True)
    return success_response(request=request, data=payload.model_dump())
