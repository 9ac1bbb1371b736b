from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from printvault.apps.api.deps import Principal, get_current_principal, get_db, require_admin
from printvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from printvault.apps.api.response import SuccessEnvelope, success_response
from printvault.services.render.assignments import get_job_status, job_view
from printvault.services.render.coordinator import RenderCoordinator


router = APIRouter(prefix="/jobs", tags=["jobs"], responses=DEFAULT_ERROR_RESPONSES)


class SubmitJobRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=128)
    # Validated page by page by the coordinator so errors carry the page index.
    layout_pages: list[dict[str, Any]]
    assigned_quota: int


@router.post("", status_code=202, response_model=SuccessEnvelope[dict[str, Any]])
async def submit_job(
    request: Request,
    payload: SubmitJobRequest,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    job = await RenderCoordinator().submit(
        db,
        owner_id=payload.owner_id,
        layout_pages=payload.layout_pages,
        assigned_quota=payload.assigned_quota,
        created_by=principal.user_id,
    )
    return success_response(request=request, data=job_view(job))


@router.get("/{job_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def job_status(
    request: Request,
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    view = await get_job_status(
        db,
        job_id=job_id,
        owner_id=principal.user_id,
        is_admin=principal.is_admin,
    )
    return success_response(request=request, data=view)
