from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from printvault.apps.api.deps import Principal, get_current_principal, get_db
from printvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from printvault.apps.api.response import SuccessEnvelope, success_response
from printvault.services.render.assignments import assigned_summary, list_assigned


router = APIRouter(prefix="/assigned", tags=["assigned"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("", response_model=SuccessEnvelope[dict[str, Any]])
async def assigned(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    items = await list_assigned(db, owner_id=principal.user_id)
    return success_response(request=request, data={"items": items})


@router.get("/summary", response_model=SuccessEnvelope[dict[str, Any]])
async def summary(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await assigned_summary(db, owner_id=principal.user_id)
    return success_response(request=request, data=asdict(result))
