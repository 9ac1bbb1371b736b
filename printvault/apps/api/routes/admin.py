from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from printvault.apps.api.deps import Principal, get_db, require_admin
from printvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from printvault.apps.api.response import SuccessEnvelope, success_response
from printvault.persistence.repos import audit as audit_repo
from printvault.services.printing.ledger import assign_document, register_source_document, remaining_prints


router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)

_MAX_UPLOAD_BYTES = 50 * 1024 * 1024


class AssignRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=128)
    assigned_quota: int = Field(gt=0)


@router.post("/documents", status_code=201, response_model=SuccessEnvelope[dict[str, Any]])
async def register_document(
    request: Request,
    title: str = Form(..., min_length=1, max_length=512),
    file: UploadFile = File(...),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = await file.read()
    if not body:
        raise HTTPException(status_code=400, detail="File is required")
    if len(body) > _MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail={"code": "PAYLOAD_TOO_LARGE", "message": "File too large"})
    document = await register_source_document(
        db,
        title=title.strip(),
        data=body,
        mime_type=file.content_type or "application/pdf",
        created_by=principal.user_id,
    )
    data = {
        "document_id": document.id,
        "title": document.title,
        "mime_type": document.mime_type,
        "kind": document.kind,
    }
    return success_response(request=request, data=data)


@router.post("/documents/{document_id}/assignments", status_code=201, response_model=SuccessEnvelope[dict[str, Any]])
async def assign(
    request: Request,
    document_id: str,
    payload: AssignRequest,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    entry = await assign_document(
        db,
        owner_id=payload.owner_id,
        document_id=document_id,
        assigned_quota=payload.assigned_quota,
    )
    data = {
        "ledger_entry_id": entry.id,
        "owner_id": entry.owner_id,
        "document_id": entry.document_id,
        "assigned_quota": entry.assigned_quota,
        "used_prints": entry.used_prints,
        "remaining_prints": remaining_prints(entry),
        "status": entry.status,
        "redemption_token": entry.redemption_token,
    }
    return success_response(request=request, data=data)


@router.get("/audit/events", response_model=SuccessEnvelope[dict[str, Any]])
async def audit_events(
    request: Request,
    actor_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    outcome: str | None = Query(default=None),
    document_id: str | None = Query(default=None),
    occurred_from: datetime | None = Query(default=None),
    occurred_to: datetime | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    events = await audit_repo.list_events(
        db,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        document_id=document_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
        offset=offset,
        limit=limit,
    )
    items = [
        {
            "id": event.id,
            "occurred_at": event.occurred_at.isoformat(),
            "actor_id": event.actor_id,
            "event_type": event.event_type,
            "outcome": event.outcome,
            "document_id": event.document_id,
            "ledger_entry_id": event.ledger_entry_id,
            "printer_name": event.printer_name,
            "error_code": event.error_code,
            "metadata": event.metadata_json or {},
        }
        for event in events
    ]
    next_offset = offset + limit if len(items) == limit else None
    return success_response(request=request, data={"items": items, "next_offset": next_offset})
