from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from printvault.apps.api.deps import Principal, get_current_principal, get_db
from printvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from printvault.apps.api.response import SuccessEnvelope, success_response
from printvault.services.audit import PrinterIdentity
from printvault.services.printing.offline import OfflineTokenService, OfflineUsageReport


router = APIRouter(prefix="/print/offline", tags=["offline"], responses=DEFAULT_ERROR_RESPONSES)


class PrepareRequest(BaseModel):
    redemption_token: str
    machine_guid_hash: str = Field(min_length=16, max_length=128)
    # Offline prints cannot be matched to a printer later, so a name is mandatory.
    printer_name: str = Field(min_length=1, max_length=256)
    printer_type: str | None = Field(default=None, max_length=64)
    port_name: str | None = Field(default=None, max_length=256)
    client_os: str | None = Field(default=None, max_length=128)
    ttl_s: int | None = Field(default=None, gt=0)


class OfflineGrantResponse(BaseModel):
    token: str
    signature: str
    expires_at: datetime
    cache_url: str
    ledger_entry_id: str
    document_id: str
    used_prints: int
    remaining_prints: int
    status: str


class ValidateRequest(BaseModel):
    token: str
    machine_guid_hash: str


class ValidateResponse(BaseModel):
    valid: bool
    document_id: str
    ledger_entry_id: str
    expires_at: datetime


class UsageEntry(BaseModel):
    token: str
    machine_guid_hash: str
    printed_at: datetime
    printer_name: str | None = None
    printer_type: str | None = None
    port_name: str | None = None
    client_os: str | None = None

    @field_validator("printed_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # Clients without an offset report UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ReconcileRequest(BaseModel):
    entries: list[UsageEntry] = Field(min_length=1, max_length=500)


class ReconcileItem(BaseModel):
    token: str
    status: str


class ReconcileResponse(BaseModel):
    results: list[ReconcileItem]


@router.post("/prepare", status_code=201, response_model=SuccessEnvelope[OfflineGrantResponse])
async def prepare(
    request: Request,
    payload: PrepareRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    grant = await OfflineTokenService().prepare(
        db,
        owner_id=principal.user_id,
        redemption_token=payload.redemption_token,
        machine_guid_hash=payload.machine_guid_hash,
        printer=PrinterIdentity(
            printer_name=payload.printer_name,
            printer_type=payload.printer_type,
            port_name=payload.port_name,
            client_os=payload.client_os,
        ),
        ttl_s=payload.ttl_s,
    )
    data = OfflineGrantResponse(
        token=grant.token,
        signature=grant.signature,
        expires_at=grant.expires_at,
        cache_url=grant.cache_url,
        ledger_entry_id=grant.ledger_entry_id,
        document_id=grant.document_id,
        used_prints=grant.used_prints,
        remaining_prints=grant.remaining_prints,
        status=grant.status,
    )
    return success_response(request=request, data=data)


@router.post("/validate", response_model=SuccessEnvelope[ValidateResponse])
async def validate(
    request: Request,
    payload: ValidateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    record = await OfflineTokenService().validate(
        db,
        token=payload.token,
        machine_guid_hash=payload.machine_guid_hash,
        owner_id=principal.user_id,
    )
    data = ValidateResponse(
        valid=True,
        document_id=record.document_id,
        ledger_entry_id=record.ledger_entry_id,
        expires_at=record.expires_at,
    )
    return success_response(request=request, data=data)


@router.post("/reconcile", response_model=SuccessEnvelope[ReconcileResponse])
async def reconcile(
    request: Request,
    payload: ReconcileRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    reports = [
        OfflineUsageReport(
            token=entry.token,
            machine_guid_hash=entry.machine_guid_hash,
            printed_at=entry.printed_at,
            printer=PrinterIdentity(
                printer_name=entry.printer_name,
                printer_type=entry.printer_type,
                port_name=entry.port_name,
                client_os=entry.client_os,
            ),
        )
        for entry in payload.entries
    ]
    results = await OfflineTokenService().reconcile(db, owner_id=principal.user_id, entries=reports)
    data = ReconcileResponse(
        results=[ReconcileItem(token=result.token, status=result.status.value) for result in results]
    )
    return success_response(request=request, data=data)
