from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from printvault.apps.api.deps import Principal, get_current_principal, get_db
from printvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from printvault.apps.api.response import SuccessEnvelope, success_response
from printvault.services.audit import PrinterIdentity
from printvault.services.printing.tokens import confirm_print, fetch_content, issue_print_token


router = APIRouter(prefix="/print", tags=["print"], responses=DEFAULT_ERROR_RESPONSES)


class PrinterInfo(BaseModel):
    printer_name: str | None = Field(default=None, max_length=256)
    printer_type: str | None = Field(default=None, max_length=64)
    port_name: str | None = Field(default=None, max_length=256)
    client_os: str | None = Field(default=None, max_length=128)

    def identity(self) -> PrinterIdentity:
        return PrinterIdentity(
            printer_name=self.printer_name,
            printer_type=self.printer_type,
            port_name=self.port_name,
            client_os=self.client_os,
        )


class IssueTokenRequest(BaseModel):
    redemption_token: str | None = None
    ledger_entry_id: str | None = None
    printer: PrinterInfo = Field(default_factory=PrinterInfo)

    @model_validator(mode="after")
    def _require_reference(self) -> "IssueTokenRequest":
        if not self.redemption_token and not self.ledger_entry_id:
            raise ValueError("redemption_token or ledger_entry_id is required")
        return self


class PrintTokenResponse(BaseModel):
    token: str
    expires_at: datetime
    ledger_entry_id: str
    document_id: str
    content_url: str
    remaining_prints: int


class ConfirmRequest(BaseModel):
    token: str
    printer: PrinterInfo = Field(default_factory=PrinterInfo)


class ConfirmResponse(BaseModel):
    used_prints: int
    remaining_prints: int
    status: str


@router.post("/tokens", status_code=201, response_model=SuccessEnvelope[PrintTokenResponse])
async def issue_token(
    request: Request,
    payload: IssueTokenRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    grant = await issue_print_token(
        db,
        owner_id=principal.user_id,
        redemption_token=payload.redemption_token,
        ledger_entry_id=payload.ledger_entry_id,
        printer=payload.printer.identity(),
    )
    data = PrintTokenResponse(
        token=grant.token,
        expires_at=grant.expires_at,
        ledger_entry_id=grant.ledger_entry_id,
        document_id=grant.document_id,
        content_url=grant.content_url,
        remaining_prints=grant.remaining_prints,
    )
    return success_response(request=request, data=data)


# Raw document bytes; the envelope does not apply to binary content.
@router.get("/content/{token}", response_class=Response)
async def get_content(
    token: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> Response:
    content = await fetch_content(db, token=token, owner_id=principal.user_id)
    return Response(
        content=content.data,
        media_type=content.mime_type,
        headers={"Cache-Control": "no-store", "X-Document-Id": content.document_id},
    )


@router.post("/confirm", response_model=SuccessEnvelope[ConfirmResponse])
async def confirm(
    request: Request,
    payload: ConfirmRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await confirm_print(
        db,
        token=payload.token,
        owner_id=principal.user_id,
        printer=payload.printer.identity(),
    )
    data = ConfirmResponse(
        used_prints=result.used_prints,
        remaining_prints=result.remaining_prints,
        status=result.status,
    )
    return success_response(request=request, data=data)
