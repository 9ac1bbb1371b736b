from __future__ import annotations

import hashlib
import io
from uuid import uuid4

from pypdf import PdfWriter

from printvault.domain.models import AccessLedgerEntry, Document
from printvault.persistence.db import SessionLocal
from printvault.services.printing.ledger import assign_document, register_source_document


def blank_pdf(pages: int = 1) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=595, height=842)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def machine_hash(name: str = "workstation-1") -> str:
    return hashlib.sha256(name.encode("utf-8")).hexdigest()


def page_layout(width_mm: float = 210, height_mm: float = 297) -> dict:
    return {
        "page": {"widthMm": width_mm, "heightMm": height_mm},
        "items": [{"type": "text", "text": "hello", "xMm": 10, "yMm": 10}],
    }


async def seed_assignment(
    *, owner_id: str | None = None, quota: int = 3, title: str = "Certificate"
) -> tuple[Document, AccessLedgerEntry]:
    # Upload a one-page source PDF and grant `quota` prints of it to the owner.
    owner_id = owner_id or f"user-{uuid4().hex[:8]}"
    async with SessionLocal() as session:
        document = await register_source_document(
            session, title=title, data=blank_pdf(), created_by="admin"
        )
        entry = await assign_document(
            session, owner_id=owner_id, document_id=document.id, assigned_quota=quota
        )
    return document, entry
