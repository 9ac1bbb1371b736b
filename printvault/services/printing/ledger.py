from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from printvault.core.config import get_settings
from printvault.core.errors import ConflictError, NotFoundError, QuotaExceededError
from printvault.domain.models import AccessLedgerEntry, Document
from printvault.domain.states import DocumentKind, LedgerStatus
from printvault.persistence.repos import documents as documents_repo
from printvault.persistence.repos import ledger as ledger_repo
from printvault.providers.storage.base import ObjectStore
from printvault.providers.storage.factory import get_object_store


logger = logging.getLogger(__name__)


def remaining_prints(entry: AccessLedgerEntry) -> int:
    return max(int(entry.assigned_quota) - int(entry.used_prints), 0)


def is_printable(entry: AccessLedgerEntry) -> bool:
    return entry.status == LedgerStatus.ACTIVE.value and entry.used_prints < entry.assigned_quota


async def resolve_entry(
    session: AsyncSession,
    *,
    owner_id: str,
    redemption_token: str | None = None,
    ledger_entry_id: str | None = None,
) -> AccessLedgerEntry:
    # Entries owned by someone else are reported as missing, never as forbidden.
    entry = None
    if redemption_token:
        entry = await ledger_repo.get_by_redemption_token(session, redemption_token)
    elif ledger_entry_id:
        entry = await ledger_repo.get_entry(session, ledger_entry_id)
    if entry is None or entry.owner_id != owner_id:
        raise NotFoundError("Ledger entry not found")
    return entry


def ensure_printable(entry: AccessLedgerEntry) -> None:
    if not is_printable(entry):
        raise QuotaExceededError(
            "Print quota exhausted",
            ledger_entry_id=entry.id,
            used_prints=entry.used_prints,
            assigned_quota=entry.assigned_quota,
        )


async def create_or_adjust_entry(
    session: AsyncSession,
    *,
    owner_id: str,
    document_id: str,
    assigned_quota: int,
) -> AccessLedgerEntry:
    """Create the ledger entry for (owner, document), or adjust its quota.

    An existing entry keeps its usage, status and redemption token; more
    prints on an exhausted entry need a new document.
    """
    entry = await ledger_repo.get_for_owner_document(session, owner_id, document_id)
    if entry is None:
        entry = await ledger_repo.create_entry(
            session,
            owner_id=owner_id,
            document_id=document_id,
            assigned_quota=assigned_quota,
        )
        await session.flush()
        return entry
    entry_id = entry.id
    if not await ledger_repo.raise_quota(session, entry_id, assigned_quota):
        await session.rollback()
        raise ConflictError(
            "Ledger entry is exhausted or already uses the requested quota",
            ledger_entry_id=entry_id,
            assigned_quota=assigned_quota,
        )
    return await ledger_repo.get_entry(session, entry_id) or entry


async def register_source_document(
    session: AsyncSession,
    *,
    title: str,
    data: bytes,
    mime_type: str = "application/pdf",
    created_by: str | None = None,
    store: ObjectStore | None = None,
) -> Document:
    # Upload first so a Document row never points at a missing object.
    store = store or get_object_store()
    document_id = uuid4().hex
    key = f"source/{document_id}.pdf"
    await store.put(key, data, mime_type)
    document = await documents_repo.create_document(
        session,
        document_id=document_id,
        title=title,
        storage_key=key,
        mime_type=mime_type,
        kind=DocumentKind.SOURCE,
        created_by=created_by,
    )
    await session.commit()
    logger.info("source_document_registered document_id=%s key=%s", document_id, key)
    return document


async def assign_document(
    session: AsyncSession,
    *,
    owner_id: str,
    document_id: str,
    assigned_quota: int,
) -> AccessLedgerEntry:
    if await documents_repo.get_document(session, document_id) is None:
        raise NotFoundError("Document not found", document_id=document_id)
    entry = await create_or_adjust_entry(
        session,
        owner_id=owner_id,
        document_id=document_id,
        assigned_quota=assigned_quota,
    )
    await session.commit()
    logger.info(
        "document_assigned owner_id=%s document_id=%s quota=%s",
        owner_id,
        document_id,
        assigned_quota,
    )
    return entry


def content_url(token: str) -> str:
    return f"{get_settings().content_url_prefix.rstrip('/')}/{token}"
