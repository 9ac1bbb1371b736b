from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from printvault.domain.models import Document
from printvault.domain.states import DocumentKind


async def create_document(
    session: AsyncSession,
    *,
    document_id: str,
    title: str,
    storage_key: str,
    mime_type: str = "application/pdf",
    kind: DocumentKind = DocumentKind.SOURCE,
    created_by: str | None = None,
) -> Document:
    # Documents are immutable once created; new content means a new row.
    doc = Document(
        id=document_id,
        title=title,
        storage_key=storage_key,
        mime_type=mime_type,
        kind=kind.value,
        created_by=created_by,
    )
    session.add(doc)
    return doc


async def get_document(session: AsyncSession, document_id: str) -> Document | None:
    result = await session.execute(select(Document).where(Document.id == document_id))
    return result.scalar_one_or_none()


async def get_documents(session: AsyncSession, document_ids: list[str]) -> dict[str, Document]:
    if not document_ids:
        return {}
    result = await session.execute(select(Document).where(Document.id.in_(document_ids)))
    return {doc.id: doc for doc in result.scalars().all()}
