from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from printvault.domain.models import PrintAuditEvent


async def list_events(
    session: AsyncSession,
    *,
    actor_id: str | None = None,
    event_type: str | None = None,
    outcome: str | None = None,
    document_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[PrintAuditEvent]:
    stmt = select(PrintAuditEvent)
    if actor_id:
        stmt = stmt.where(PrintAuditEvent.actor_id == actor_id)
    if event_type:
        stmt = stmt.where(PrintAuditEvent.event_type == event_type)
    if outcome:
        stmt = stmt.where(PrintAuditEvent.outcome == outcome)
    if document_id:
        stmt = stmt.where(PrintAuditEvent.document_id == document_id)
    if occurred_from:
        stmt = stmt.where(PrintAuditEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(PrintAuditEvent.occurred_at <= occurred_to)

    stmt = stmt.order_by(PrintAuditEvent.occurred_at.desc(), PrintAuditEvent.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
