from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from printvault.domain.models import AccessLedgerEntry, utc_now
from printvault.domain.states import LedgerStatus
from printvault.persistence.counters import CounterValue


def new_redemption_token() -> str:
    return uuid4().hex


async def get_entry(session: AsyncSession, entry_id: str) -> AccessLedgerEntry | None:
    result = await session.execute(
        select(AccessLedgerEntry)
        .where(AccessLedgerEntry.id == entry_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_by_redemption_token(session: AsyncSession, token: str) -> AccessLedgerEntry | None:
    # Exhausted entries have no token, so stale clients resolve to None here.
    result = await session.execute(
        select(AccessLedgerEntry)
        .where(AccessLedgerEntry.redemption_token == token)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_for_owner_document(
    session: AsyncSession, owner_id: str, document_id: str
) -> AccessLedgerEntry | None:
    result = await session.execute(
        select(AccessLedgerEntry).where(
            AccessLedgerEntry.owner_id == owner_id,
            AccessLedgerEntry.document_id == document_id,
        )
    )
    return result.scalar_one_or_none()


async def list_for_owner(
    session: AsyncSession, owner_id: str, *, status: LedgerStatus | None = None
) -> list[AccessLedgerEntry]:
    stmt = select(AccessLedgerEntry).where(AccessLedgerEntry.owner_id == owner_id)
    if status is not None:
        stmt = stmt.where(AccessLedgerEntry.status == status.value)
    result = await session.execute(stmt.order_by(AccessLedgerEntry.created_at.desc(), AccessLedgerEntry.id))
    return list(result.scalars().all())


async def create_entry(
    session: AsyncSession,
    *,
    owner_id: str,
    document_id: str,
    assigned_quota: int,
) -> AccessLedgerEntry:
    entry = AccessLedgerEntry(
        id=uuid4().hex,
        owner_id=owner_id,
        document_id=document_id,
        assigned_quota=assigned_quota,
        used_prints=0,
        status=LedgerStatus.ACTIVE.value,
        redemption_token=new_redemption_token(),
    )
    session.add(entry)
    return entry


async def raise_quota(session: AsyncSession, entry_id: str, assigned_quota: int) -> bool:
    """Change the quota of a live entry without touching its usage.

    Exhausted entries stay exhausted, and the new quota must leave at least
    one print so the entry cannot become full without passing through
    `mark_exhausted`.
    """
    result = await session.execute(
        update(AccessLedgerEntry)
        .where(
            AccessLedgerEntry.id == entry_id,
            AccessLedgerEntry.status == LedgerStatus.ACTIVE.value,
            AccessLedgerEntry.used_prints < assigned_quota,
        )
        .values(assigned_quota=assigned_quota, updated_at=utc_now())
    )
    return (result.rowcount or 0) == 1


async def touch_if_printable(session: AsyncSession, entry_id: str) -> bool:
    """Take the entry's write lock and check it still has quota.

    Issuers run this first in their transaction so concurrent mints for the
    same entry serialize on the row; it changes nothing but `updated_at`.
    """
    result = await session.execute(
        update(AccessLedgerEntry)
        .where(
            AccessLedgerEntry.id == entry_id,
            AccessLedgerEntry.status == LedgerStatus.ACTIVE.value,
            AccessLedgerEntry.used_prints < AccessLedgerEntry.assigned_quota,
        )
        .values(updated_at=utc_now())
    )
    return (result.rowcount or 0) == 1


class LedgerUsageCounter:
    """Compare-and-increment on `used_prints` bounded by `assigned_quota`."""

    async def increment(self, session: AsyncSession, record_id: str) -> CounterValue | None:
        result = await session.execute(
            update(AccessLedgerEntry)
            .where(
                AccessLedgerEntry.id == record_id,
                AccessLedgerEntry.status == LedgerStatus.ACTIVE.value,
                AccessLedgerEntry.used_prints < AccessLedgerEntry.assigned_quota,
            )
            .values(used_prints=AccessLedgerEntry.used_prints + 1)
            .returning(AccessLedgerEntry.used_prints, AccessLedgerEntry.assigned_quota)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return CounterValue(value=int(row[0]), limit=int(row[1]))


async def mark_exhausted(session: AsyncSession, entry_id: str, *, now: datetime) -> bool:
    # Only flips entries that actually reached their quota.
    result = await session.execute(
        update(AccessLedgerEntry)
        .where(
            AccessLedgerEntry.id == entry_id,
            AccessLedgerEntry.status == LedgerStatus.ACTIVE.value,
            AccessLedgerEntry.used_prints >= AccessLedgerEntry.assigned_quota,
        )
        .values(status=LedgerStatus.EXHAUSTED.value, redemption_token=None, exhausted_at=now)
    )
    return (result.rowcount or 0) == 1
