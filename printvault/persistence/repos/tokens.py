from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from printvault.domain.models import OfflineToken, PrintToken


async def get_print_token(session: AsyncSession, token: str) -> PrintToken | None:
    result = await session.execute(
        select(PrintToken).where(PrintToken.token == token).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_in_flight(
    session: AsyncSession, *, owner_id: str, ledger_entry_id: str, now: datetime
) -> PrintToken | None:
    # Minted but not yet fetched and not yet expired.
    result = await session.execute(
        select(PrintToken)
        .where(
            PrintToken.owner_id == owner_id,
            PrintToken.ledger_entry_id == ledger_entry_id,
            PrintToken.fetched_at.is_(None),
            PrintToken.used_at.is_(None),
            PrintToken.invalidated_at.is_(None),
            PrintToken.expires_at > now,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def mark_fetched(session: AsyncSession, token_id: str, *, now: datetime) -> bool:
    # Exactly one concurrent fetch sees rowcount 1.
    result = await session.execute(
        update(PrintToken)
        .where(
            PrintToken.id == token_id,
            PrintToken.fetched_at.is_(None),
            PrintToken.invalidated_at.is_(None),
            PrintToken.expires_at > now,
        )
        .values(fetched_at=now, fetch_count=PrintToken.fetch_count + 1)
    )
    return (result.rowcount or 0) == 1


async def mark_used(
    session: AsyncSession,
    token_id: str,
    *,
    now: datetime,
    printer_name: str | None,
    printer_type: str | None,
    port_name: str | None,
    client_os: str | None,
) -> bool:
    result = await session.execute(
        update(PrintToken)
        .where(
            PrintToken.id == token_id,
            PrintToken.fetched_at.is_not(None),
            PrintToken.used_at.is_(None),
        )
        .values(
            used_at=now,
            printer_name=printer_name,
            printer_type=printer_type,
            port_name=port_name,
            client_os=client_os,
        )
    )
    return (result.rowcount or 0) == 1


async def invalidate_outstanding(
    session: AsyncSession, ledger_entry_id: str, *, now: datetime, keep_token_id: str | None = None
) -> int:
    # Outstanding tokens of an exhausted entry can no longer be confirmed.
    stmt = update(PrintToken).where(
        PrintToken.ledger_entry_id == ledger_entry_id,
        PrintToken.used_at.is_(None),
        PrintToken.invalidated_at.is_(None),
    )
    if keep_token_id is not None:
        stmt = stmt.where(PrintToken.id != keep_token_id)
    result = await session.execute(stmt.values(invalidated_at=now))
    return int(result.rowcount or 0)


async def prune_print_tokens(session: AsyncSession, *, expired_before: datetime) -> int:
    # Drop unused tokens past retention; used tokens stay as history.
    result = await session.execute(
        delete(PrintToken).where(
            PrintToken.used_at.is_(None),
            or_(PrintToken.expires_at < expired_before, PrintToken.invalidated_at < expired_before),
        )
    )
    return int(result.rowcount or 0)


async def get_offline_token(session: AsyncSession, token: str) -> OfflineToken | None:
    result = await session.execute(
        select(OfflineToken).where(OfflineToken.token == token).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def mark_offline_reconciled(
    session: AsyncSession,
    token_id: str,
    *,
    used_at: datetime,
    reconciled_at: datetime,
    printer_name: str | None,
    printer_type: str | None,
    port_name: str | None,
    client_os: str | None,
) -> bool:
    # Reconciliation is idempotent: the second report for a token matches nothing.
    result = await session.execute(
        update(OfflineToken)
        .where(
            OfflineToken.id == token_id,
            OfflineToken.used_at.is_(None),
            OfflineToken.reconciled_at.is_(None),
        )
        .values(
            used_at=used_at,
            reconciled_at=reconciled_at,
            printer_name=printer_name or OfflineToken.printer_name,
            printer_type=printer_type,
            port_name=port_name,
            client_os=client_os,
        )
    )
    return (result.rowcount or 0) == 1
