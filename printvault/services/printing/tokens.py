from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from printvault.core.config import get_settings
from printvault.core.errors import (
    AlreadyInFlightError,
    AlreadyUsedError,
    ExpiredError,
    NotFetchedError,
    NotFoundError,
    PrintVaultError,
    QuotaExceededError,
)
from printvault.domain.models import PrintToken, utc_now
from printvault.domain.states import LedgerStatus
from printvault.persistence.counters import AtomicCounterStore
from printvault.persistence.repos import documents as documents_repo
from printvault.persistence.repos import ledger as ledger_repo
from printvault.persistence.repos import tokens as tokens_repo
from printvault.providers.storage.base import ObjectStore
from printvault.providers.storage.factory import get_object_store
from printvault.services.audit import EVENT_PRINT_CONFIRMED, PrinterIdentity, record_print_event
from printvault.services.printing.ledger import content_url, ensure_printable, remaining_prints, resolve_entry
from printvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrintTokenGrant:
    token: str
    expires_at: datetime
    ledger_entry_id: str
    document_id: str
    content_url: str
    remaining_prints: int


@dataclass(frozen=True)
class FetchedContent:
    data: bytes
    mime_type: str
    document_id: str


@dataclass(frozen=True)
class ConfirmResult:
    used_prints: int
    remaining_prints: int
    status: str


def new_token() -> str:
    return secrets.token_urlsafe(32)


async def issue_print_token(
    session: AsyncSession,
    *,
    owner_id: str,
    redemption_token: str | None = None,
    ledger_entry_id: str | None = None,
    printer: PrinterIdentity | None = None,
) -> PrintTokenGrant:
    """Mint a short-lived, single-use print token.

    Issuance never charges quota. The guarded touch on the ledger row runs
    first so concurrent issuers for one entry serialize before the in-flight
    check; only one of them can insert a token.
    """
    settings = get_settings()
    printer = printer or PrinterIdentity()
    entry = await resolve_entry(
        session,
        owner_id=owner_id,
        redemption_token=redemption_token,
        ledger_entry_id=ledger_entry_id,
    )
    ensure_printable(entry)
    # A rollback expires loaded rows; keep what the errors need as plain values.
    entry_id = entry.id
    now = utc_now()
    if not await ledger_repo.touch_if_printable(session, entry_id):
        await session.rollback()
        raise QuotaExceededError("Print quota exhausted", ledger_entry_id=entry_id)
    in_flight = await tokens_repo.find_in_flight(
        session, owner_id=owner_id, ledger_entry_id=entry_id, now=now
    )
    if in_flight is not None:
        in_flight_expires_at = in_flight.expires_at.isoformat()
        await session.rollback()
        raise AlreadyInFlightError(
            "A print token is already outstanding for this document",
            ledger_entry_id=entry_id,
            expires_at=in_flight_expires_at,
        )
    token = PrintToken(
        id=uuid4().hex,
        token=new_token(),
        owner_id=owner_id,
        document_id=entry.document_id,
        ledger_entry_id=entry.id,
        expires_at=now + timedelta(seconds=settings.print_token_ttl_s),
        printer_name=printer.printer_name,
        printer_type=printer.printer_type,
        port_name=printer.port_name,
        client_os=printer.client_os,
    )
    session.add(token)
    await session.commit()
    increment_counter("print_tokens_issued_total")
    logger.info("print_token_issued owner_id=%s ledger_entry_id=%s", owner_id, entry.id)
    return PrintTokenGrant(
        token=token.token,
        expires_at=token.expires_at,
        ledger_entry_id=entry.id,
        document_id=entry.document_id,
        content_url=content_url(token.token),
        remaining_prints=remaining_prints(entry),
    )


async def _load_document_bytes(
    session: AsyncSession, document_id: str, store: ObjectStore
) -> tuple[bytes, str]:
    document = await documents_repo.get_document(session, document_id)
    if document is None:
        raise NotFoundError("Document not found", document_id=document_id)
    return await store.get(document.storage_key), document.mime_type


async def fetch_content(
    session: AsyncSession,
    *,
    token: str,
    owner_id: str,
    store: ObjectStore | None = None,
) -> FetchedContent:
    """Return document bytes for a token, at most once per print token.

    Bytes are loaded before the conditional fetch marker is written, so an
    object store failure does not burn the token; of several concurrent
    fetches only the one whose update matches returns content.
    """
    store = store or get_object_store()
    record = await tokens_repo.get_print_token(session, token)
    if record is None:
        from printvault.services.printing.offline import fetch_offline_content

        return await fetch_offline_content(session, token=token, owner_id=owner_id, store=store)
    if record.owner_id != owner_id:
        raise NotFoundError("Print token not found")
    now = utc_now()
    if record.invalidated_at is not None:
        raise QuotaExceededError("Print quota exhausted", ledger_entry_id=record.ledger_entry_id)
    if record.fetched_at is not None:
        raise AlreadyUsedError("Print token already fetched")
    if now > record.expires_at:
        raise ExpiredError("Print token expired", expires_at=record.expires_at.isoformat())

    data, mime_type = await _load_document_bytes(session, record.document_id, store)
    if not await tokens_repo.mark_fetched(session, record.id, now=utc_now()):
        await session.rollback()
        raise AlreadyUsedError("Print token already fetched")
    await session.commit()
    increment_counter("print_tokens_fetched_total")
    return FetchedContent(data=data, mime_type=mime_type, document_id=record.document_id)


async def confirm_print(
    session: AsyncSession,
    *,
    token: str,
    owner_id: str,
    printer: PrinterIdentity | None = None,
) -> ConfirmResult:
    """Record a physical print and charge one unit of quota.

    The token's `used_at` and the ledger increment commit together; reaching
    the quota exhausts the entry in the same transaction. An audit row is
    written whatever the outcome.
    """
    printer = printer or PrinterIdentity()
    record = await tokens_repo.get_print_token(session, token)
    if record is None or record.owner_id != owner_id:
        raise NotFoundError("Print token not found")
    audit_context = {
        "actor_id": owner_id,
        "event_type": EVENT_PRINT_CONFIRMED,
        "document_id": record.document_id,
        "ledger_entry_id": record.ledger_entry_id,
        "printer": printer,
    }
    try:
        result = await _confirm(session, record, printer=printer)
    except PrintVaultError as exc:
        await session.rollback()
        await record_print_event(outcome="failure", error_code=exc.code, **audit_context)
        raise
    increment_counter("prints_confirmed_total")
    logger.info(
        "print_confirmed owner_id=%s ledger_entry_id=%s used=%s status=%s",
        owner_id,
        record.ledger_entry_id,
        result.used_prints,
        result.status,
    )
    return result


async def _confirm(session: AsyncSession, record: PrintToken, *, printer: PrinterIdentity) -> ConfirmResult:
    now = utc_now()
    if record.used_at is not None:
        raise AlreadyUsedError("Print already confirmed for this token")
    if record.fetched_at is None:
        raise NotFetchedError("Content must be fetched before confirming a print")
    if record.invalidated_at is not None:
        raise QuotaExceededError("Print quota exhausted", ledger_entry_id=record.ledger_entry_id)
    if now > record.expires_at:
        raise ExpiredError("Print token expired", expires_at=record.expires_at.isoformat())

    marked = await tokens_repo.mark_used(
        session,
        record.id,
        now=now,
        printer_name=printer.printer_name,
        printer_type=printer.printer_type,
        port_name=printer.port_name,
        client_os=printer.client_os,
    )
    if not marked:
        raise AlreadyUsedError("Print already confirmed for this token")
    usage: AtomicCounterStore = ledger_repo.LedgerUsageCounter()
    counter = await usage.increment(session, record.ledger_entry_id)
    if counter is None:
        raise QuotaExceededError("Print quota exhausted", ledger_entry_id=record.ledger_entry_id)

    status = LedgerStatus.ACTIVE.value
    if counter.reached:
        await ledger_repo.mark_exhausted(session, record.ledger_entry_id, now=now)
        await tokens_repo.invalidate_outstanding(
            session, record.ledger_entry_id, now=now, keep_token_id=record.id
        )
        status = LedgerStatus.EXHAUSTED.value
    await record_print_event(
        session=session,
        actor_id=record.owner_id,
        event_type=EVENT_PRINT_CONFIRMED,
        outcome="success",
        document_id=record.document_id,
        ledger_entry_id=record.ledger_entry_id,
        printer=printer,
        metadata={"used_prints": counter.value, "assigned_quota": counter.limit},
    )
    await session.commit()
    return ConfirmResult(
        used_prints=counter.value,
        remaining_prints=max(counter.limit - counter.value, 0),
        status=status,
    )


async def gc_expired_tokens(session: AsyncSession, *, now: datetime | None = None) -> int:
    settings = get_settings()
    cutoff = (now or utc_now()) - timedelta(seconds=settings.print_token_retention_s)
    deleted = await tokens_repo.prune_print_tokens(session, expired_before=cutoff)
    await session.commit()
    if deleted:
        logger.info("print_tokens_pruned count=%s cutoff=%s", deleted, cutoff.isoformat())
    return deleted
