from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from printvault.core.config import Settings, get_settings
from printvault.core.errors import (
    AlreadyUsedError,
    ExpiredError,
    FeatureDisabledError,
    InvalidSignatureError,
    MachineMismatchError,
    NotFoundError,
    QuotaExceededError,
)
from printvault.domain.models import OfflineToken, utc_now
from printvault.domain.states import LedgerStatus
from printvault.persistence.counters import AtomicCounterStore
from printvault.persistence.repos import documents as documents_repo
from printvault.persistence.repos import ledger as ledger_repo
from printvault.persistence.repos import tokens as tokens_repo
from printvault.providers.storage.base import ObjectStore
from printvault.providers.storage.factory import get_object_store
from printvault.services.audit import (
    EVENT_OFFLINE_PREPARED,
    EVENT_OFFLINE_RECONCILED,
    PrinterIdentity,
    record_print_event,
)
from printvault.services.printing.ledger import content_url, ensure_printable, resolve_entry
from printvault.services.printing.tokens import FetchedContent
from printvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Client clocks drift while offline; tolerate small skew on reported print times.
_CLOCK_SKEW = timedelta(minutes=5)


class ReconcileStatus(str, Enum):
    RECONCILED = "reconciled"
    NOT_FOUND = "not_found"
    ALREADY_USED = "already_used"
    MACHINE_MISMATCH = "machine_mismatch"
    TIME_INVALID = "time_invalid"


@dataclass(frozen=True)
class OfflineGrant:
    token: str
    signature: str
    expires_at: datetime
    cache_url: str
    ledger_entry_id: str
    document_id: str
    used_prints: int
    remaining_prints: int
    status: str


@dataclass(frozen=True)
class OfflineUsageReport:
    token: str
    machine_guid_hash: str
    printed_at: datetime
    printer: PrinterIdentity


@dataclass(frozen=True)
class ReconcileResult:
    token: str
    status: ReconcileStatus


def ensure_offline_enabled(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    if not settings.offline_tokens_enabled:
        raise FeatureDisabledError("Offline printing is disabled")


class OfflineTokenService:
    """Machine-bound tokens redeemable without a live connection.

    Quota is charged when the token is prepared, so reconciliation only
    records what happened offline and never touches the ledger.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def _ensure_enabled(self) -> None:
        ensure_offline_enabled(self._settings)

    def _resolve_ttl(self, ttl_s: int | None) -> int:
        if ttl_s is None or ttl_s <= 0:
            ttl_s = self._settings.offline_token_default_ttl_s
        return min(int(ttl_s), self._settings.offline_token_max_ttl_s)

    def sign(self, record: OfflineToken) -> str:
        claims = "|".join(
            [
                record.token,
                record.owner_id,
                record.document_id,
                record.ledger_entry_id,
                record.machine_guid_hash,
                record.issued_at.isoformat(),
                record.expires_at.isoformat(),
            ]
        )
        return hmac.new(
            self._settings.offline_token_secret.encode("utf-8"),
            claims.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    async def prepare(
        self,
        session: AsyncSession,
        *,
        owner_id: str,
        redemption_token: str,
        machine_guid_hash: str,
        printer: PrinterIdentity,
        ttl_s: int | None = None,
    ) -> OfflineGrant:
        self._ensure_enabled()
        entry = await resolve_entry(session, owner_id=owner_id, redemption_token=redemption_token)
        ensure_printable(entry)
        entry_id = entry.id
        now = utc_now()
        # Charge first: the same guarded increment used by online confirms.
        usage: AtomicCounterStore = ledger_repo.LedgerUsageCounter()
        counter = await usage.increment(session, entry_id)
        if counter is None:
            await session.rollback()
            raise QuotaExceededError("Print quota exhausted", ledger_entry_id=entry_id)
        status = LedgerStatus.ACTIVE.value
        if counter.reached:
            await ledger_repo.mark_exhausted(session, entry.id, now=now)
            await tokens_repo.invalidate_outstanding(session, entry.id, now=now)
            status = LedgerStatus.EXHAUSTED.value

        record = OfflineToken(
            id=uuid4().hex,
            token=secrets.token_hex(32),
            owner_id=owner_id,
            document_id=entry.document_id,
            ledger_entry_id=entry.id,
            machine_guid_hash=machine_guid_hash,
            signature="",
            printer_name=printer.printer_name or "unknown",
            printer_type=printer.printer_type,
            port_name=printer.port_name,
            client_os=printer.client_os,
            issued_at=now,
            expires_at=now + timedelta(seconds=self._resolve_ttl(ttl_s)),
        )
        record.signature = self.sign(record)
        session.add(record)
        await record_print_event(
            session=session,
            actor_id=owner_id,
            event_type=EVENT_OFFLINE_PREPARED,
            outcome="success",
            document_id=entry.document_id,
            ledger_entry_id=entry.id,
            printer=printer,
            metadata={"used_prints": counter.value, "assigned_quota": counter.limit},
        )
        await session.commit()
        increment_counter("offline_tokens_prepared_total")
        logger.info("offline_token_prepared owner_id=%s ledger_entry_id=%s", owner_id, entry.id)
        return OfflineGrant(
            token=record.token,
            signature=record.signature,
            expires_at=record.expires_at,
            cache_url=content_url(record.token),
            ledger_entry_id=entry.id,
            document_id=entry.document_id,
            used_prints=counter.value,
            remaining_prints=max(counter.limit - counter.value, 0),
            status=status,
        )

    async def validate(
        self,
        session: AsyncSession,
        *,
        token: str,
        machine_guid_hash: str,
        owner_id: str | None = None,
    ) -> OfflineToken:
        # Read-only: validation never consumes the token or the ledger.
        self._ensure_enabled()
        record = await tokens_repo.get_offline_token(session, token)
        if record is None or (owner_id is not None and record.owner_id != owner_id):
            raise NotFoundError("Offline token not found")
        if record.used_at is not None or record.reconciled_at is not None:
            raise AlreadyUsedError("Offline token already used")
        if not hmac.compare_digest(record.machine_guid_hash, machine_guid_hash):
            raise MachineMismatchError("Offline token is bound to another machine")
        if utc_now() > record.expires_at:
            raise ExpiredError("Offline token expired", expires_at=record.expires_at.isoformat())
        if not hmac.compare_digest(record.signature, self.sign(record)):
            raise InvalidSignatureError("Offline token signature mismatch")
        return record

    async def reconcile(
        self,
        session: AsyncSession,
        *,
        owner_id: str,
        entries: list[OfflineUsageReport],
    ) -> list[ReconcileResult]:
        self._ensure_enabled()
        results: list[ReconcileResult] = []
        for report in entries:
            status, record = await self._reconcile_one(session, owner_id=owner_id, report=report)
            await record_print_event(
                session=session,
                occurred_at=report.printed_at if status == ReconcileStatus.RECONCILED else None,
                actor_id=owner_id,
                event_type=EVENT_OFFLINE_RECONCILED,
                outcome="success" if status == ReconcileStatus.RECONCILED else "failure",
                document_id=record.document_id if record else None,
                ledger_entry_id=record.ledger_entry_id if record else None,
                printer=report.printer,
                metadata={"status": status.value},
                error_code=None if status == ReconcileStatus.RECONCILED else status.value.upper(),
            )
            await session.commit()
            increment_counter(f"offline_reconcile_total.{status.value}")
            results.append(ReconcileResult(token=report.token, status=status))
        return results

    async def _reconcile_one(
        self, session: AsyncSession, *, owner_id: str, report: OfflineUsageReport
    ) -> tuple[ReconcileStatus, OfflineToken | None]:
        record = await tokens_repo.get_offline_token(session, report.token)
        if record is None or record.owner_id != owner_id:
            return ReconcileStatus.NOT_FOUND, None
        if record.used_at is not None or record.reconciled_at is not None:
            return ReconcileStatus.ALREADY_USED, record
        if not hmac.compare_digest(record.machine_guid_hash, report.machine_guid_hash):
            return ReconcileStatus.MACHINE_MISMATCH, record
        now = utc_now()
        printed_at = report.printed_at
        if (
            printed_at < record.issued_at - _CLOCK_SKEW
            or printed_at > record.expires_at
            or printed_at > now + _CLOCK_SKEW
        ):
            return ReconcileStatus.TIME_INVALID, record
        marked = await tokens_repo.mark_offline_reconciled(
            session,
            record.id,
            used_at=printed_at,
            reconciled_at=now,
            printer_name=report.printer.printer_name,
            printer_type=report.printer.printer_type,
            port_name=report.printer.port_name,
            client_os=report.printer.client_os,
        )
        if not marked:
            return ReconcileStatus.ALREADY_USED, record
        return ReconcileStatus.RECONCILED, record


async def fetch_offline_content(
    session: AsyncSession,
    *,
    token: str,
    owner_id: str,
    store: ObjectStore | None = None,
) -> FetchedContent:
    # Cache download while online: served repeatedly until used or expired, never charged.
    record = await tokens_repo.get_offline_token(session, token)
    if record is None or record.owner_id != owner_id:
        raise NotFoundError("Print token not found")
    ensure_offline_enabled()
    if record.used_at is not None:
        raise AlreadyUsedError("Offline token already used")
    if utc_now() > record.expires_at:
        raise ExpiredError("Offline token expired", expires_at=record.expires_at.isoformat())
    document = await documents_repo.get_document(session, record.document_id)
    if document is None:
        raise NotFoundError("Document not found", document_id=record.document_id)
    store = store or get_object_store()
    data = await store.get(document.storage_key)
    return FetchedContent(data=data, mime_type=document.mime_type, document_id=document.id)
