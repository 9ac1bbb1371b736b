from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from printvault.domain.models import PrintAuditEvent
from printvault.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["token", "secret", "signature", "machine_guid"]
_REDACTED_VALUE = "[REDACTED]"

EVENT_PRINT_CONFIRMED = "print.confirmed"
EVENT_OFFLINE_PREPARED = "print.offline.prepared"
EVENT_OFFLINE_RECONCILED = "print.offline.reconciled"


@dataclass(frozen=True)
class PrinterIdentity:
    printer_name: str | None = None
    printer_type: str | None = None
    port_name: str | None = None
    client_os: str | None = None


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub credentials so audit rows never hold redeemable secrets.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_print_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    document_id: str | None = None,
    ledger_entry_id: str | None = None,
    printer: PrinterIdentity | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = False,
) -> None:
    """Append an immutable audit row for a print outcome.

    With a session the row joins the caller's transaction; without one it is
    written in its own session so failed operations still leave a trace after
    the caller rolls back. Write failures are logged, never raised.
    """
    printer = printer or PrinterIdentity()
    event = PrintAuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        document_id=document_id,
        ledger_entry_id=ledger_entry_id,
        printer_name=printer.printer_name,
        printer_type=printer.printer_type,
        port_name=printer.port_name,
        client_os=printer.client_os,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(event)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                logger.warning("audit_event_write_failed event_type=%s", event_type, exc_info=exc)
        return

    try:
        session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        logger.warning("audit_event_write_failed event_type=%s", event_type, exc_info=exc)
