from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from printvault.core.errors import (
    AlreadyUsedError,
    ExpiredError,
    FeatureDisabledError,
    InvalidSignatureError,
    MachineMismatchError,
    NotFoundError,
    QuotaExceededError,
)
from printvault.domain.models import AccessLedgerEntry, OfflineToken, PrintAuditEvent, utc_now
from printvault.persistence.db import SessionLocal
from printvault.services.audit import PrinterIdentity
from printvault.services.printing.offline import OfflineTokenService, OfflineUsageReport, ReconcileStatus
from printvault.services.printing.tokens import fetch_content, issue_print_token
from printvault.tests.utils.seed import machine_hash, seed_assignment


PRINTER = PrinterIdentity(printer_name="Canon iR", printer_type="laser")


async def _prepare(entry: AccessLedgerEntry, *, machine: str = "workstation-1", ttl_s: int | None = None):
    async with SessionLocal() as session:
        return await OfflineTokenService().prepare(
            session,
            owner_id=entry.owner_id,
            redemption_token=entry.redemption_token,
            machine_guid_hash=machine_hash(machine),
            printer=PRINTER,
            ttl_s=ttl_s,
        )


async def _reconcile(owner_id: str, reports: list[OfflineUsageReport]):
    async with SessionLocal() as session:
        return await OfflineTokenService().reconcile(session, owner_id=owner_id, entries=reports)


@pytest.mark.asyncio
async def test_offline_is_behind_capability_flag() -> None:
    _, entry = await seed_assignment(owner_id="bob", quota=2)
    with pytest.raises(FeatureDisabledError):
        await _prepare(entry)


@pytest.mark.asyncio
async def test_prepare_charges_quota_pessimistically(offline_enabled) -> None:
    _, entry = await seed_assignment(owner_id="bob", quota=2)
    grant = await _prepare(entry)
    assert grant.used_prints == 1
    assert grant.remaining_prints == 1
    assert grant.status == "active"
    assert grant.cache_url.endswith(f"/print/content/{grant.token}")

    async with SessionLocal() as session:
        refreshed = await session.get(AccessLedgerEntry, entry.id)
        assert refreshed.used_prints == 1

    # A second prepare exhausts the entry; a third has nothing left to charge.
    async with SessionLocal() as session:
        refreshed = await session.get(AccessLedgerEntry, entry.id)
    second = await _prepare(refreshed)
    assert second.status == "exhausted"
    # Exhaustion cleared the redemption token the client still holds.
    with pytest.raises(NotFoundError):
        await _prepare(refreshed)


@pytest.mark.asyncio
async def test_offline_prepare_leaves_nothing_for_online_issue(offline_enabled) -> None:
    _, entry = await seed_assignment(owner_id="bob", quota=1)
    grant = await _prepare(entry)
    assert grant.status == "exhausted"

    async with SessionLocal() as session:
        with pytest.raises(QuotaExceededError):
            await issue_print_token(session, owner_id="bob", ledger_entry_id=entry.id, printer=PRINTER)

    async with SessionLocal() as session:
        refreshed = await session.get(AccessLedgerEntry, entry.id)
    assert (refreshed.used_prints, refreshed.status) == (1, "exhausted")

@pytest.mark.asyncio
async def test_validate_checks_machine_expiry_and_signature(offline_enabled) -> None:
    _, entry = await seed_assignment(owner_id="bob", quota=3)
    grant = await _prepare(entry)
    service = OfflineTokenService()

    async with SessionLocal() as session:
        record = await service.validate(session, token=grant.token, machine_guid_hash=machine_hash())
        assert record.document_id == entry.document_id
        with pytest.raises(MachineMismatchError):
            await service.validate(session, token=grant.token, machine_guid_hash=machine_hash("laptop"))

        # Stretching the expiry locally breaks the signature.
        await session.execute(
            update(OfflineToken)
            .where(OfflineToken.token == grant.token)
            .values(expires_at=record.expires_at + timedelta(days=1))
        )
        await session.commit()
        with pytest.raises(InvalidSignatureError):
            await service.validate(session, token=grant.token, machine_guid_hash=machine_hash())

        await session.execute(
            update(OfflineToken)
            .where(OfflineToken.token == grant.token)
            .values(expires_at=utc_now() - timedelta(minutes=1))
        )
        await session.commit()
        with pytest.raises(ExpiredError):
            await service.validate(session, token=grant.token, machine_guid_hash=machine_hash())

    async with SessionLocal() as session:
        refreshed = await session.get(AccessLedgerEntry, entry.id)
    # Validation never charges the ledger.
    assert refreshed.used_prints == 1


@pytest.mark.asyncio
async def test_offline_token_serves_cached_content_without_charging(offline_enabled) -> None:
    _, entry = await seed_assignment(owner_id="bob", quota=3)
    grant = await _prepare(entry)
    for _ in range(2):
        async with SessionLocal() as session:
            content = await fetch_content(session, token=grant.token, owner_id="bob")
        assert content.data.startswith(b"%PDF")
    async with SessionLocal() as session:
        assert (await session.get(AccessLedgerEntry, entry.id)).used_prints == 1


@pytest.mark.asyncio
async def test_reconcile_reports_each_entry(offline_enabled) -> None:
    _, entry = await seed_assignment(owner_id="bob", quota=5)
    good = await _prepare(entry)
    other_machine = await _prepare(entry)
    stale = await _prepare(entry)
    printed_at = utc_now()

    reports = [
        OfflineUsageReport(good.token, machine_hash(), printed_at, PRINTER),
        OfflineUsageReport(good.token, machine_hash(), printed_at, PRINTER),
        OfflineUsageReport(other_machine.token, machine_hash("laptop"), printed_at, PRINTER),
        OfflineUsageReport(stale.token, machine_hash(), printed_at - timedelta(days=3), PRINTER),
        OfflineUsageReport("unknown-token", machine_hash(), printed_at, PRINTER),
    ]
    results = await _reconcile("bob", reports)
    assert [result.status for result in results] == [
        ReconcileStatus.RECONCILED,
        ReconcileStatus.ALREADY_USED,
        ReconcileStatus.MACHINE_MISMATCH,
        ReconcileStatus.TIME_INVALID,
        ReconcileStatus.NOT_FOUND,
    ]

    async with SessionLocal() as session:
        ledger = await session.get(AccessLedgerEntry, entry.id)
        used = (await session.execute(select(OfflineToken).where(OfflineToken.token == good.token))).scalar_one()
        events = (
            await session.execute(
                select(PrintAuditEvent).where(PrintAuditEvent.event_type == "print.offline.reconciled")
            )
        ).scalars().all()
    # Reconciliation records usage only; quota was charged at prepare time.
    assert ledger.used_prints == 3
    assert used.used_at is not None and used.reconciled_at is not None
    assert sorted(event.outcome for event in events) == ["failure"] * 4 + ["success"]

    with pytest.raises(AlreadyUsedError):
        async with SessionLocal() as session:
            await fetch_content(session, token=good.token, owner_id="bob")


@pytest.mark.asyncio
async def test_prepare_rejects_exhausted_entry(offline_enabled) -> None:
    _, entry = await seed_assignment(owner_id="bob", quota=1)
    await _prepare(entry)
    async with SessionLocal() as session:
        await session.execute(
            update(AccessLedgerEntry)
            .where(AccessLedgerEntry.id == entry.id)
            .values(status="active", redemption_token=entry.redemption_token)
        )
        await session.commit()
    # Status forced back to active, but used == quota still blocks the charge.
    with pytest.raises(QuotaExceededError):
        await _prepare(entry)
