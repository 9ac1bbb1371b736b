from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from printvault.core.errors import (
    AlreadyInFlightError,
    AlreadyUsedError,
    ConflictError,
    ExpiredError,
    NotFetchedError,
    NotFoundError,
    QuotaExceededError,
)
from printvault.domain.models import AccessLedgerEntry, PrintAuditEvent, PrintToken, utc_now
from printvault.persistence.db import SessionLocal
from printvault.services.audit import PrinterIdentity
from printvault.services.printing.ledger import assign_document
from printvault.services.printing.tokens import (
    confirm_print,
    fetch_content,
    gc_expired_tokens,
    issue_print_token,
)
from printvault.tests.utils.seed import seed_assignment


PRINTER = PrinterIdentity(printer_name="HP LaserJet", printer_type="laser", port_name="USB001", client_os="win11")


async def _issue(owner_id: str, entry_id: str):
    async with SessionLocal() as session:
        return await issue_print_token(session, owner_id=owner_id, ledger_entry_id=entry_id, printer=PRINTER)


async def _fetch(owner_id: str, token: str):
    async with SessionLocal() as session:
        return await fetch_content(session, token=token, owner_id=owner_id)


async def _confirm(owner_id: str, token: str):
    async with SessionLocal() as session:
        return await confirm_print(session, token=token, owner_id=owner_id, printer=PRINTER)


async def _entry(entry_id: str) -> AccessLedgerEntry:
    async with SessionLocal() as session:
        return await session.get(AccessLedgerEntry, entry_id)


@pytest.mark.asyncio
async def test_issue_fetch_confirm_charges_one_print() -> None:
    document, entry = await seed_assignment(owner_id="alice", quota=2)

    async with SessionLocal() as session:
        grant = await issue_print_token(
            session, owner_id="alice", redemption_token=entry.redemption_token, printer=PRINTER
        )
    assert grant.document_id == document.id
    assert grant.content_url.endswith(f"/print/content/{grant.token}")
    assert grant.remaining_prints == 2
    assert grant.expires_at - utc_now() <= timedelta(seconds=60)

    content = await _fetch("alice", grant.token)
    assert content.data.startswith(b"%PDF")
    assert content.mime_type == "application/pdf"

    result = await _confirm("alice", grant.token)
    assert (result.used_prints, result.remaining_prints, result.status) == (1, 1, "active")

    async with SessionLocal() as session:
        token_row = (await session.execute(select(PrintToken).where(PrintToken.token == grant.token))).scalar_one()
        events = (await session.execute(select(PrintAuditEvent))).scalars().all()
    assert token_row.fetch_count == 1
    assert token_row.used_at is not None
    assert token_row.printer_name == "HP LaserJet"
    assert [(event.event_type, event.outcome) for event in events] == [("print.confirmed", "success")]


@pytest.mark.asyncio
async def test_token_of_another_owner_is_not_found() -> None:
    _, entry = await seed_assignment(owner_id="alice", quota=1)
    with pytest.raises(NotFoundError):
        await _issue("mallory", entry.id)

    grant = await _issue("alice", entry.id)
    with pytest.raises(NotFoundError):
        await _fetch("mallory", grant.token)


@pytest.mark.asyncio
async def test_only_one_token_in_flight_per_entry() -> None:
    _, entry = await seed_assignment(owner_id="alice", quota=3)
    grant = await _issue("alice", entry.id)
    with pytest.raises(AlreadyInFlightError) as excinfo:
        await _issue("alice", entry.id)
    assert excinfo.value.context["ledger_entry_id"] == entry.id
    assert excinfo.value.context["expires_at"] == grant.expires_at.isoformat()

    await _fetch("alice", grant.token)
    # Once fetched the token is no longer in flight.
    second = await _issue("alice", entry.id)
    assert second.token != grant.token


@pytest.mark.asyncio
async def test_concurrent_issue_mints_a_single_token() -> None:
    _, entry = await seed_assignment(owner_id="alice", quota=3)
    results = await asyncio.gather(*[_issue("alice", entry.id) for _ in range(5)], return_exceptions=True)
    grants = [result for result in results if not isinstance(result, Exception)]
    errors = [result for result in results if isinstance(result, Exception)]
    assert len(grants) == 1
    assert all(isinstance(error, AlreadyInFlightError) for error in errors)


@pytest.mark.asyncio
async def test_fetch_is_exactly_once_under_concurrency() -> None:
    _, entry = await seed_assignment(owner_id="alice", quota=1)
    grant = await _issue("alice", entry.id)

    results = await asyncio.gather(*[_fetch("alice", grant.token) for _ in range(6)], return_exceptions=True)
    successes = [result for result in results if not isinstance(result, Exception)]
    assert len(successes) == 1
    assert all(isinstance(result, AlreadyUsedError) for result in results if isinstance(result, Exception))


@pytest.mark.asyncio
async def test_quota_invariant_under_concurrent_confirms() -> None:
    _, entry = await seed_assignment(owner_id="alice", quota=3)
    tokens = []
    for _ in range(5):
        grant = await _issue("alice", entry.id)
        await _fetch("alice", grant.token)
        tokens.append(grant.token)

    results = await asyncio.gather(*[_confirm("alice", token) for token in tokens], return_exceptions=True)
    confirmed = [result for result in results if not isinstance(result, Exception)]
    rejected = [result for result in results if isinstance(result, Exception)]
    assert len(confirmed) == 3
    assert len(rejected) == 2
    assert all(isinstance(error, QuotaExceededError) for error in rejected)

    refreshed = await _entry(entry.id)
    assert refreshed.used_prints == 3
    assert refreshed.status == "exhausted"
    assert refreshed.redemption_token is None

    async with SessionLocal() as session:
        outcomes = (
            await session.execute(select(PrintAuditEvent.outcome).where(PrintAuditEvent.ledger_entry_id == entry.id))
        ).scalars().all()
    assert sorted(outcomes) == ["failure", "failure", "success", "success", "success"]


@pytest.mark.asyncio
async def test_exhausted_entry_rejects_new_tokens() -> None:
    _, entry = await seed_assignment(owner_id="alice", quota=1)
    grant = await _issue("alice", entry.id)
    await _fetch("alice", grant.token)
    result = await _confirm("alice", grant.token)
    assert result.status == "exhausted"
    assert result.remaining_prints == 0

    with pytest.raises(QuotaExceededError):
        await _issue("alice", entry.id)
    # The cleared redemption token no longer resolves.
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await issue_print_token(session, owner_id="alice", redemption_token=entry.redemption_token)


@pytest.mark.asyncio
async def test_confirm_requires_fetch_and_is_single_use() -> None:
    _, entry = await seed_assignment(owner_id="alice", quota=2)
    grant = await _issue("alice", entry.id)
    with pytest.raises(NotFetchedError):
        await _confirm("alice", grant.token)

    await _fetch("alice", grant.token)
    await _confirm("alice", grant.token)
    with pytest.raises(AlreadyUsedError):
        await _confirm("alice", grant.token)
    with pytest.raises(AlreadyUsedError):
        await _fetch("alice", grant.token)
    assert (await _entry(entry.id)).used_prints == 1


@pytest.mark.asyncio
async def test_expired_token_leaves_quota_untouched() -> None:
    _, entry = await seed_assignment(owner_id="alice", quota=2)
    fetched = await _issue("alice", entry.id)
    await _fetch("alice", fetched.token)
    unfetched = await _issue("alice", entry.id)

    past = utc_now() - timedelta(seconds=1)
    async with SessionLocal() as session:
        await session.execute(update(PrintToken).values(expires_at=past))
        await session.commit()

    with pytest.raises(ExpiredError):
        await _fetch("alice", unfetched.token)
    with pytest.raises(ExpiredError):
        await _confirm("alice", fetched.token)

    refreshed = await _entry(entry.id)
    assert refreshed.used_prints == 0
    assert refreshed.status == "active"
    # Expired tokens are not in flight, so a new one can be minted.
    assert (await _issue("alice", entry.id)).token


@pytest.mark.asyncio
async def test_gc_prunes_tokens_past_retention() -> None:
    _, entry = await seed_assignment(owner_id="alice", quota=2)
    grant = await _issue("alice", entry.id)

    async with SessionLocal() as session:
        assert await gc_expired_tokens(session) == 0
        later = utc_now() + timedelta(days=2)
        assert await gc_expired_tokens(session, now=later) == 1
        remaining = (await session.execute(select(PrintToken).where(PrintToken.token == grant.token))).scalars().all()
    assert remaining == []


async def _reassign(owner_id: str, document_id: str, quota: int):
    async with SessionLocal() as session:
        return await assign_document(session, owner_id=owner_id, document_id=document_id, assigned_quota=quota)


@pytest.mark.asyncio
async def test_reassigning_an_exhausted_document_is_rejected() -> None:
    document, entry = await seed_assignment(owner_id="alice", quota=1)
    grant = await _issue("alice", entry.id)
    await _fetch("alice", grant.token)
    await _confirm("alice", grant.token)

    with pytest.raises(ConflictError):
        await _reassign("alice", document.id, 1)
    with pytest.raises(ConflictError):
        await _reassign("alice", document.id, 5)

    row = await _entry(entry.id)
    assert (row.status, row.used_prints, row.assigned_quota) == ("exhausted", 1, 1)
    assert row.redemption_token is None
    with pytest.raises(QuotaExceededError):
        await _issue("alice", entry.id)


@pytest.mark.asyncio
async def test_reassigning_an_active_document_only_changes_the_quota() -> None:
    document, entry = await seed_assignment(owner_id="alice", quota=2)
    grant = await _issue("alice", entry.id)
    await _fetch("alice", grant.token)
    await _confirm("alice", grant.token)

    # At or below current usage would leave no print without exhausting the entry.
    with pytest.raises(ConflictError):
        await _reassign("alice", document.id, 1)

    updated = await _reassign("alice", document.id, 4)
    assert updated.id == entry.id
    row = await _entry(entry.id)
    assert (row.status, row.used_prints, row.assigned_quota) == ("active", 1, 4)
    assert row.redemption_token == entry.redemption_token
