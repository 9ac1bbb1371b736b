from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    CheckConstraint,
    func,
)
from sqlalchemy.types import TypeDecorator
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from printvault.domain.states import DocumentKind, JobStage, JobStatus, LedgerStatus


# JSONB on Postgres, plain JSON elsewhere (local SQLite runs).
JsonColumn = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


def utc_now() -> datetime:
    # Use UTC timestamps for consistency across API and worker processes.
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    # Store UTC and always hand back aware datetimes, even on SQLite.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:  # noqa: ANN001
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class Document(Base):
    __tablename__ = "documents"

    # Immutable content record; generated outputs and uploads share the table.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str] = mapped_column(String)
    storage_key: Mapped[str] = mapped_column(String, index=True)
    mime_type: Mapped[str] = mapped_column(String, default="application/pdf")
    kind: Mapped[str] = mapped_column(String, default=DocumentKind.SOURCE.value, index=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now(), default=utc_now)


class AccessLedgerEntry(Base):
    __tablename__ = "access_ledger"
    __table_args__ = (
        UniqueConstraint("owner_id", "document_id", name="uq_access_ledger_owner_document"),
        CheckConstraint("used_prints <= assigned_quota", name="ck_access_ledger_quota"),
    )

    # One quota record per (owner, document); mutated only through guarded updates.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String, index=True)
    document_id: Mapped[str] = mapped_column(String, ForeignKey("documents.id"), index=True)
    assigned_quota: Mapped[int] = mapped_column(Integer)
    used_prints: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String, default=LedgerStatus.ACTIVE.value, index=True)
    # Cleared on exhaustion so stale clients cannot mint more tokens.
    redemption_token: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    exhausted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now(), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), default=utc_now, onupdate=utc_now
    )


class PrintToken(Base):
    __tablename__ = "print_tokens"
    __table_args__ = (
        Index("ix_print_tokens_owner_entry", "owner_id", "ledger_entry_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    token: Mapped[str] = mapped_column(String, unique=True, index=True)
    owner_id: Mapped[str] = mapped_column(String)
    document_id: Mapped[str] = mapped_column(String, ForeignKey("documents.id"))
    ledger_entry_id: Mapped[str] = mapped_column(String, ForeignKey("access_ledger.id"), index=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)
    # Set exactly once by the conditional fetch update.
    fetched_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    fetch_count: Mapped[int] = mapped_column(Integer, default=0)
    # Set exactly once when the client confirms the physical print.
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    # Set when the ledger entry exhausts while this token is still outstanding.
    invalidated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    printer_name: Mapped[str | None] = mapped_column(String, nullable=True)
    printer_type: Mapped[str | None] = mapped_column(String, nullable=True)
    port_name: Mapped[str | None] = mapped_column(String, nullable=True)
    client_os: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now(), default=utc_now)


class OfflineToken(Base):
    __tablename__ = "offline_tokens"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    token: Mapped[str] = mapped_column(String, unique=True, index=True)
    owner_id: Mapped[str] = mapped_column(String, index=True)
    document_id: Mapped[str] = mapped_column(String, ForeignKey("documents.id"), index=True)
    ledger_entry_id: Mapped[str] = mapped_column(String, ForeignKey("access_ledger.id"), index=True)
    # Bind redemption to one physical machine without storing the raw GUID.
    machine_guid_hash: Mapped[str] = mapped_column(String, index=True)
    signature: Mapped[str] = mapped_column(String)
    printer_name: Mapped[str] = mapped_column(String)
    printer_type: Mapped[str | None] = mapped_column(String, nullable=True)
    port_name: Mapped[str | None] = mapped_column(String, nullable=True)
    client_os: Mapped[str | None] = mapped_column(String, nullable=True)
    # Explicit issue time so reconciliation windows do not depend on server defaults.
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime())
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime())
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    reconciled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now(), default=utc_now)


class RenderJob(Base):
    __tablename__ = "render_jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String, index=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_quota: Mapped[int] = mapped_column(Integer)
    # Full layouts are kept so the Reconciler can re-enqueue lost pages.
    layout_pages: Mapped[list[dict[str, Any]]] = mapped_column(JsonColumn, default=list)
    total_pages: Mapped[int] = mapped_column(Integer, default=0)
    # Atomic counter; never recomputed from artifacts.
    completed_pages: Mapped[int] = mapped_column(Integer, default=0)
    output_document_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("documents.id"), nullable=True
    )
    status: Mapped[str] = mapped_column(String, default=JobStatus.PENDING.value, index=True)
    stage: Mapped[str] = mapped_column(String, default=JobStage.PENDING.value)
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    # Claim marker so only one merge runs per job at a time.
    merge_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_heal_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now(), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), default=utc_now, onupdate=utc_now
    )


class PageArtifact(Base):
    __tablename__ = "render_page_artifacts"
    __table_args__ = (
        Index("ix_render_page_artifacts_job_page", "job_id", "page_index"),
    )

    # Append-only; duplicates per page index are tolerated and resolved by readers.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String, ForeignKey("render_jobs.id"), index=True)
    page_index: Mapped[int] = mapped_column(Integer)
    storage_key: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now(), default=utc_now)


class PrintAuditEvent(Base):
    __tablename__ = "print_audit_events"

    # Immutable who/when/printer trail for confirms and offline reconciliation.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    document_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ledger_entry_id: Mapped[str | None] = mapped_column(String, nullable=True)
    printer_name: Mapped[str | None] = mapped_column(String, nullable=True)
    printer_type: Mapped[str | None] = mapped_column(String, nullable=True)
    port_name: Mapped[str | None] = mapped_column(String, nullable=True)
    client_os: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now(), default=utc_now)
