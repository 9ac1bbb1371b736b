"""initial print vault schema

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "documents",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("storage_key", sa.String(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_documents_storage_key", "documents", ["storage_key"], unique=False)
    op.create_index("ix_documents_kind", "documents", ["kind"], unique=False)

    # Quota ledger; used_prints is only ever changed by guarded increments.
    op.create_table(
        "access_ledger",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("document_id", sa.String(), sa.ForeignKey("documents.id"), nullable=False),
        sa.Column("assigned_quota", sa.Integer(), nullable=False),
        sa.Column("used_prints", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("redemption_token", sa.String(), nullable=True),
        sa.Column("exhausted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("owner_id", "document_id", name="uq_access_ledger_owner_document"),
        sa.UniqueConstraint("redemption_token", name="uq_access_ledger_redemption_token"),
        sa.CheckConstraint("used_prints <= assigned_quota", name="ck_access_ledger_quota"),
    )
    op.create_index("ix_access_ledger_owner_id", "access_ledger", ["owner_id"], unique=False)
    op.create_index("ix_access_ledger_document_id", "access_ledger", ["document_id"], unique=False)
    op.create_index("ix_access_ledger_status", "access_ledger", ["status"], unique=False)

    op.create_table(
        "print_tokens",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("token", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("document_id", sa.String(), sa.ForeignKey("documents.id"), nullable=False),
        sa.Column("ledger_entry_id", sa.String(), sa.ForeignKey("access_ledger.id"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("fetch_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invalidated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("printer_name", sa.String(), nullable=True),
        sa.Column("printer_type", sa.String(), nullable=True),
        sa.Column("port_name", sa.String(), nullable=True),
        sa.Column("client_os", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_print_tokens_token", "print_tokens", ["token"], unique=True)
    op.create_index("ix_print_tokens_expires_at", "print_tokens", ["expires_at"], unique=False)
    op.create_index("ix_print_tokens_ledger_entry_id", "print_tokens", ["ledger_entry_id"], unique=False)
    op.create_index(
        "ix_print_tokens_owner_entry", "print_tokens", ["owner_id", "ledger_entry_id"], unique=False
    )

    op.create_table(
        "offline_tokens",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("token", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("document_id", sa.String(), sa.ForeignKey("documents.id"), nullable=False),
        sa.Column("ledger_entry_id", sa.String(), sa.ForeignKey("access_ledger.id"), nullable=False),
        sa.Column("machine_guid_hash", sa.String(), nullable=False),
        sa.Column("signature", sa.String(), nullable=False),
        sa.Column("printer_name", sa.String(), nullable=False),
        sa.Column("printer_type", sa.String(), nullable=True),
        sa.Column("port_name", sa.String(), nullable=True),
        sa.Column("client_os", sa.String(), nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_offline_tokens_token", "offline_tokens", ["token"], unique=True)
    op.create_index("ix_offline_tokens_owner_id", "offline_tokens", ["owner_id"], unique=False)
    op.create_index("ix_offline_tokens_document_id", "offline_tokens", ["document_id"], unique=False)
    op.create_index(
        "ix_offline_tokens_ledger_entry_id", "offline_tokens", ["ledger_entry_id"], unique=False
    )
    op.create_index(
        "ix_offline_tokens_machine_guid_hash", "offline_tokens", ["machine_guid_hash"], unique=False
    )

    op.create_table(
        "render_jobs",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("assigned_quota", sa.Integer(), nullable=False),
        sa.Column("layout_pages", postgresql.JSONB(), nullable=False),
        sa.Column("total_pages", sa.Integer(), nullable=False),
        sa.Column("completed_pages", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("output_document_id", sa.String(), sa.ForeignKey("documents.id"), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("stage", sa.String(), nullable=False),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("merge_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_heal_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_render_jobs_owner_id", "render_jobs", ["owner_id"], unique=False)
    op.create_index("ix_render_jobs_status", "render_jobs", ["status"], unique=False)

    # No unique constraint per page: duplicate uploads are tolerated and collapsed on read.
    op.create_table(
        "render_page_artifacts",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(), sa.ForeignKey("render_jobs.id"), nullable=False),
        sa.Column("page_index", sa.Integer(), nullable=False),
        sa.Column("storage_key", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_render_page_artifacts_job_id", "render_page_artifacts", ["job_id"], unique=False)
    op.create_index(
        "ix_render_page_artifacts_job_page",
        "render_page_artifacts",
        ["job_id", "page_index"],
        unique=False,
    )

    op.create_table(
        "print_audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("document_id", sa.String(), nullable=True),
        sa.Column("ledger_entry_id", sa.String(), nullable=True),
        sa.Column("printer_name", sa.String(), nullable=True),
        sa.Column("printer_type", sa.String(), nullable=True),
        sa.Column("port_name", sa.String(), nullable=True),
        sa.Column("client_os", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_print_audit_events_occurred_at", "print_audit_events", ["occurred_at"], unique=False)
    op.create_index("ix_print_audit_events_actor_id", "print_audit_events", ["actor_id"], unique=False)
    op.create_index("ix_print_audit_events_event_type", "print_audit_events", ["event_type"], unique=False)
    op.create_index("ix_print_audit_events_document_id", "print_audit_events", ["document_id"], unique=False)


def downgrade() -> None:
    op.drop_table("print_audit_events")
    op.drop_table("render_page_artifacts")
    op.drop_table("render_jobs")
    op.drop_table("offline_tokens")
    op.drop_table("print_tokens")
    op.drop_table("access_ledger")
    op.drop_table("documents")
