from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from printvault.core.errors import NotFoundError, UpstreamFailureError
from printvault.domain.models import RenderJob
from printvault.domain.states import JobStatus, LedgerStatus
from printvault.persistence.repos import documents as documents_repo
from printvault.persistence.repos import jobs as jobs_repo
from printvault.persistence.repos import ledger as ledger_repo
from printvault.services.printing.ledger import remaining_prints
from printvault.services.render.reconciler import HealReport, Reconciler


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssignedSummary:
    documents: int
    total_assigned: int
    total_used: int
    remaining: int
    pending_jobs: int


async def _heal_quietly(reconciler: Reconciler, job_id: str) -> HealReport | None:
    # Healing is opportunistic; a degraded queue must not break status reads.
    try:
        return await reconciler.heal(job_id)
    except UpstreamFailureError as exc:
        logger.warning("render_job_heal_failed job_id=%s error=%s", job_id, exc.message)
        return None


def job_view(job: RenderJob) -> dict[str, Any]:
    return {
        "job_id": job.id,
        "status": job.status,
        "stage": job.stage,
        "total_pages": job.total_pages,
        "completed_pages": job.completed_pages,
        "output_document_id": job.output_document_id,
        "failure_reason": job.failure_reason,
        "assigned_quota": job.assigned_quota,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
    }


async def get_job_status(
    session: AsyncSession,
    *,
    job_id: str,
    owner_id: str,
    is_admin: bool = False,
    reconciler: Reconciler | None = None,
) -> dict[str, Any]:
    job = await jobs_repo.get_job(session, job_id)
    if job is None or (not is_admin and job.owner_id != owner_id):
        raise NotFoundError("Render job not found", job_id=job_id)
    report = await _heal_quietly(reconciler or Reconciler(), job_id)
    job = await jobs_repo.refresh_job(session, job_id)
    view = job_view(job)
    if report is not None:
        view["heal"] = {
            "missing": report.missing,
            "reopened": report.reopened,
            "retried": report.retried,
            "enqueued": report.enqueued,
            "skipped": report.skipped,
        }
    return view


async def list_assigned(
    session: AsyncSession,
    *,
    owner_id: str,
    reconciler: Reconciler | None = None,
) -> list[dict[str, Any]]:
    """List a user's printable documents and the jobs still producing them.

    Unfinished jobs get a heal pass first, so a stalled job recovers simply
    by being looked at.
    """
    reconciler = reconciler or Reconciler()
    pending_jobs = await jobs_repo.list_jobs_for_owner(session, owner_id, include_completed=False)
    for job in pending_jobs:
        await _heal_quietly(reconciler, job.id)

    entries = await ledger_repo.list_for_owner(session, owner_id)
    documents = await documents_repo.get_documents(session, [entry.document_id for entry in entries])
    items: list[dict[str, Any]] = []
    for entry in entries:
        document = documents.get(entry.document_id)
        exhausted = entry.status == LedgerStatus.EXHAUSTED.value
        items.append(
            {
                "kind": "document",
                "ledger_entry_id": entry.id,
                "document_id": entry.document_id,
                "title": document.title if document else None,
                "assigned_quota": entry.assigned_quota,
                "used_prints": entry.used_prints,
                "remaining_prints": remaining_prints(entry),
                "status": LedgerStatus.EXHAUSTED.value if exhausted else LedgerStatus.ACTIVE.value,
                "redemption_token": None if exhausted else entry.redemption_token,
            }
        )
    for job in await jobs_repo.list_jobs_for_owner(session, owner_id, include_completed=False):
        items.append({"kind": "job", **job_view(job)})
    return items


async def assigned_summary(session: AsyncSession, *, owner_id: str) -> AssignedSummary:
    entries = await ledger_repo.list_for_owner(session, owner_id)
    jobs = await jobs_repo.list_jobs_for_owner(session, owner_id, include_completed=False)
    total_assigned = sum(int(entry.assigned_quota) for entry in entries)
    total_used = sum(int(entry.used_prints) for entry in entries)
    return AssignedSummary(
        documents=len(entries),
        total_assigned=total_assigned,
        total_used=total_used,
        remaining=sum(remaining_prints(entry) for entry in entries),
        pending_jobs=sum(1 for job in jobs if job.status != JobStatus.FAILED.value),
    )
