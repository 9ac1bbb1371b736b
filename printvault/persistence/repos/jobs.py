from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from printvault.domain.models import PageArtifact, RenderJob
from printvault.domain.states import (
    ALLOWED_STAGE_TRANSITIONS,
    RENDERABLE_STAGES,
    STATUS_FOR_STAGE,
    JobStage,
    JobStatus,
    allowed_sources,
    ensure_stage_transition,
)
from printvault.persistence.counters import CounterValue


# Stages a finished page may land in; merging and completed jobs ignore late pages.
_PAGE_SOURCES = (JobStage.PENDING, JobStage.RENDERING, JobStage.FAILED)


async def create_job(
    session: AsyncSession,
    *,
    job_id: str,
    owner_id: str,
    created_by: str | None,
    assigned_quota: int,
    layout_pages: list[dict[str, Any]],
) -> RenderJob:
    # Jobs start directly in rendering because page tasks are enqueued right after insert.
    job = RenderJob(
        id=job_id,
        owner_id=owner_id,
        created_by=created_by,
        assigned_quota=assigned_quota,
        layout_pages=layout_pages,
        total_pages=len(layout_pages),
        completed_pages=0,
        output_document_id=None,
        status=JobStatus.PROCESSING.value,
        stage=JobStage.RENDERING.value,
    )
    session.add(job)
    return job


async def get_job(session: AsyncSession, job_id: str) -> RenderJob | None:
    result = await session.execute(select(RenderJob).where(RenderJob.id == job_id))
    return result.scalar_one_or_none()


async def refresh_job(session: AsyncSession, job_id: str) -> RenderJob | None:
    # Bypass the identity map so workers always see the latest committed row.
    result = await session.execute(
        select(RenderJob).where(RenderJob.id == job_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_jobs_for_owner(
    session: AsyncSession, owner_id: str, *, include_completed: bool = True
) -> list[RenderJob]:
    stmt = select(RenderJob).where(RenderJob.owner_id == owner_id)
    if not include_completed:
        stmt = stmt.where(RenderJob.status != JobStatus.COMPLETED.value)
    result = await session.execute(stmt.order_by(RenderJob.created_at.desc(), RenderJob.id))
    return list(result.scalars().all())


async def list_artifacts(session: AsyncSession, job_id: str) -> list[PageArtifact]:
    # Order by insert id inside a page so the first upload wins for duplicates.
    result = await session.execute(
        select(PageArtifact)
        .where(PageArtifact.job_id == job_id)
        .order_by(PageArtifact.page_index, PageArtifact.id)
    )
    return list(result.scalars().all())


def distinct_artifacts(artifacts: Iterable[PageArtifact]) -> dict[int, PageArtifact]:
    # Collapse duplicate uploads to one artifact per page index.
    by_index: dict[int, PageArtifact] = {}
    for artifact in artifacts:
        by_index.setdefault(int(artifact.page_index), artifact)
    return by_index


def missing_page_indexes(total_pages: int, present: Iterable[int]) -> list[int]:
    present_set = set(present)
    return [index for index in range(max(total_pages, 0)) if index not in present_set]


class PageCompletionCounter:
    """Bump `completed_pages` and append the page artifact in one transaction.

    A successful page also revives a pending or failed job back to rendering;
    jobs already merging or resolved reject the increment.
    """

    def __init__(self, *, page_index: int, storage_key: str) -> None:
        self._page_index = page_index
        self._storage_key = storage_key

    async def increment(self, session: AsyncSession, record_id: str) -> CounterValue | None:
        for source in _PAGE_SOURCES:
            ensure_stage_transition(source, JobStage.RENDERING)
        result = await session.execute(
            update(RenderJob)
            .where(
                RenderJob.id == record_id,
                RenderJob.output_document_id.is_(None),
                RenderJob.stage.in_([stage.value for stage in _PAGE_SOURCES]),
            )
            .values(
                completed_pages=RenderJob.completed_pages + 1,
                stage=JobStage.RENDERING.value,
                status=STATUS_FOR_STAGE[JobStage.RENDERING].value,
                failure_reason=None,
            )
            .returning(RenderJob.completed_pages, RenderJob.total_pages)
        )
        row = result.one_or_none()
        if row is None:
            return None
        session.add(
            PageArtifact(job_id=record_id, page_index=self._page_index, storage_key=self._storage_key)
        )
        await session.flush()
        return CounterValue(value=int(row[0]), limit=int(row[1]))


async def transition_stage(
    session: AsyncSession,
    job_id: str,
    *,
    target: JobStage,
    from_stages: Iterable[JobStage] | None = None,
    require_unresolved: bool = False,
    guards: Iterable[Any] = (),
    values: dict[str, Any] | None = None,
) -> bool:
    """Apply a stage change as one conditional UPDATE.

    Every source stage is validated against the transition table before the
    statement is built, so callers cannot sneak in a backward move. Returns
    True only for the caller whose update matched the row.
    """
    sources = list(from_stages) if from_stages is not None else sorted(allowed_sources(target))
    for source in sources:
        ensure_stage_transition(source, target)
    stmt = update(RenderJob).where(
        RenderJob.id == job_id,
        RenderJob.stage.in_([source.value for source in sources]),
    )
    if require_unresolved:
        stmt = stmt.where(RenderJob.output_document_id.is_(None))
    for guard in guards:
        stmt = stmt.where(guard)
    payload: dict[str, Any] = {
        "stage": target.value,
        "status": STATUS_FOR_STAGE[target].value,
    }
    if values:
        payload.update(values)
    result = await session.execute(stmt.values(**payload))
    return (result.rowcount or 0) == 1


async def try_begin_merge_stage(session: AsyncSession, job_id: str) -> bool:
    # The merge-trigger race: only one of the N completing workers may win.
    return await transition_stage(
        session,
        job_id,
        target=JobStage.MERGING,
        from_stages=sorted(RENDERABLE_STAGES),
        require_unresolved=True,
    )


async def mark_failed(
    session: AsyncSession,
    job_id: str,
    *,
    reason: str,
    from_stages: Iterable[JobStage] | None = None,
) -> bool:
    # Completed jobs are never failed retroactively by a stray retry.
    return await transition_stage(
        session,
        job_id,
        target=JobStage.FAILED,
        from_stages=from_stages
        or [stage for stage, targets in ALLOWED_STAGE_TRANSITIONS.items() if JobStage.FAILED in targets],
        require_unresolved=True,
        values={"failure_reason": reason[:500], "merge_started_at": None},
    )


async def reopen_failed(session: AsyncSession, job_id: str) -> bool:
    # The only backward move: failed -> rendering for partially rendered jobs.
    return await transition_stage(
        session,
        job_id,
        target=JobStage.RENDERING,
        from_stages=[JobStage.FAILED],
        require_unresolved=True,
        values={"failure_reason": None},
    )


async def claim_merge(
    session: AsyncSession, job_id: str, *, now: datetime, stale_before: datetime
) -> bool:
    # A live claim held by another merge worker blocks duplicates; stale claims are taken over.
    return await transition_stage(
        session,
        job_id,
        target=JobStage.MERGING,
        from_stages=[JobStage.MERGING, JobStage.FAILED],
        require_unresolved=True,
        guards=[or_(RenderJob.merge_started_at.is_(None), RenderJob.merge_started_at < stale_before)],
        values={"merge_started_at": now, "failure_reason": None},
    )


async def finalize_merge(session: AsyncSession, job_id: str, *, document_id: str) -> bool:
    # output_document_id is written exactly once; it marks the job resolved.
    return await transition_stage(
        session,
        job_id,
        target=JobStage.COMPLETED,
        from_stages=[JobStage.MERGING],
        require_unresolved=True,
        values={"output_document_id": document_id, "merge_started_at": None, "failure_reason": None},
    )


async def claim_heal(
    session: AsyncSession,
    job_id: str,
    *,
    now: datetime,
    updated_before: datetime,
    healed_before: datetime,
) -> bool:
    # Persist the heal attempt so only one process heals a job per window.
    result = await session.execute(
        update(RenderJob)
        .where(
            RenderJob.id == job_id,
            RenderJob.output_document_id.is_(None),
            RenderJob.updated_at < updated_before,
            or_(RenderJob.last_heal_at.is_(None), RenderJob.last_heal_at < healed_before),
        )
        # Keep updated_at untouched; it measures job progress, not heal attempts.
        .values(last_heal_at=now, updated_at=RenderJob.updated_at)
    )
    return (result.rowcount or 0) == 1
