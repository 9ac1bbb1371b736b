from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from printvault.core.config import get_settings
from printvault.domain.models import RenderJob, utc_now
from printvault.domain.states import JobStage
from printvault.persistence.db import SessionLocal
from printvault.persistence.repos import jobs as jobs_repo
from printvault.services.queue import (
    TASK_MERGE,
    MergePayload,
    TaskQueue,
    TaskState,
    ensure_enqueued,
    get_task_queue,
    merge_task_id,
    page_task_id,
)
from printvault.services.render.coordinator import enqueue_page
from printvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass
class HealReport:
    job_id: str
    missing: list[int] = field(default_factory=list)
    reopened: bool = False
    retried: list[str] = field(default_factory=list)
    enqueued: list[str] = field(default_factory=list)
    skipped: str | None = None

    @property
    def acted(self) -> bool:
        return self.reopened or bool(self.retried) or bool(self.enqueued)


class Reconciler:
    """Repair jobs whose pages were lost or failed, on read.

    Runs when a job's status is queried. Each job is healed at most once per
    heal window, enforced by a conditional update on `last_heal_at`, so many
    concurrent readers still produce a single re-enqueue per missing page.
    """

    def __init__(
        self,
        *,
        queue: TaskQueue | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._queue = queue
        self._session_factory = session_factory or SessionLocal

    @property
    def queue(self) -> TaskQueue:
        if self._queue is None:
            self._queue = get_task_queue()
        return self._queue

    def _skip_reason(self, job: RenderJob, now: datetime) -> str | None:
        settings = get_settings()
        if job.output_document_id is not None or job.stage == JobStage.COMPLETED.value:
            return "resolved"
        if job.stage == JobStage.MERGING.value and not self._merge_stranded(job, now):
            return "merging"
        if job.updated_at and now - job.updated_at < timedelta(seconds=settings.reconcile_stall_after_s):
            return "recent_progress"
        if job.last_heal_at and now - job.last_heal_at < timedelta(seconds=settings.reconcile_heal_interval_s):
            return "recently_healed"
        return None

    def _merge_stranded(self, job: RenderJob, now: datetime) -> bool:
        # No live merge claim and no recent progress: the merge task was lost or never queued.
        settings = get_settings()
        claim = job.merge_started_at
        if claim is not None and now - claim < timedelta(seconds=settings.merge_claim_stale_after_s):
            return False
        return not (job.updated_at and now - job.updated_at < timedelta(seconds=settings.reconcile_stall_after_s))

    async def heal(self, job_id: str, *, now: datetime | None = None) -> HealReport:
        now = now or utc_now()
        report = HealReport(job_id=job_id)
        async with self._session_factory() as session:
            job = await jobs_repo.refresh_job(session, job_id)
            if job is None:
                report.skipped = "not_found"
                return report
            report.skipped = self._skip_reason(job, now)
            if report.skipped:
                return report
            if job.stage == JobStage.MERGING.value:
                if not await self._claim(session, job_id, now):
                    report.skipped = "claimed_elsewhere"
                    return report
                await session.commit()
                await self._requeue_merge(job_id, report)
                increment_counter("jobs_healed_total")
                logger.info(
                    "render_job_merge_rearmed job_id=%s enqueued=%s retried=%s",
                    job_id,
                    len(report.enqueued),
                    len(report.retried),
                )
                return report
            artifacts = jobs_repo.distinct_artifacts(await jobs_repo.list_artifacts(session, job_id))
            report.missing = jobs_repo.missing_page_indexes(job.total_pages, artifacts.keys())
            if not report.missing:
                report.skipped = "complete"
                return report
            if len(job.layout_pages or []) < job.total_pages:
                # Without the layouts lost pages cannot be re-rendered.
                report.skipped = "layout_missing"
                return report
            if not await self._claim(session, job_id, now):
                report.skipped = "claimed_elsewhere"
                return report
            if job.stage == JobStage.FAILED.value:
                report.reopened = await jobs_repo.reopen_failed(session, job_id)
            await session.commit()

        await self._requeue_missing(job, report)
        increment_counter("jobs_healed_total")
        logger.info(
            "render_job_healed job_id=%s missing=%s reopened=%s retried=%s enqueued=%s",
            job_id,
            report.missing,
            report.reopened,
            len(report.retried),
            len(report.enqueued),
        )
        return report

    async def _requeue_missing(self, job: RenderJob, report: HealReport) -> None:
        queue_name = get_settings().render_queue_name
        for page_index in report.missing:
            task_id = page_task_id(job.id, page_index)
            state = await self.queue.get_task_state(queue_name, task_id)
            if state == TaskState.FAILED:
                await self.queue.retry(queue_name, task_id)
                report.retried.append(task_id)
            elif state is None:
                await enqueue_page(self.queue, job, page_index)
                report.enqueued.append(task_id)
            elif state == TaskState.COMPLETED:
                # Finished without leaving an artifact; run it again under the same id.
                await self.queue.retry(queue_name, task_id)
                report.retried.append(task_id)
            # waiting or active tasks are left alone

    async def _claim(self, session: AsyncSession, job_id: str, now: datetime) -> bool:
        settings = get_settings()
        claimed = await jobs_repo.claim_heal(
            session,
            job_id,
            now=now,
            updated_before=now - timedelta(seconds=settings.reconcile_stall_after_s),
            healed_before=now - timedelta(seconds=settings.reconcile_heal_interval_s),
        )
        if not claimed:
            await session.rollback()
        return claimed

    async def _requeue_merge(self, job_id: str, report: HealReport) -> None:
        queue_name = get_settings().merge_queue_name
        task_id = merge_task_id(job_id)
        state = await self.queue.get_task_state(queue_name, task_id)
        await ensure_enqueued(
            self.queue, queue_name, TASK_MERGE, MergePayload(job_id=job_id).model_dump(), dedupe_id=task_id
        )
        if state is None:
            report.enqueued.append(task_id)
        elif state in (TaskState.FAILED, TaskState.COMPLETED):
            report.retried.append(task_id)
