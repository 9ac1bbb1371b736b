from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from printvault.core.config import get_settings
from printvault.core.errors import InvalidLayoutError, RasterizationError
from printvault.domain.models import RenderJob
from printvault.domain.states import RENDERABLE_STAGES, JobStage
from printvault.persistence.counters import AtomicCounterStore
from printvault.persistence.db import SessionLocal
from printvault.persistence.repos import jobs as jobs_repo
from printvault.providers.rasterizer.base import PageRasterizer
from printvault.providers.rasterizer.factory import get_rasterizer
from printvault.providers.storage.base import ObjectStore
from printvault.providers.storage.factory import get_object_store
from printvault.services.queue import (
    TASK_MERGE,
    TASK_RENDER_PAGE,
    MergePayload,
    RenderPagePayload,
    TaskQueue,
    ensure_enqueued,
    get_task_queue,
    merge_task_id,
    page_task_id,
)
from printvault.services.render.layout import sanitize_layout_pages
from printvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def page_artifact_key(job_id: str, page_index: int) -> str:
    # Unique per attempt so a duplicate render never overwrites a recorded artifact.
    prefix = get_settings().page_artifact_prefix
    return f"{prefix}{job_id}/{page_index:05d}-{uuid4().hex}.pdf"


async def enqueue_page(queue: TaskQueue, job: RenderJob, page_index: int) -> str:
    payload = RenderPagePayload(
        job_id=job.id,
        page_index=page_index,
        page_layout=job.layout_pages[page_index],
        total_pages=job.total_pages,
    )
    return await queue.enqueue(
        get_settings().render_queue_name,
        TASK_RENDER_PAGE,
        payload.model_dump(),
        dedupe_id=page_task_id(job.id, page_index),
    )


class RenderCoordinator:
    """Fan a layout out into per-page tasks and detect when all pages are in.

    Page tasks run in separate worker processes; the only shared state is the
    job row, which is changed exclusively through conditional updates.
    """

    def __init__(
        self,
        *,
        queue: TaskQueue | None = None,
        store: ObjectStore | None = None,
        rasterizer: PageRasterizer | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._queue = queue
        self._store = store
        self._rasterizer = rasterizer
        self._session_factory = session_factory or SessionLocal

    @property
    def queue(self) -> TaskQueue:
        if self._queue is None:
            self._queue = get_task_queue()
        return self._queue

    @property
    def store(self) -> ObjectStore:
        if self._store is None:
            self._store = get_object_store()
        return self._store

    @property
    def rasterizer(self) -> PageRasterizer:
        if self._rasterizer is None:
            self._rasterizer = get_rasterizer()
        return self._rasterizer

    async def submit(
        self,
        session: AsyncSession,
        *,
        owner_id: str,
        layout_pages: Any,
        assigned_quota: int,
        created_by: str | None = None,
    ) -> RenderJob:
        if assigned_quota <= 0:
            raise InvalidLayoutError("assigned_quota must be a positive number")
        pages = sanitize_layout_pages(layout_pages)
        job = await jobs_repo.create_job(
            session,
            job_id=uuid4().hex,
            owner_id=owner_id,
            created_by=created_by,
            assigned_quota=assigned_quota,
            layout_pages=pages,
        )
        # Commit before enqueueing so workers never race ahead of the job row.
        await session.commit()
        logger.info("render_job_submitted job_id=%s owner_id=%s pages=%s", job.id, owner_id, len(pages))
        for page_index in range(job.total_pages):
            await enqueue_page(self.queue, job, page_index)
        increment_counter("render_jobs_submitted_total")
        return job

    async def process_page(self, payload: RenderPagePayload) -> str | None:
        """Render one page and record it; returns the artifact key or None when skipped."""
        async with self._session_factory() as session:
            job = await jobs_repo.refresh_job(session, payload.job_id)
            if job is None:
                logger.warning("render_page_job_missing job_id=%s", payload.job_id)
                return None
            if job.output_document_id is not None or job.stage in (
                JobStage.MERGING.value,
                JobStage.COMPLETED.value,
            ):
                logger.info(
                    "render_page_skipped job_id=%s page_index=%s stage=%s",
                    job.id,
                    payload.page_index,
                    job.stage,
                )
                return None
        try:
            return await self._render_and_record(payload)
        except Exception as exc:
            await self._mark_failed(payload, exc)
            raise

    async def _render_and_record(self, payload: RenderPagePayload) -> str | None:
        pdf_bytes = await self.rasterizer.rasterize(payload.page_layout)
        if not pdf_bytes:
            raise RasterizationError("Rasterizer returned an empty page", page_index=payload.page_index)
        key = await self.store.put(
            page_artifact_key(payload.job_id, payload.page_index), pdf_bytes, "application/pdf"
        )

        async with self._session_factory() as session:
            pages: AtomicCounterStore = jobs_repo.PageCompletionCounter(
                page_index=payload.page_index, storage_key=key
            )
            counter = await pages.increment(session, payload.job_id)
            if counter is None:
                # Job moved on (merging or resolved) while this page rendered.
                await session.rollback()
                logger.info(
                    "render_page_late job_id=%s page_index=%s", payload.job_id, payload.page_index
                )
                return None
            await session.commit()
        increment_counter("pages_rendered_total")
        logger.info(
            "render_page_recorded job_id=%s page_index=%s completed=%s total=%s",
            payload.job_id,
            payload.page_index,
            counter.value,
            counter.limit,
        )
        if counter.reached:
            await self._trigger_merge(payload.job_id)
        return key

    async def _trigger_merge(self, job_id: str) -> None:
        # Exactly one completing worker wins the rendering -> merging transition.
        async with self._session_factory() as session:
            won = await jobs_repo.try_begin_merge_stage(session, job_id)
            await session.commit()
        if not won:
            logger.info("merge_transition_skipped job_id=%s", job_id)
            return
        await ensure_enqueued(
            self.queue,
            get_settings().merge_queue_name,
            TASK_MERGE,
            MergePayload(job_id=job_id).model_dump(),
            dedupe_id=merge_task_id(job_id),
        )
        logger.info("merge_enqueued job_id=%s task_id=%s", job_id, merge_task_id(job_id))

    async def _mark_failed(self, payload: RenderPagePayload, exc: Exception) -> None:
        async with self._session_factory() as session:
            await jobs_repo.mark_failed(
                session,
                payload.job_id,
                reason=f"page {payload.page_index}: {exc.__class__.__name__}",
                from_stages=sorted(RENDERABLE_STAGES | {JobStage.FAILED}),
            )
            await session.commit()
        increment_counter("pages_failed_total")
        logger.warning(
            "render_page_failed job_id=%s page_index=%s error=%s",
            payload.job_id,
            payload.page_index,
            exc.__class__.__name__,
        )
