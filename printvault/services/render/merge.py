from __future__ import annotations

import asyncio
import io
import logging
from datetime import timedelta
from uuid import uuid4

from pypdf import PdfReader, PdfWriter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from printvault.core.config import get_settings
from printvault.core.errors import IncompleteError, NotFoundError
from printvault.domain.models import utc_now
from printvault.domain.states import DocumentKind, JobStage
from printvault.persistence.db import SessionLocal
from printvault.persistence.repos import documents as documents_repo
from printvault.persistence.repos import jobs as jobs_repo
from printvault.providers.storage.base import ObjectStore
from printvault.providers.storage.factory import get_object_store
from printvault.services.printing.ledger import create_or_adjust_entry
from printvault.services.queue import MergePayload
from printvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def merge_pdfs(chunks: list[bytes]) -> bytes:
    # Concatenate page documents in the given order into one PDF.
    writer = PdfWriter()
    for data in chunks:
        reader = PdfReader(io.BytesIO(data))
        for page in reader.pages:
            writer.add_page(page)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


class MergeCoordinator:
    """Assemble the final document once every page artifact is present.

    Safe to run more than once per job: a resolved job is a no-op, a live
    claim held by another worker is a no-op, and the final write only lands
    while `output_document_id` is still unset.
    """

    def __init__(
        self,
        *,
        store: ObjectStore | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._store = store
        self._session_factory = session_factory or SessionLocal

    @property
    def store(self) -> ObjectStore:
        if self._store is None:
            self._store = get_object_store()
        return self._store

    async def process_merge(self, payload: MergePayload) -> str | None:
        settings = get_settings()
        async with self._session_factory() as session:
            job = await jobs_repo.refresh_job(session, payload.job_id)
            if job is None:
                logger.warning("merge_job_missing job_id=%s", payload.job_id)
                return None
            if job.output_document_id is not None or job.stage == JobStage.COMPLETED.value:
                logger.info("merge_skipped_resolved job_id=%s", job.id)
                return job.output_document_id
            now = utc_now()
            claimed = await jobs_repo.claim_merge(
                session,
                job.id,
                now=now,
                stale_before=now - timedelta(seconds=settings.merge_claim_stale_after_s),
            )
            await session.commit()
        if not claimed:
            logger.info("merge_skipped_claimed job_id=%s stage=%s", payload.job_id, job.stage)
            return None
        try:
            return await self._merge(payload.job_id)
        except Exception as exc:
            await self._mark_failed(payload.job_id, exc)
            raise

    async def _merge(self, job_id: str) -> str | None:
        settings = get_settings()
        async with self._session_factory() as session:
            job = await jobs_repo.refresh_job(session, job_id)
            if job is None:
                raise NotFoundError("Render job not found", job_id=job_id)
            artifacts = jobs_repo.distinct_artifacts(await jobs_repo.list_artifacts(session, job_id))
        missing = jobs_repo.missing_page_indexes(job.total_pages, artifacts.keys())
        if missing:
            raise IncompleteError(
                f"Render job {job_id} is missing {len(missing)} page(s)",
                job_id=job_id,
                missing=missing,
            )

        chunks = [await self.store.get(artifacts[index].storage_key) for index in range(job.total_pages)]
        merged = await asyncio.to_thread(merge_pdfs, chunks)
        document_id = uuid4().hex
        key = await self.store.put(
            f"{settings.output_document_prefix}{job_id}/{document_id}.pdf", merged, "application/pdf"
        )

        async with self._session_factory() as session:
            await documents_repo.create_document(
                session,
                document_id=document_id,
                title=f"Render job {job_id}",
                storage_key=key,
                kind=DocumentKind.GENERATED,
                created_by=job.created_by,
            )
            await session.flush()
            if not await jobs_repo.finalize_merge(session, job_id, document_id=document_id):
                # Another merge resolved the job first; leave nothing behind in the DB.
                await session.rollback()
                logger.info("merge_finalize_lost job_id=%s", job_id)
                return None
            await create_or_adjust_entry(
                session,
                owner_id=job.owner_id,
                document_id=document_id,
                assigned_quota=job.assigned_quota,
            )
            await session.commit()
        increment_counter("merges_completed_total")
        logger.info(
            "merge_completed job_id=%s document_id=%s pages=%s", job_id, document_id, job.total_pages
        )
        return document_id

    async def _mark_failed(self, job_id: str, exc: Exception) -> None:
        async with self._session_factory() as session:
            await jobs_repo.mark_failed(
                session,
                job_id,
                reason=f"merge: {exc.__class__.__name__}",
                from_stages=[JobStage.MERGING, JobStage.FAILED],
            )
            await session.commit()
        increment_counter("merges_failed_total")
        logger.warning("merge_failed job_id=%s error=%s", job_id, exc.__class__.__name__)
