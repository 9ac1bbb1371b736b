from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from printvault.core.config import get_settings
from printvault.core.errors import IncompleteError, NotFoundError
from printvault.core.logging import configure_logging
from printvault.services.queue import ArqTaskQueue, MergePayload, retry_or_raise
from printvault.services.render.merge import MergeCoordinator
from printvault.workers.render_worker import _heartbeat_loop, _shutdown


logger = logging.getLogger(__name__)

# Missing pages are recovered by the reconciler re-rendering them, not by retrying the merge.
_TERMINAL_ERRORS = (IncompleteError, NotFoundError)


async def merge_job(ctx, payload: dict) -> str | None:
    merge_payload = MergePayload.model_validate(payload)
    settings = get_settings()
    attempt = ctx.get("job_try", 1)
    queue_name = ctx.get("queue_name") or settings.merge_queue_name
    coordinator = ctx.get("merge_coordinator") or MergeCoordinator()
    try:
        return await coordinator.process_merge(merge_payload)
    except Exception as exc:
        logger.warning(
            "merge_attempt_failed task_id=%s attempt=%s error=%s",
            ctx.get("job_id"),
            attempt,
            exc.__class__.__name__,
        )
        retry_or_raise(
            exc,
            queue_name=queue_name,
            attempt=attempt,
            retryable=not isinstance(exc, _TERMINAL_ERRORS),
        )
        raise


async def _startup(ctx) -> None:
    configure_logging()
    worker_name = "merge"
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop(ArqTaskQueue(), worker_name))
    logger.info("merge_worker_started worker=%s", worker_name)


class WorkerSettings:
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.merge_queue_name
    max_tries = settings.merge_max_attempts
    # Merges hold whole documents in memory; keep them serial per worker.
    max_jobs = 1
    functions = [merge_job]
    on_startup = _startup
    on_shutdown = _shutdown
