from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from printvault.core.config import get_settings
from printvault.core.errors import InvalidLayoutError, NotFoundError
from printvault.core.logging import configure_logging
from printvault.services.queue import ArqTaskQueue, RenderPagePayload, retry_or_raise
from printvault.services.render.coordinator import RenderCoordinator


logger = logging.getLogger(__name__)

# Bad layouts and missing jobs fail the same way on every attempt.
_TERMINAL_ERRORS = (InvalidLayoutError, NotFoundError)


async def render_page(ctx, payload: dict) -> str | None:
    # Parse and validate payloads in the worker to enforce the task contract.
    page_payload = RenderPagePayload.model_validate(payload)
    settings = get_settings()
    attempt = ctx.get("job_try", 1)
    queue_name = ctx.get("queue_name") or settings.render_queue_name
    coordinator = ctx.get("render_coordinator") or RenderCoordinator()
    try:
        return await coordinator.process_page(page_payload)
    except Exception as exc:
        logger.warning(
            "render_page_attempt_failed task_id=%s attempt=%s error=%s",
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


async def _heartbeat_loop(queue: ArqTaskQueue, worker_name: str) -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        try:
            await queue.set_heartbeat(worker_name)
        except Exception as exc:  # noqa: BLE001 - a missed beat must not kill the worker
            logger.warning("worker_heartbeat_failed worker=%s error=%s", worker_name, exc.__class__.__name__)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    worker_name = "render"
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop(ArqTaskQueue(), worker_name))
    logger.info("render_worker_started worker=%s", worker_name)


async def _shutdown(ctx) -> None:
    # Cancel the heartbeat task to avoid dangling coroutines on exit.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.render_queue_name
    max_tries = settings.render_max_attempts
    max_jobs = settings.worker_max_jobs
    functions = [render_page]
    on_startup = _startup
    on_shutdown = _shutdown
