from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Any, Awaitable, Callable, Protocol

from arq import Retry, create_pool
from arq.connections import RedisSettings
from arq.constants import result_key_prefix
from arq.jobs import Job, JobStatus as ArqJobStatus
from pydantic import BaseModel, Field

from printvault.core.config import get_settings
from printvault.services.resilience import bounded_call


logger = logging.getLogger(__name__)

# Task names double as arq function names registered by the workers.
TASK_RENDER_PAGE = "render_page"
TASK_MERGE = "merge_job"
# Keep heartbeat keys stable for ops endpoint lookups.
WORKER_HEARTBEAT_PREFIX = "printvault:worker:heartbeat"


class TaskState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class RenderPagePayload(BaseModel):
    job_id: str
    page_index: int = Field(ge=0)
    page_layout: dict[str, Any]
    total_pages: int = Field(ge=1)


class MergePayload(BaseModel):
    # Only the id travels; the merge worker re-reads the job.
    job_id: str


def page_task_id(job_id: str, page_index: int) -> str:
    return f"{job_id}-page-{page_index}"


def merge_task_id(job_id: str) -> str:
    return f"{job_id}-merge"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TaskQueue(Protocol):
    async def enqueue(self, queue_name: str, task_type: str, payload: dict[str, Any], *, dedupe_id: str) -> str:
        ...

    async def get_task_state(self, queue_name: str, dedupe_id: str) -> TaskState | None:
        ...

    async def retry(self, queue_name: str, dedupe_id: str) -> bool:
        ...


def max_attempts_for(queue_name: str) -> int:
    settings = get_settings()
    if queue_name == settings.merge_queue_name:
        return max(1, settings.merge_max_attempts)
    return max(1, settings.render_max_attempts)


def backoff_for(queue_name: str) -> float:
    settings = get_settings()
    if queue_name == settings.merge_queue_name:
        return settings.merge_backoff_s
    return settings.render_backoff_s


def retry_delay_s(queue_name: str, attempt: int) -> float:
    # Exponential backoff: base, 2*base, 4*base, ...
    return backoff_for(queue_name) * (2 ** max(attempt - 1, 0))


def retry_or_raise(exc: Exception, *, queue_name: str, attempt: int, retryable: bool = True) -> None:
    # Hand transient failures back to the queue until attempts run out.
    if retryable and attempt < max_attempts_for(queue_name):
        raise Retry(defer=retry_delay_s(queue_name, attempt)) from exc
    raise exc


_ARQ_STATE = {
    ArqJobStatus.deferred: TaskState.WAITING,
    ArqJobStatus.queued: TaskState.WAITING,
    ArqJobStatus.in_progress: TaskState.ACTIVE,
}


class ArqTaskQueue:
    """Redis-backed queue; retries and backoff are applied by the arq workers."""

    def __init__(self, redis_url: str | None = None) -> None:
        self._redis_url = redis_url or get_settings().redis_url
        self._pool = None
        self._pool_loop = None
        self._lock = asyncio.Lock()

    async def get_pool(self):
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        current_loop = asyncio.get_running_loop()
        if self._pool is not None and self._pool_loop == current_loop:
            return self._pool
        if self._pool is not None and self._pool_loop != current_loop:
            self._pool = None
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._pool is None:
                self._pool = await create_pool(RedisSettings.from_dsn(self._redis_url))
                self._pool_loop = current_loop
        return self._pool

    async def enqueue(self, queue_name: str, task_type: str, payload: dict[str, Any], *, dedupe_id: str) -> str:
        redis = await self.get_pool()

        async def _call():
            return await redis.enqueue_job(task_type, payload, _job_id=dedupe_id, _queue_name=queue_name)

        job = await bounded_call("queue.enqueue", _call)
        if job is None:
            # arq refuses duplicate ids while the job or its result exists.
            logger.info("task_enqueue_deduplicated queue=%s task_id=%s", queue_name, dedupe_id)
        return dedupe_id

    async def get_task_state(self, queue_name: str, dedupe_id: str) -> TaskState | None:
        redis = await self.get_pool()
        job = Job(dedupe_id, redis, _queue_name=queue_name)

        async def _call() -> TaskState | None:
            status = await job.status()
            if status == ArqJobStatus.not_found:
                return None
            if status in _ARQ_STATE:
                return _ARQ_STATE[status]
            info = await job.result_info()
            if info is None:
                return None
            return TaskState.COMPLETED if info.success else TaskState.FAILED

        return await bounded_call("queue.get_state", _call)

    async def retry(self, queue_name: str, dedupe_id: str) -> bool:
        """Re-run a finished task in place under the same id.

        arq keeps the result under the job id, which blocks re-enqueue; the
        result is dropped and the original function and arguments are
        enqueued again.
        """
        redis = await self.get_pool()
        job = Job(dedupe_id, redis, _queue_name=queue_name)

        async def _call() -> bool:
            info = await job.result_info()
            if info is None:
                return False
            await redis.delete(result_key_prefix + dedupe_id)
            requeued = await redis.enqueue_job(
                info.function,
                *info.args,
                _job_id=dedupe_id,
                _queue_name=queue_name,
                **info.kwargs,
            )
            return requeued is not None

        return await bounded_call("queue.retry", _call)

    async def queue_depth(self, queue_name: str) -> int | None:
        try:
            redis = await self.get_pool()
            return int(await redis.zcard(queue_name))
        except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
            return None

    async def set_heartbeat(self, worker_name: str, *, timestamp: datetime | None = None) -> None:
        redis = await self.get_pool()
        await redis.set(f"{WORKER_HEARTBEAT_PREFIX}:{worker_name}", (timestamp or _utc_now()).isoformat())

    async def get_heartbeat(self, worker_name: str) -> datetime | None:
        try:
            redis = await self.get_pool()
            raw_value = await redis.get(f"{WORKER_HEARTBEAT_PREFIX}:{worker_name}")
        except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
            return None
        if not raw_value:
            return None
        value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None


TaskHandler = Callable[[dict[str, Any], dict[str, Any]], Awaitable[Any]]


@dataclass
class InlineTask:
    queue_name: str
    task_type: str
    payload: dict[str, Any]
    state: TaskState = TaskState.WAITING
    attempts: int = 0
    error: str | None = None
    enqueued_at: datetime = field(default_factory=_utc_now)


class InlineTaskQueue:
    """In-process queue for local runs and tests.

    Handlers receive the same `(ctx, payload)` arguments as arq functions and
    signal retries with `arq.Retry`. With `run_immediately` the task runs
    inside `enqueue`; otherwise it waits for `drain()`.
    """

    def __init__(
        self,
        handlers: dict[str, TaskHandler] | None = None,
        *,
        run_immediately: bool = True,
    ) -> None:
        self._handlers = dict(handlers or {})
        self._run_immediately = run_immediately
        self.tasks: dict[tuple[str, str], InlineTask] = {}
        self.enqueued: list[tuple[str, str]] = []

    def register(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    async def enqueue(self, queue_name: str, task_type: str, payload: dict[str, Any], *, dedupe_id: str) -> str:
        key = (queue_name, dedupe_id)
        if key in self.tasks:
            return dedupe_id
        self.tasks[key] = InlineTask(queue_name=queue_name, task_type=task_type, payload=payload)
        self.enqueued.append(key)
        if self._run_immediately:
            await self._run(dedupe_id, self.tasks[key])
        return dedupe_id

    async def get_task_state(self, queue_name: str, dedupe_id: str) -> TaskState | None:
        task = self.tasks.get((queue_name, dedupe_id))
        return task.state if task else None

    async def retry(self, queue_name: str, dedupe_id: str) -> bool:
        task = self.tasks.get((queue_name, dedupe_id))
        if task is None or task.state not in (TaskState.FAILED, TaskState.COMPLETED):
            return False
        task.state = TaskState.WAITING
        task.attempts = 0
        task.error = None
        self.enqueued.append((queue_name, dedupe_id))
        if self._run_immediately:
            await self._run(dedupe_id, task)
        return True

    async def drain(self) -> int:
        # Run waiting tasks until none are left, including ones enqueued while draining.
        processed = 0
        while True:
            waiting = [
                (key, task)
                for key, task in self.tasks.items()
                if task.state == TaskState.WAITING and task.task_type in self._handlers
            ]
            if not waiting:
                return processed
            for (_, dedupe_id), task in waiting:
                await self._run(dedupe_id, task)
                processed += 1

    async def queue_depth(self, queue_name: str) -> int:
        return sum(
            1 for (name, _), task in self.tasks.items() if name == queue_name and task.state == TaskState.WAITING
        )

    async def set_heartbeat(self, worker_name: str, *, timestamp: datetime | None = None) -> None:
        # Inline mode does not run a worker, so heartbeats are skipped.
        return None

    async def get_heartbeat(self, worker_name: str) -> datetime | None:
        return None

    async def _run(self, dedupe_id: str, task: InlineTask) -> None:
        handler = self._handlers.get(task.task_type)
        if handler is None:
            # Leave the task waiting; a handler may be registered later.
            return
        task.state = TaskState.ACTIVE
        while True:
            task.attempts += 1
            ctx = {"job_id": dedupe_id, "job_try": task.attempts, "queue_name": task.queue_name}
            try:
                await handler(ctx, task.payload)
            except Retry:
                # Inline mode retries without sleeping so tests stay fast.
                continue
            except Exception as exc:  # noqa: BLE001 - recorded as a failed task like arq does
                task.state = TaskState.FAILED
                task.error = exc.__class__.__name__
                logger.warning(
                    "inline_task_failed task_id=%s task_type=%s attempts=%s error=%s",
                    dedupe_id,
                    task.task_type,
                    task.attempts,
                    task.error,
                )
                return
            task.state = TaskState.COMPLETED
            return


def _inline_handlers() -> dict[str, TaskHandler]:
    # Imported lazily: the worker modules depend on this one.
    from printvault.workers.merge_worker import merge_job
    from printvault.workers.render_worker import render_page

    return {TASK_RENDER_PAGE: render_page, TASK_MERGE: merge_job}


@lru_cache
def get_task_queue() -> ArqTaskQueue | InlineTaskQueue:
    settings = get_settings()
    if settings.task_execution_mode.lower() == "inline":
        return InlineTaskQueue(_inline_handlers())
    return ArqTaskQueue(settings.redis_url)


async def ensure_enqueued(
    queue: TaskQueue, queue_name: str, task_type: str, payload: dict[str, Any], *, dedupe_id: str
) -> str:
    # A finished task with the same id would swallow the enqueue; re-run it instead.
    state = await queue.get_task_state(queue_name, dedupe_id)
    if state in (TaskState.FAILED, TaskState.COMPLETED):
        await queue.retry(queue_name, dedupe_id)
        return dedupe_id
    if state is None:
        return await queue.enqueue(queue_name, task_type, payload, dedupe_id=dedupe_id)
    return dedupe_id
