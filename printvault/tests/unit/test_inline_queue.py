from __future__ import annotations

import pytest
from arq import Retry

from printvault.services.queue import (
    InlineTaskQueue,
    TaskState,
    ensure_enqueued,
    merge_task_id,
    page_task_id,
    retry_delay_s,
    retry_or_raise,
)


def test_task_ids_are_deterministic() -> None:
    assert page_task_id("job-1", 3) == "job-1-page-3"
    assert merge_task_id("job-1") == "job-1-merge"


def test_retry_or_raise_backs_off_exponentially(monkeypatch) -> None:
    monkeypatch.setenv("RENDER_BACKOFF_S", "3")
    from printvault.core.config import get_settings

    get_settings.cache_clear()
    queue_name = get_settings().render_queue_name
    assert retry_delay_s(queue_name, 1) == 3
    assert retry_delay_s(queue_name, 2) == 6
    assert retry_delay_s(queue_name, 3) == 12

    error = RuntimeError("boom")
    with pytest.raises(Retry):
        retry_or_raise(error, queue_name=queue_name, attempt=1)
    # Attempts exhausted: the original error surfaces.
    with pytest.raises(RuntimeError):
        retry_or_raise(error, queue_name=queue_name, attempt=3)
    with pytest.raises(RuntimeError):
        retry_or_raise(error, queue_name=queue_name, attempt=1, retryable=False)


@pytest.mark.asyncio
async def test_inline_queue_dedupes_and_retries_handlers() -> None:
    calls: list[int] = []

    async def handler(ctx, payload) -> None:
        calls.append(ctx["job_try"])
        if ctx["job_try"] < 2:
            raise Retry(defer=0)

    queue = InlineTaskQueue({"render_page": handler})
    await queue.enqueue("q", "render_page", {"n": 1}, dedupe_id="t-1")
    await queue.enqueue("q", "render_page", {"n": 1}, dedupe_id="t-1")
    assert calls == [1, 2]
    assert await queue.get_task_state("q", "t-1") == TaskState.COMPLETED
    assert await queue.get_task_state("q", "missing") is None


@pytest.mark.asyncio
async def test_inline_queue_failed_task_can_be_retried_in_place() -> None:
    outcomes = iter([ValueError("first"), None])

    async def handler(ctx, payload) -> None:
        error = next(outcomes)
        if error is not None:
            raise error

    queue = InlineTaskQueue({"merge_job": handler})
    await queue.enqueue("q", "merge_job", {}, dedupe_id="job-merge")
    assert await queue.get_task_state("q", "job-merge") == TaskState.FAILED
    assert queue.tasks[("q", "job-merge")].error == "ValueError"

    assert await queue.retry("q", "job-merge") is True
    assert await queue.get_task_state("q", "job-merge") == TaskState.COMPLETED


@pytest.mark.asyncio
async def test_deferred_queue_runs_on_drain_and_ensure_enqueued_reruns_finished_tasks() -> None:
    runs: list[str] = []

    async def handler(ctx, payload) -> None:
        runs.append(ctx["job_id"])

    queue = InlineTaskQueue({"merge_job": handler}, run_immediately=False)
    await ensure_enqueued(queue, "q", "merge_job", {}, dedupe_id="job-merge")
    # Waiting tasks are left alone.
    await ensure_enqueued(queue, "q", "merge_job", {}, dedupe_id="job-merge")
    assert await queue.queue_depth("q") == 1
    assert await queue.drain() == 1
    assert runs == ["job-merge"]

    await ensure_enqueued(queue, "q", "merge_job", {}, dedupe_id="job-merge")
    assert await queue.drain() == 1
    assert runs == ["job-merge", "job-merge"]
