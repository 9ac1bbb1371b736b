from __future__ import annotations

import asyncio

import pytest

from printvault.core.errors import NotFoundError, UpstreamFailureError
from printvault.services import telemetry
from printvault.services.resilience import RetryPolicy, bounded_call, is_transient, retry_async


FAST = RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1)


class _StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"status {status_code}")
        self.status_code = status_code


def test_transient_classification() -> None:
    assert is_transient(TimeoutError())
    assert is_transient(ConnectionResetError())
    assert is_transient(_StatusError(503))
    assert not is_transient(_StatusError(404))
    assert not is_transient(ValueError("bad layout"))
    assert not is_transient(NotFoundError("missing"))


@pytest.mark.asyncio
async def test_store_blip_is_retried_and_counted() -> None:
    attempts: list[int] = []

    async def put_page() -> str:
        attempts.append(len(attempts) + 1)
        if len(attempts) < 3:
            raise ConnectionResetError("peer reset")
        return "generated/pages/job/00000.pdf"

    key = await retry_async(put_page, policy=FAST, integration="object_store.local.put")
    assert key.endswith("00000.pdf")
    assert attempts == [1, 2, 3]
    assert telemetry.counters_snapshot()["external_retries_total.object_store.local.put"] == 2


@pytest.mark.asyncio
async def test_non_transient_errors_fail_on_first_attempt() -> None:
    calls = 0

    async def broken() -> None:
        nonlocal calls
        calls += 1
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        await retry_async(broken, policy=FAST)
    assert calls == 1


@pytest.mark.asyncio
async def test_bounded_call_turns_timeouts_into_upstream_failures() -> None:
    async def slow() -> None:
        await asyncio.sleep(1)

    with pytest.raises(UpstreamFailureError) as excinfo:
        await bounded_call("queue.enqueue", slow, policy=RetryPolicy(timeout_ms=10, max_attempts=1, backoff_ms=1))
    assert excinfo.value.context["integration"] == "queue.enqueue"
    summary = telemetry.external_summary(60)
    assert summary["queue.enqueue"]["calls"] == 1
    assert summary["queue.enqueue"]["error_rate"] == 1.0


@pytest.mark.asyncio
async def test_bounded_call_keeps_domain_errors() -> None:
    async def missing() -> None:
        raise NotFoundError("Object not found: source/abc.pdf")

    with pytest.raises(NotFoundError):
        await bounded_call("object_store.local.get", missing, policy=FAST)
    assert telemetry.external_summary(60)["object_store.local.get"]["error_rate"] == 1.0
