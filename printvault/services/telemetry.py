from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture object store, rasterizer and queue latency and outcomes.
    _external_samples.append(
        ExternalCallSample(ts=time.time(), integration=integration, latency_ms=latency_ms, success=success)
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def _p95(values: list[float]) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    return ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)]


def external_summary(window_s: int) -> dict[str, dict[str, Any]]:
    # Aggregate call counts, error rates and p95 latency per integration.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    summary: dict[str, dict[str, Any]] = {}
    for integration, samples in grouped.items():
        failures = sum(1 for sample in samples if not sample.success)
        summary[integration] = {
            "calls": len(samples),
            "error_rate": failures / len(samples),
            "p95_ms": _p95([sample.latency_ms for sample in samples]),
        }
    return summary


def request_summary(window_s: int) -> dict[str, Any]:
    cutoff = time.time() - window_s
    samples = [sample for sample in _request_samples if sample.ts >= cutoff]
    if not samples:
        return {"requests": 0, "availability": None, "p95_ms": None}
    failures = sum(1 for sample in samples if sample.status_code >= 500)
    return {
        "requests": len(samples),
        "availability": ((len(samples) - failures) / len(samples)) * 100.0,
        "p95_ms": _p95([sample.latency_ms for sample in samples]),
    }


def snapshot(window_s: int = 300) -> dict[str, Any]:
    return {
        "window_s": window_s,
        "requests": request_summary(window_s),
        "external": external_summary(window_s),
        "counters": counters_snapshot(),
        "gauges": dict(_gauges),
    }


def reset() -> None:
    # Test helper; metrics are process-local.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()
    _gauges.clear()
