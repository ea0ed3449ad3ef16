from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_stream_samples: Deque[float] = deque(maxlen=5000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_stream_duration(duration_ms: float) -> None:
    # Track SSE stream lifetimes so dropped-connection storms show up in ops.
    _stream_samples.append(duration_ms)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture webhook and broker call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def _p95(values: list[float]) -> float:
    values.sort()
    return values[max(0, math.ceil(0.95 * len(values)) - 1)]


def p95_latency(window_s: int, *, path_prefix: str | None = None) -> float | None:
    cutoff = time.time() - window_s
    latencies = [
        sample.latency_ms
        for sample in _request_samples
        if sample.ts >= cutoff and (not path_prefix or sample.path.startswith(path_prefix))
    ]
    if not latencies:
        return None
    return _p95(latencies)


def external_call_stats(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate latency and success rate per integration for the ops endpoint.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    result: dict[str, dict[str, float | None]] = {}
    for integration, samples in grouped.items():
        latencies = [sample.latency_ms for sample in samples]
        successes = sum(1 for sample in samples if sample.success)
        result[integration] = {
            "p95": _p95(latencies),
            "max": max(latencies),
            "success_rate": successes / len(samples),
        }
    return result


def stream_duration_stats() -> dict[str, float | None]:
    if not _stream_samples:
        return {"p95": None, "max": None}
    latencies = list(_stream_samples)
    return {"p95": _p95(latencies), "max": max(latencies)}


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    # Clear in-process samples between tests.
    _request_samples.clear()
    _stream_samples.clear()
    _external_samples.clear()
    _counters.clear()
