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
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track intake/ops request latency so webhook acknowledgement time stays visible.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture upstream call latency and outcomes.
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


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def _percentile(values: list[float], ratio: float) -> float:
    idx = max(0, math.ceil(ratio * len(values)) - 1)
    return values[idx]


def request_latency_summary(window_s: int) -> dict[str, float | None]:
    # Summarize p50/p95/max request latency in the window.
    cutoff = time.time() - window_s
    latencies = sorted(sample.latency_ms for sample in _request_samples if sample.ts >= cutoff)
    if not latencies:
        return {"p50": None, "p95": None, "max": None}
    return {"p50": _percentile(latencies, 0.5), "p95": _percentile(latencies, 0.95), "max": latencies[-1]}


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate upstream call latency and error rate per integration in the window.
    cutoff = time.time() - window_s
    by_integration: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        by_integration[sample.integration].append(sample)
    result: dict[str, dict[str, float | None]] = {}
    for integration, samples in by_integration.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        failures = sum(1 for sample in samples if not sample.success)
        result[integration] = {
            "p95": _percentile(latencies, 0.95),
            "max": latencies[-1],
            "error_rate": failures / len(samples),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Clear in-process metrics between tests.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()
    _gauges.clear()
