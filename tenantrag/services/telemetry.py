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


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for health reporting.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture embedding/generation/store call latency and outcomes.
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


def counters() -> dict[str, int]:
    return dict(_counters)


def _percentile(values: list[float], pct: float) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    index = max(0, min(len(ordered) - 1, int(math.ceil(pct / 100.0 * len(ordered))) - 1))
    return ordered[index]


def snapshot(window_s: int = 300) -> dict[str, object]:
    # Summarize the recent window for the readiness endpoint.
    cutoff = time.time() - window_s
    requests = [sample for sample in _request_samples if sample.ts >= cutoff]
    external = [sample for sample in _external_samples if sample.ts >= cutoff]
    latencies = [sample.latency_ms for sample in requests]
    errors = sum(1 for sample in requests if sample.status_code >= 500)
    return {
        "window_s": window_s,
        "requests": len(requests),
        "error_rate": (errors / len(requests)) if requests else None,
        "p95_latency_ms": _percentile(latencies, 95),
        "external_calls": len(external),
        "external_failures": sum(1 for sample in external if not sample.success),
        "counters": counters(),
    }


def reset_telemetry() -> None:
    # Allow tests to isolate counters between runs.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()
