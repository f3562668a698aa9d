from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
import time
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def increment_counter(name: str, value: int = 1) -> None:
    # Process-local counters surfaced by the ops routes.
    _counters[name] += value


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def external_call_summary(window_s: int = 300) -> dict[str, dict[str, float | int | None]]:
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    summary: dict[str, dict[str, float | int | None]] = {}
    for integration, samples in grouped.items():
        failures = sum(1 for sample in samples if not sample.success)
        summary[integration] = {
            "calls": len(samples),
            "failures": failures,
            "avg_latency_ms": round(sum(sample.latency_ms for sample in samples) / len(samples), 2),
        }
    return summary


def reset_telemetry() -> None:
    _external_samples.clear()
    _counters.clear()
