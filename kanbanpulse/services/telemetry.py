from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class SendSample:
    ts: float
    notifier: str
    latency_ms: float
    success: bool


_send_samples: Deque[SendSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def increment_counter(name: str, value: int = 1) -> None:
    # Counters back the health route and worker log summaries.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def record_send(*, notifier: str, latency_ms: float, success: bool) -> None:
    # Capture outbound transmission latency and outcome per notifier.
    _send_samples.append(
        SendSample(
            ts=time.time(),
            notifier=notifier,
            latency_ms=latency_ms,
            success=success,
        )
    )


def send_latency_by_notifier(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate p95/max send latency and success rate per notifier in the window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[SendSample]] = defaultdict(list)
    for sample in _send_samples:
        if sample.ts < cutoff:
            continue
        grouped[sample.notifier].append(sample)
    result: dict[str, dict[str, float | None]] = {}
    for notifier, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        successes = sum(1 for sample in samples if sample.success)
        result[notifier] = {
            "p95": latencies[p95_idx],
            "max": latencies[-1],
            "success_rate": successes / len(samples),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Test helper; clears all in-process samples.
    _send_samples.clear()
    _counters.clear()
    _gauges.clear()
