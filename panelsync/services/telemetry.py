from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class PanelCallSample:
    ts: float
    family: str
    panel: str
    latency_ms: float
    success: bool


_panel_calls: Deque[PanelCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_panel_call(*, family: str, panel: str, latency_ms: float, success: bool) -> None:
    _panel_calls.append(
        PanelCallSample(
            ts=time.time(),
            family=family,
            panel=panel,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def _percentile(sorted_values: list[float], fraction: float) -> float:
    # Nearest-rank on a non-empty sorted list.
    return sorted_values[max(0, math.ceil(fraction * len(sorted_values)) - 1)]


def panel_call_stats(window_s: int) -> dict[str, dict[str, float | None]]:
    """Latency and failure counts per panel over the last `window_s` seconds."""
    cutoff = time.time() - window_s
    latencies: dict[str, list[float]] = defaultdict(list)
    failures: dict[str, int] = defaultdict(int)
    families: dict[str, str] = {}
    for sample in _panel_calls:
        if sample.ts < cutoff:
            continue
        latencies[sample.panel].append(sample.latency_ms)
        families[sample.panel] = sample.family
        if not sample.success:
            failures[sample.panel] += 1
    stats: dict[str, dict[str, float | None]] = {}
    for panel, values in latencies.items():
        values.sort()
        stats[panel] = {
            "calls": float(len(values)),
            "failures": float(failures[panel]),
            "failure_ratio": failures[panel] / len(values),
            "p50_ms": _percentile(values, 0.5),
            "p95_ms": _percentile(values, 0.95),
            "max_ms": values[-1],
        }
    return stats


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Tests share the module-level buffers.
    _panel_calls.clear()
    _counters.clear()
    _gauges.clear()
