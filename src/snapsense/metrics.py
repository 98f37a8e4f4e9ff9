"""Prometheus text-format metrics for the gesture engine.

Rendered on demand (e.g. by the CLI or a host application's HTTP handler);
no client library is needed for the exposition format.

Series:
- snapsense_events_total{gesture}             counter
- snapsense_gate_rejections_total{gesture,stage}  counter
- snapsense_ticks_total                       counter
- snapsense_tick_latency_seconds              histogram
- snapsense_smoothed_score{gesture}           gauge
"""

from __future__ import annotations

import threading
import time
from collections import Counter


class _Histogram:
    """Cumulative-bucket histogram."""

    def __init__(self, buckets: list[float]):
        self.buckets = sorted(buckets)
        self.counts = [0] * len(self.buckets)
        self.count = 0
        self.sum = 0.0

    def observe(self, value: float):
        self.count += 1
        self.sum += value
        for i, upper in enumerate(self.buckets):
            if value <= upper:
                self.counts[i] += 1
                break

    def render(self, name: str, help_text: str) -> list[str]:
        lines = [f"# HELP {name} {help_text}", f"# TYPE {name} histogram"]
        running = 0
        for upper, n in zip(self.buckets, self.counts):
            running += n
            lines.append(f'{name}_bucket{{le="{upper}"}} {running}')
        lines.append(f'{name}_bucket{{le="+Inf"}} {self.count}')
        lines.append(f"{name}_sum {self.sum:.6f}")
        lines.append(f"{name}_count {self.count}")
        return lines


class MetricsCollector:
    """Counters and gauges fed by the engine's tick loop."""

    def __init__(self):
        self._lock = threading.Lock()
        self._events: Counter = Counter()
        self._rejections: Counter = Counter()  # (gesture, stage) -> n
        self._scores: dict[str, float] = {}
        self._ticks = 0
        # 0.5 ms .. 50 ms around the 10-20 ms tick budget
        self._latency = _Histogram([0.0005, 0.001, 0.002, 0.005, 0.010, 0.020, 0.050])
        self._started = time.time()

    def record_tick(self, latency_seconds: float):
        with self._lock:
            self._ticks += 1
            self._latency.observe(latency_seconds)

    def record_event(self, gesture: str):
        with self._lock:
            self._events[gesture] += 1

    def record_rejection(self, gesture: str, stage: str):
        with self._lock:
            self._rejections[(gesture, stage)] += 1

    def set_score(self, gesture: str, score: float):
        with self._lock:
            self._scores[gesture] = score

    @property
    def event_counts(self) -> dict[str, int]:
        with self._lock:
            return dict(self._events)

    @property
    def rejection_counts(self) -> dict[tuple[str, str], int]:
        with self._lock:
            return dict(self._rejections)

    @property
    def ticks(self) -> int:
        return self._ticks

    def render(self) -> str:
        """All series in Prometheus text exposition format."""
        lines: list[str] = []
        with self._lock:
            lines += [
                "# HELP snapsense_uptime_seconds Seconds since the collector was created",
                "# TYPE snapsense_uptime_seconds gauge",
                f"snapsense_uptime_seconds {time.time() - self._started:.1f}",
                "",
                "# HELP snapsense_events_total Gesture events emitted",
                "# TYPE snapsense_events_total counter",
            ]
            for gesture, n in sorted(self._events.items()):
                lines.append(f'snapsense_events_total{{gesture="{gesture}"}} {n}')
            lines += [
                "",
                "# HELP snapsense_gate_rejections_total Audio blocks rejected by the noise gate",
                "# TYPE snapsense_gate_rejections_total counter",
            ]
            for (gesture, stage), n in sorted(self._rejections.items()):
                lines.append(
                    f'snapsense_gate_rejections_total{{gesture="{gesture}",stage="{stage}"}} {n}'
                )
            lines += [
                "",
                "# HELP snapsense_ticks_total Ticks processed",
                "# TYPE snapsense_ticks_total counter",
                f"snapsense_ticks_total {self._ticks}",
                "",
            ]
            lines += self._latency.render(
                "snapsense_tick_latency_seconds", "Wall time of one engine tick"
            )
            lines += [
                "",
                "# HELP snapsense_smoothed_score Current smoothed detector score",
                "# TYPE snapsense_smoothed_score gauge",
            ]
            for gesture, score in sorted(self._scores.items()):
                lines.append(f'snapsense_smoothed_score{{gesture="{gesture}"}} {score:.4f}')
        return "\n".join(lines) + "\n"
