"""Per-stage timing of the tick pipeline.

Each tick runs spectral analysis, gating, feature extraction, classification
and the event decision. The profiler keeps a rolling window of timings per
stage and counts ticks that overran the tick budget (10-20 ms, set by the
host's frame or audio-callback cadence).
"""

from __future__ import annotations

import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional


@dataclass
class StageStats:
    """Rolling timing statistics of one stage, in milliseconds."""
    name: str
    avg_ms: float
    max_ms: float
    p95_ms: float
    calls: int


class PipelineProfiler:
    """Times named stages of the tick loop.

    Usage:
        profiler = PipelineProfiler(budget_ms=16.0)

        with profiler.stage("spectral"):
            features = analyzer.analyze(block)

        with profiler.tick():
            engine.tick()

        profiler.summary()["total"]["p95_ms"]
    """

    STAGES = ("spectral", "gate", "features", "classification", "decision", "total")

    def __init__(self, window_size: int = 240, budget_ms: float = 20.0):
        self.budget_ms = budget_ms
        self._window_size = window_size
        self._samples: dict[str, deque[float]] = {}
        self._calls: dict[str, int] = {}
        self._over_budget = 0
        self.enabled = True
        for name in self.STAGES:
            self._ensure(name)

    def _ensure(self, name: str):
        if name not in self._samples:
            self._samples[name] = deque(maxlen=self._window_size)
            self._calls[name] = 0

    def record(self, name: str, elapsed_ms: float):
        """Add one measurement for `name`."""
        if not self.enabled:
            return
        self._ensure(name)
        self._samples[name].append(elapsed_ms)
        self._calls[name] += 1

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        """Time the enclosed block as one call of `name`."""
        if not self.enabled:
            yield
            return
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.record(name, (time.perf_counter() - t0) * 1000.0)

    @contextmanager
    def tick(self) -> Iterator[None]:
        """Time a whole tick under "total" and check it against the budget."""
        if not self.enabled:
            yield
            return
        t0 = time.perf_counter()
        try:
            yield
        finally:
            elapsed = (time.perf_counter() - t0) * 1000.0
            self.record("total", elapsed)
            if elapsed > self.budget_ms:
                self._over_budget += 1

    @property
    def over_budget(self) -> int:
        """Ticks that took longer than `budget_ms`."""
        return self._over_budget

    def get_stage_stats(self, name: str) -> Optional[StageStats]:
        samples = self._samples.get(name)
        if not samples:
            return None
        ordered = sorted(samples)
        n = len(ordered)
        return StageStats(
            name=name,
            avg_ms=sum(ordered) / n,
            max_ms=ordered[-1],
            p95_ms=ordered[min(n - 1, int(n * 0.95))],
            calls=self._calls[name],
        )

    def summary(self) -> dict[str, dict]:
        out = {}
        for name in self._samples:
            stats = self.get_stage_stats(name)
            if stats is None:
                continue
            out[name] = {
                "avg_ms": round(stats.avg_ms, 3),
                "max_ms": round(stats.max_ms, 3),
                "p95_ms": round(stats.p95_ms, 3),
                "calls": stats.calls,
            }
        return out

    def reset(self):
        for samples in self._samples.values():
            samples.clear()
        for name in self._calls:
            self._calls[name] = 0
        self._over_budget = 0
