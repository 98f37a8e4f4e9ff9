"""Real-time gesture event pipeline: audio block + hand pose -> debounced events.

One `GestureDetector` per gesture class runs, every tick:

    spectral analysis -> noise gate -> features -> classifier
        -> EMA smoother -> Idle/Cooldown state machine

`GestureEngine` owns the detectors, pulls one audio block per configured
block size and one hand sample per tick from its sources, and publishes
the resulting events to an `EventQueue`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol

import numpy as np

from snapsense.classifier import (
    Classifier,
    ClassifierConfigError,
    LogisticClassifier,
    MelCNNClassifier,
    load_classifier,
)
from snapsense.config import ConfigurationError, DetectorConfig, EngineConfig, FeatureSource
from snapsense.events import (
    EventQueue,
    EventStateMachine,
    GestureEvent,
    ScoreSmoother,
)
from snapsense.gate import AdaptiveNoiseGate, GateDecision
from snapsense.kinematics import (
    FEATURE_DIM,
    HandMetricsTracker,
    HandSample,
    KinematicWindow,
    PinchDetector,
    PoseSource,
)
from snapsense.mel import MelSpectrogram
from snapsense.metrics import MetricsCollector
from snapsense.profiler import PipelineProfiler
from snapsense.spectral import BandLayout, SpectralAnalyzer, SpectralFeatures

logger = logging.getLogger("snapsense.pipeline")

_EXPECTED_KIND = {
    FeatureSource.SPECTRAL: "logistic",
    FeatureSource.MEL: "cnn",
    FeatureSource.KINEMATIC: "rbf",
}


class AudioSource(Protocol):
    """Microphone collaborator."""

    def get_audio_block(self, size: int) -> Optional[np.ndarray]:
        """Newest `size` mono samples in [-1, 1], or None if not available."""
        ...


class GestureDetector:
    """Detection chain for one gesture class.

    The mel history and the kinematic window are fed on every tick, before
    gating, so they describe the recent past even when the gate was closed.
    Whenever a score cannot be computed (no block, no hand, gate closed,
    window still filling) the smoothed score decays instead.
    """

    def __init__(
        self,
        config: DetectorConfig,
        sample_rate: int = 48000,
        classifier: Optional[Classifier] = None,
        profiler: Optional[PipelineProfiler] = None,
        metrics: Optional[MetricsCollector] = None,
        base_dir: Optional[Path] = None,
    ):
        self.config = config
        self.name = config.name
        self.sample_rate = sample_rate
        self.profiler = profiler or PipelineProfiler()
        self.metrics = metrics

        # an injected classifier belongs to the detector from here on
        try:
            config.validate()
            if config.low_band_bins is not None and config.high_band_bins is not None:
                layout = BandLayout.from_bins(config.block_size, config.low_band_bins, config.high_band_bins)
            else:
                layout = BandLayout.from_hz(
                    sample_rate, config.block_size, config.low_band_hz, config.high_band_hz
                )
        except ValueError as e:
            if classifier is not None:
                classifier.close()
            if isinstance(e, ConfigurationError):
                raise
            raise ConfigurationError(f"{self.name}: {e}") from e

        self.classifier = classifier or load_classifier(config.classifier.resolve(base_dir))
        try:
            self._build(layout)
        except Exception:
            self.classifier.close()
            raise

        self.smoother = ScoreSmoother(config.smoothing)
        self.machine = EventStateMachine(config.threshold, config.cooldown)
        self._last_decision: Optional[GateDecision] = None

    def _build(self, layout: BandLayout):
        config = self.config
        expected = _EXPECTED_KIND[config.feature]
        if self.classifier.kind.value != expected:
            raise ClassifierConfigError(
                f"{self.name}: feature '{config.feature.value}' needs a '{expected}' "
                f"classifier, got '{self.classifier.kind.value}'"
            )

        needs_spectrum = config.gate is not None or config.feature is FeatureSource.SPECTRAL
        self.analyzer = (
            SpectralAnalyzer(self.sample_rate, config.block_size, layout) if needs_spectrum else None
        )
        self.gate = AdaptiveNoiseGate(config.gate, name=self.name) if config.gate is not None else None

        self.mel: Optional[MelSpectrogram] = None
        if config.feature is FeatureSource.MEL:
            if not isinstance(self.classifier, MelCNNClassifier):
                raise ClassifierConfigError(
                    f"{self.name}: mel features need a MelCNNClassifier, "
                    f"got {type(self.classifier).__name__}"
                )
            self.mel = MelSpectrogram(self.classifier.meta.mel_settings())

        self.tracker: Optional[HandMetricsTracker] = None
        self.window: Optional[KinematicWindow] = None
        if config.feature is FeatureSource.KINEMATIC:
            if self.classifier.feature_dim != FEATURE_DIM:
                raise ClassifierConfigError(
                    f"{self.name}: kinematic window yields {FEATURE_DIM} features, "
                    f"model expects {self.classifier.feature_dim}"
                )
            self.tracker = HandMetricsTracker()
            self.window = KinematicWindow(config.window_size)

    @property
    def block_size(self) -> int:
        return self.config.block_size

    @property
    def score(self) -> float:
        return self.smoother.score

    @property
    def last_decision(self) -> Optional[GateDecision]:
        """Gate outcome of the latest tick that had an audio block."""
        return self._last_decision

    def _feed_history(self, block: Optional[np.ndarray], hand: Optional[HandSample], now: float):
        if self.mel is not None and block is not None:
            self.mel.push(block, self.sample_rate)
        if self.window is not None and hand is not None:
            self.window.push(self.tracker.observe(hand, now))

    def _features(
        self,
        spectral: Optional[SpectralFeatures],
        hand: Optional[HandSample],
    ) -> Optional[np.ndarray]:
        feature = self.config.feature
        if feature is FeatureSource.SPECTRAL:
            return LogisticClassifier.features_from(spectral) if spectral is not None else None
        if feature is FeatureSource.MEL:
            return self.mel.features() if self.mel.ready else None
        # the window keeps its frames while the hand is lost, but is not scored
        return self.window.features() if hand is not None else None

    def _probability(
        self,
        block: Optional[np.ndarray],
        hand: Optional[HandSample],
    ) -> Optional[float]:
        spectral = None
        if self.analyzer is not None:
            if block is None:
                return None
            with self.profiler.stage("spectral"):
                spectral = self.analyzer.analyze(block)

        if self.gate is not None:
            with self.profiler.stage("gate"):
                decision = self.gate.evaluate(spectral)
            self._last_decision = decision
            if not decision.passed:
                logger.debug(
                    "%s: gate closed at %s (rms=%.5f floor=%.5f)",
                    self.name, decision.reason.value, decision.rms, decision.floor,
                )
                if self.metrics is not None:
                    self.metrics.record_rejection(self.name, decision.reason.value)
                return None

        with self.profiler.stage("features"):
            x = self._features(spectral, hand)
        if x is None:
            return None

        with self.profiler.stage("classification"):
            return self.classifier.score(x)

    def process(
        self,
        block: Optional[np.ndarray],
        hand: Optional[HandSample],
        now: float,
    ) -> Optional[GestureEvent]:
        """Run one tick.

        Args:
            block: Newest `block_size` samples, or None if audio is unavailable.
            hand: Tracked hand sample, or None if the hand is not tracked.
            now: Monotonic timestamp in seconds.

        Returns:
            A GestureEvent on the rising edge of the smoothed score, else None.
        """
        self._feed_history(block, hand, now)

        p = self._probability(block, hand)

        with self.profiler.stage("decision"):
            score = self.smoother.decay() if p is None else self.smoother.update(p)
            fired = self.machine.step(score, now)

        if self.metrics is not None:
            self.metrics.set_score(self.name, score)
        if fired:
            return GestureEvent(self.name, now)
        return None

    def reset(self):
        """Clear all cross-tick state: floor, history, window, score, machine."""
        if self.gate is not None:
            self.gate.reset()
        if self.mel is not None:
            self.mel.reset()
        if self.window is not None:
            self.window.clear()
            self.tracker.reset()
        self.smoother.reset()
        self.machine.reset()
        self._last_decision = None

    def close(self):
        self.classifier.close()


@dataclass
class EngineStats:
    """Runtime counters of a `GestureEngine`."""
    ticks: int
    total_events: int
    event_counts: dict = field(default_factory=dict)
    scores: dict = field(default_factory=dict)
    over_budget: int = 0
    profiler_summary: dict = field(default_factory=dict)


class GestureEngine:
    """Owns every detector and drives them once per tick.

    Usage:
        engine = GestureEngine(EngineConfig.from_yaml("snap.yml"), mic, hands)
        engine.on_gesture(lambda e: print(e.gesture))
        while running:
            engine.tick()

    Construction builds every classifier eagerly; any configuration error
    aborts it. Classifiers passed in via `classifiers` (keyed by gesture
    name) are used instead of loading from the config, and are closed with
    the engine.
    """

    def __init__(
        self,
        config: EngineConfig,
        audio_source: Optional[AudioSource] = None,
        pose_source: Optional[PoseSource] = None,
        classifiers: Optional[dict[str, Classifier]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config
        self.audio_source = audio_source
        self.pose_source = pose_source
        self.metrics = metrics or MetricsCollector()
        self.profiler = PipelineProfiler()
        self.profiler.enabled = config.enable_profiling
        self.queue = EventQueue(config.event_queue_size)
        self._closed = False
        self._ticks = 0
        self._total_events = 0

        classifiers = classifiers or {}
        self.detectors: list[GestureDetector] = []
        try:
            config.validate()
            for det_config in config.detectors:
                self.detectors.append(GestureDetector(
                    det_config,
                    sample_rate=config.sample_rate,
                    classifier=classifiers.get(det_config.name),
                    profiler=self.profiler,
                    metrics=self.metrics,
                    base_dir=config.base_dir,
                ))
        except Exception:
            for det in self.detectors:
                det.close()
            for clf in classifiers.values():
                clf.close()
            raise

        self.pinch: Optional[PinchDetector] = None
        if config.pinch.enabled:
            self.pinch = PinchDetector(config.pinch.name, config.pinch.threshold, config.pinch.cooldown)

        self._block_sizes = sorted({d.block_size for d in self.detectors})
        logger.info(
            "Engine ready: %s at %d Hz",
            ", ".join(self.gestures) or "no detectors",
            config.sample_rate,
        )

    @property
    def gestures(self) -> list[str]:
        names = [d.name for d in self.detectors]
        if self.pinch is not None:
            names.append(self.pinch.name)
        return names

    def on_gesture(self, callback: Callable[[GestureEvent], None]):
        """Subscribe a callback to every emitted event."""
        self.queue.subscribe(callback)

    def poll_events(self) -> list[GestureEvent]:
        return self.queue.poll()

    def tick(self, now: Optional[float] = None) -> list[GestureEvent]:
        """Pull fresh input from the sources and run every detector once."""
        if now is None:
            now = time.monotonic()

        blocks: dict[int, Optional[np.ndarray]] = {}
        for size in self._block_sizes:
            blocks[size] = self.audio_source.get_audio_block(size) if self.audio_source else None

        hand = HandSample.from_source(self.pose_source) if self.pose_source else None
        return self._run(now, blocks, hand)

    def process(
        self,
        now: float,
        audio: Optional[np.ndarray] = None,
        hand: Optional[HandSample] = None,
    ) -> list[GestureEvent]:
        """Run one tick on explicit input instead of the sources.

        Each detector sees the newest `block_size` samples of `audio`; a
        detector whose block size exceeds `len(audio)` gets no block.
        """
        blocks: dict[int, Optional[np.ndarray]] = {}
        if audio is not None:
            audio = np.asarray(audio, dtype=np.float32).ravel()
            for size in self._block_sizes:
                blocks[size] = audio[-size:] if audio.size >= size else None
        return self._run(now, blocks, hand)

    def _run(
        self,
        now: float,
        blocks: dict[int, Optional[np.ndarray]],
        hand: Optional[HandSample],
    ) -> list[GestureEvent]:
        if self._closed:
            raise RuntimeError("GestureEngine is closed")

        t0 = time.perf_counter()
        events: list[GestureEvent] = []
        with self.profiler.tick():
            for det in self.detectors:
                event = det.process(blocks.get(det.block_size), hand, now)
                if event is not None:
                    events.append(event)
            if self.pinch is not None:
                event = self.pinch.process(hand, now)
                if event is not None:
                    events.append(event)

        self._ticks += 1
        self.metrics.record_tick(time.perf_counter() - t0)

        for event in events:
            self._total_events += 1
            self.metrics.record_event(event.gesture)
            logger.info("Gesture %s at %.3f", event.gesture, event.timestamp)
            self.queue.publish(event)
        return events

    def current_smoothed_score(self, gesture: Optional[str] = None) -> float:
        """Smoothed score of `gesture` (the first detector if omitted)."""
        if not self.detectors:
            raise KeyError("No scored detectors configured")
        if gesture is None:
            return self.detectors[0].score
        for det in self.detectors:
            if det.name == gesture:
                return det.score
        raise KeyError(f"Unknown gesture '{gesture}'")

    @property
    def stats(self) -> EngineStats:
        return EngineStats(
            ticks=self._ticks,
            total_events=self._total_events,
            event_counts=self.metrics.event_counts,
            scores={d.name: d.score for d in self.detectors},
            over_budget=self.profiler.over_budget,
            profiler_summary=self.profiler.summary(),
        )

    def reset(self):
        """Clear detector state, queued events and counters."""
        for det in self.detectors:
            det.reset()
        if self.pinch is not None:
            self.pinch.reset()
        self.queue.clear()
        self.profiler.reset()
        self._ticks = 0
        self._total_events = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        """Release classifier resources. Safe to call more than once."""
        if self._closed:
            return
        for det in self.detectors:
            det.close()
        self._closed = True
        logger.info("Engine closed after %d ticks", self._ticks)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
