"""Adaptive noise gate: cheap rejection of non-gesture audio blocks.

The gate tracks the background level of the high band as an exponentially
smoothed RMS (the noise floor) and runs four checks, stopping at the first
failure:

1. RMS: the block must stand out from the floor.
2. Upper RMS: saturated/clipping blocks are dropped (optional).
3. Ratio: high-band energy must dominate low-band energy.
4. Centroid: the high-band centroid must fall inside a bin range.

The floor is updated on every block, before any check, so it follows a
changing ambient level whether blocks pass or not.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from snapsense.spectral import SpectralFeatures

logger = logging.getLogger("snapsense.gate")


class RatioMode(Enum):
    LINEAR = "linear"
    LOG10 = "log10"


class GateStage(Enum):
    """Gate stage that rejected a block."""
    RMS = "rms"
    UPPER_RMS = "upper_rms"
    RATIO = "ratio"
    CENTROID = "centroid"


@dataclass
class GateConfig:
    """Thresholds for one gate deployment.

    `ratio_threshold` is interpreted according to `ratio_mode`; a linear
    threshold of 4 and a log10 threshold of 2 are different gates.
    """
    rms_multiplier: float = 1.0
    min_rms: float = 1e-6
    rms_upper: Optional[float] = None
    ratio_threshold: float = 4.0
    ratio_mode: RatioMode = RatioMode.LINEAR
    centroid_low: float = 0.0
    centroid_high: Optional[float] = None
    floor_smoothing: float = 0.97

    def __post_init__(self):
        if isinstance(self.ratio_mode, str):
            self.ratio_mode = RatioMode(self.ratio_mode)
        if not 0.0 <= self.floor_smoothing < 1.0:
            raise ValueError(f"floor_smoothing must be in [0, 1), got {self.floor_smoothing}")
        if self.rms_multiplier < 0:
            raise ValueError(f"rms_multiplier must be >= 0, got {self.rms_multiplier}")
        if self.centroid_high is not None and self.centroid_high < self.centroid_low:
            raise ValueError(
                f"centroid_high ({self.centroid_high}) < centroid_low ({self.centroid_low})"
            )

    def to_dict(self) -> dict:
        return {
            "rms_multiplier": self.rms_multiplier,
            "min_rms": self.min_rms,
            "rms_upper": self.rms_upper,
            "ratio_threshold": self.ratio_threshold,
            "ratio_mode": self.ratio_mode.value,
            "centroid_low": self.centroid_low,
            "centroid_high": self.centroid_high,
            "floor_smoothing": self.floor_smoothing,
        }

    @classmethod
    def from_dict(cls, data: dict) -> GateConfig:
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown gate settings: {sorted(unknown)}")
        return cls(**data)


@dataclass
class NoiseFloorState:
    """Exponentially smoothed high-band RMS."""
    value: float = 0.0
    initialized: bool = False

    def update(self, rms: float, smoothing: float) -> float:
        if not self.initialized:
            self.value = rms
            self.initialized = True
        else:
            # lerp(rms, floor, smoothing)
            self.value = rms + (self.value - rms) * smoothing
        return self.value

    def reset(self):
        self.value = 0.0
        self.initialized = False


@dataclass
class GateDecision:
    """Outcome of one gate evaluation."""
    passed: bool
    reason: Optional[GateStage]
    rms: float
    floor: float
    ratio: Optional[float] = None
    centroid: Optional[float] = None


class AdaptiveNoiseGate:
    """Four-stage gate with an adaptive noise floor.

    Usage:
        gate = AdaptiveNoiseGate(GateConfig(ratio_mode="log10", ratio_threshold=2.0))
        decision = gate.evaluate(analyzer.analyze(block))
        if decision.passed:
            ...
    """

    def __init__(self, config: Optional[GateConfig] = None, name: str = "gate"):
        self.config = config or GateConfig()
        self.name = name
        self.floor = NoiseFloorState()
        logger.info(
            "%s: %s ratio gate (threshold %.3g), centroid [%s, %s]",
            name,
            self.config.ratio_mode.value,
            self.config.ratio_threshold,
            self.config.centroid_low,
            self.config.centroid_high,
        )

    def evaluate(self, features: SpectralFeatures) -> GateDecision:
        cfg = self.config
        rms = features.high_band_rms
        floor = self.floor.update(rms, cfg.floor_smoothing)

        if rms < max(floor * cfg.rms_multiplier, cfg.min_rms):
            return GateDecision(False, GateStage.RMS, rms, floor)

        if cfg.rms_upper is not None and rms > cfg.rms_upper:
            return GateDecision(False, GateStage.UPPER_RMS, rms, floor)

        ratio = features.band_ratio(log10=cfg.ratio_mode is RatioMode.LOG10)
        if ratio < cfg.ratio_threshold:
            return GateDecision(False, GateStage.RATIO, rms, floor, ratio=ratio)

        centroid = features.spectral_centroid
        if centroid < cfg.centroid_low or (
            cfg.centroid_high is not None and centroid > cfg.centroid_high
        ):
            return GateDecision(False, GateStage.CENTROID, rms, floor, ratio, centroid)

        return GateDecision(True, None, rms, floor, ratio, centroid)

    def reset(self):
        self.floor.reset()
