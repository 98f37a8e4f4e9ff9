"""SnapSense configuration: dataclasses, YAML/JSON loading, eager validation.

An engine configuration lists one detector per gesture class. Each detector
names its feature source, its classifier and (optionally) an audio gate:

    sample_rate: 48000
    detectors:
      - name: click
        feature: spectral          # spectral | mel | kinematic
        block_size: 1024
        threshold: 0.8
        smoothing: 0.85
        cooldown: 0.25
        gate:
          rms_multiplier: 0.01
          rms_upper: 0.2
          ratio_mode: log10
          ratio_threshold: 2.0
          centroid_low: 50
        classifier:
          kind: logistic
          model: click_logreg.json

Relative model paths resolve against the directory of the config file.
Every problem is reported as a `ConfigurationError` when the config is
loaded, never during a tick.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml

from snapsense.gate import GateConfig


class ConfigurationError(ValueError):
    """Invalid or inconsistent engine configuration."""


class FeatureSource(Enum):
    SPECTRAL = "spectral"    # logistic regression on band statistics
    MEL = "mel"              # log-mel spectrogram into the CNN
    KINEMATIC = "kinematic"  # hand-pose sliding window into the RBF machine


def read_structured(path: str | Path) -> Any:
    """Load a JSON or YAML document."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"File not found: {path}")

    text = path.read_text()
    try:
        if path.suffix.lower() in (".yml", ".yaml"):
            return yaml.safe_load(text)
        return json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not parse {path}: {e}") from e


@dataclass
class ClassifierSpec:
    """Which classifier backend to build, and from what data.

    `kind` is the explicit backend tag. Model records come either from a
    file (`model`) or inline (`params`). CNN deployments also need
    `weights` (a torch state dict or an ONNX graph).
    """
    kind: str
    model: Optional[str] = None
    params: dict = field(default_factory=dict)
    weights: Optional[str] = None

    def resolve(self, base_dir: Optional[Path]) -> ClassifierSpec:
        def _abs(p: Optional[str]) -> Optional[str]:
            if p is None or base_dir is None or Path(p).is_absolute():
                return p
            return str(base_dir / p)

        return ClassifierSpec(self.kind, _abs(self.model), dict(self.params), _abs(self.weights))

    def load_params(self) -> dict:
        """Model record: file contents merged under inline params."""
        data: dict = {}
        if self.model:
            loaded = read_structured(self.model)
            if not isinstance(loaded, dict):
                raise ConfigurationError(f"Model file {self.model} must contain a mapping")
            data.update(loaded)
        data.update(self.params)
        return data

    def to_dict(self) -> dict:
        out: dict = {"kind": self.kind}
        if self.model:
            out["model"] = self.model
        if self.params:
            out["params"] = self.params
        if self.weights:
            out["weights"] = self.weights
        return out

    @classmethod
    def from_dict(cls, data: dict) -> ClassifierSpec:
        if not isinstance(data, dict) or "kind" not in data:
            raise ConfigurationError("classifier needs an explicit 'kind' (rbf, logistic or cnn)")
        return cls(
            kind=str(data["kind"]).lower(),
            model=data.get("model"),
            params=data.get("params", {}) or {},
            weights=data.get("weights"),
        )


@dataclass
class DetectorConfig:
    """One gesture class: feature source, gate, classifier, debounce."""
    name: str
    feature: FeatureSource
    classifier: ClassifierSpec
    block_size: int = 1024
    gate: Optional[GateConfig] = None
    threshold: float = 0.6
    smoothing: float = 0.0
    cooldown: float = 0.5
    low_band_hz: tuple[float, float] = (0.0, 600.0)
    high_band_hz: tuple[float, float] = (1000.0, 8000.0)
    low_band_bins: Optional[tuple[int, int]] = None
    high_band_bins: Optional[tuple[int, int]] = None
    window_size: int = 11

    def validate(self):
        if not self.name:
            raise ConfigurationError("detector needs a name")
        if self.block_size < 2 or self.block_size & (self.block_size - 1):
            raise ConfigurationError(
                f"{self.name}: block_size must be a power of two, got {self.block_size}"
            )
        if not 0.0 <= self.threshold <= 1.0:
            raise ConfigurationError(f"{self.name}: threshold must be in [0, 1]")
        if not 0.0 <= self.smoothing < 1.0:
            raise ConfigurationError(f"{self.name}: smoothing must be in [0, 1)")
        if self.cooldown < 0:
            raise ConfigurationError(f"{self.name}: cooldown must be >= 0")
        if self.window_size < 2:
            raise ConfigurationError(f"{self.name}: window_size must be >= 2, got {self.window_size}")
        self._validate_bins()

        expected = {
            FeatureSource.SPECTRAL: "logistic",
            FeatureSource.MEL: "cnn",
            FeatureSource.KINEMATIC: "rbf",
        }[self.feature]
        if self.classifier.kind != expected:
            raise ConfigurationError(
                f"{self.name}: feature '{self.feature.value}' needs a '{expected}' "
                f"classifier, got '{self.classifier.kind}'"
            )

    def _validate_bins(self):
        if (self.low_band_bins is None) != (self.high_band_bins is None):
            raise ConfigurationError(
                f"{self.name}: low_band_bins and high_band_bins must be given together"
            )
        if self.low_band_bins is None:
            return

        nyquist = self.block_size // 2
        for key, bins in (("low_band_bins", self.low_band_bins), ("high_band_bins", self.high_band_bins)):
            if len(bins) != 2 or any(isinstance(b, bool) or not isinstance(b, int) for b in bins):
                raise ConfigurationError(f"{self.name}: {key} must be two integer bins, got {bins}")

        low_start, low_stop = self.low_band_bins
        if not 0 <= low_start <= low_stop <= nyquist:
            raise ConfigurationError(
                f"{self.name}: low_band_bins {list(self.low_band_bins)} must satisfy "
                f"0 <= start <= stop <= {nyquist}"
            )
        high_start, high_stop = self.high_band_bins
        if not 0 <= high_start < high_stop <= nyquist + 1:
            raise ConfigurationError(
                f"{self.name}: high_band_bins {list(self.high_band_bins)} must satisfy "
                f"0 <= start < stop <= {nyquist + 1}"
            )

    def to_dict(self) -> dict:
        out = {
            "name": self.name,
            "feature": self.feature.value,
            "classifier": self.classifier.to_dict(),
            "block_size": self.block_size,
            "threshold": self.threshold,
            "smoothing": self.smoothing,
            "cooldown": self.cooldown,
            "low_band_hz": list(self.low_band_hz),
            "high_band_hz": list(self.high_band_hz),
            "window_size": self.window_size,
        }
        if self.gate is not None:
            out["gate"] = self.gate.to_dict()
        if self.low_band_bins is not None:
            out["low_band_bins"] = list(self.low_band_bins)
        if self.high_band_bins is not None:
            out["high_band_bins"] = list(self.high_band_bins)
        return out

    @classmethod
    def from_dict(cls, data: dict) -> DetectorConfig:
        data = dict(data)
        label = data.get("name", "?")
        try:
            name = data.pop("name")
            feature = FeatureSource(str(data.pop("feature")).lower())
            classifier = ClassifierSpec.from_dict(data.pop("classifier"))
        except KeyError as e:
            raise ConfigurationError(f"detector missing required field {e}") from e
        except ValueError as e:
            raise ConfigurationError(f"detector {label}: {e}") from e

        gate = data.pop("gate", None)
        if gate is not None:
            try:
                gate = GateConfig.from_dict(gate)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"{name}: bad gate settings: {e}") from e

        for key in ("low_band_hz", "high_band_hz", "low_band_bins", "high_band_bins"):
            if data.get(key) is not None:
                data[key] = tuple(data[key])

        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise ConfigurationError(f"{name}: unknown detector settings {sorted(unknown)}")

        config = cls(name=name, feature=feature, classifier=classifier, gate=gate, **data)
        try:
            config.validate()
        except TypeError as e:
            raise ConfigurationError(f"{name}: bad detector setting: {e}") from e
        return config


@dataclass
class PinchConfig:
    """Rule-based pinch on thumb/index tip distance."""
    enabled: bool = False
    name: str = "pinch"
    threshold: float = 0.025
    cooldown: float = 0.25


@dataclass
class EngineConfig:
    """Top-level engine configuration."""
    detectors: list[DetectorConfig] = field(default_factory=list)
    sample_rate: int = 48000
    pinch: PinchConfig = field(default_factory=PinchConfig)
    event_queue_size: int = 256
    enable_profiling: bool = True
    base_dir: Optional[Path] = None

    def validate(self):
        if not self.detectors and not self.pinch.enabled:
            raise ConfigurationError("No gesture detector configured")
        if self.sample_rate <= 0:
            raise ConfigurationError(f"sample_rate must be positive, got {self.sample_rate}")
        names = [d.name for d in self.detectors]
        if self.pinch.enabled:
            names.append(self.pinch.name)
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ConfigurationError(f"Duplicate gesture names: {sorted(duplicates)}")
        for det in self.detectors:
            det.validate()

    def to_dict(self) -> dict:
        return {
            "sample_rate": self.sample_rate,
            "event_queue_size": self.event_queue_size,
            "enable_profiling": self.enable_profiling,
            "pinch": {
                "enabled": self.pinch.enabled,
                "name": self.pinch.name,
                "threshold": self.pinch.threshold,
                "cooldown": self.pinch.cooldown,
            },
            "detectors": [d.to_dict() for d in self.detectors],
        }

    @classmethod
    def from_dict(cls, data: dict, base_dir: Optional[Path] = None) -> EngineConfig:
        if not isinstance(data, dict):
            raise ConfigurationError("Engine configuration must be a mapping")

        unknown = set(data) - (set(cls.__dataclass_fields__) - {"base_dir"})
        if unknown:
            raise ConfigurationError(f"Unknown engine settings: {sorted(unknown)}")

        pinch_data = data.get("pinch") or {}
        if not isinstance(pinch_data, dict):
            raise ConfigurationError("pinch settings must be a mapping")
        unknown = set(pinch_data) - set(PinchConfig.__dataclass_fields__)
        if unknown:
            raise ConfigurationError(f"Unknown pinch settings: {sorted(unknown)}")

        detectors = data.get("detectors") or []
        if not isinstance(detectors, list):
            raise ConfigurationError("detectors must be a list")

        try:
            sample_rate = int(data.get("sample_rate", 48000))
            event_queue_size = int(data.get("event_queue_size", 256))
            pinch = PinchConfig(**pinch_data)
            pinch.threshold = float(pinch.threshold)
            pinch.cooldown = float(pinch.cooldown)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Bad engine setting: {e}") from e

        config = cls(
            detectors=[DetectorConfig.from_dict(d) for d in detectors],
            sample_rate=sample_rate,
            pinch=pinch,
            event_queue_size=event_queue_size,
            enable_profiling=bool(data.get("enable_profiling", True)),
            base_dir=base_dir,
        )
        config.validate()
        return config

    @classmethod
    def from_file(cls, path: str | Path) -> EngineConfig:
        """Load from a .yml/.yaml or .json file."""
        path = Path(path)
        return cls.from_dict(read_structured(path), base_dir=path.parent.resolve())

    from_yaml = from_file
