"""Gesture classifier backends.

Three interchangeable scorers, all mapping a feature vector to a probability
in [0, 1]:

1. RBF kernel machine: snap detection from the kinematic window.
2. Logistic regression: click detection from four band statistics.
3. Mel-CNN: click detection from a normalized log-mel spectrogram.

Exactly one backend is built per detector, chosen by an explicit `kind`
tag. Model records are validated when loaded; a record whose vector
lengths disagree is a `ClassifierConfigError`, never a per-call error.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import numpy as np

from snapsense.config import ClassifierSpec, ConfigurationError
from snapsense.mel import MelSettings
from snapsense.spectral import SpectralFeatures

logger = logging.getLogger("snapsense.classifier")


class ClassifierConfigError(ConfigurationError):
    """Classifier model record is missing fields or inconsistent."""


class ClassifierKind(Enum):
    RBF = "rbf"
    LOGISTIC = "logistic"
    CNN = "cnn"


def sigmoid(z: float) -> float:
    """Logistic function without overflow for large |z|."""
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    ez = math.exp(z)
    return ez / (1.0 + ez)


def _get(data: dict, *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    raise ClassifierConfigError(f"missing field '{keys[0]}'")


def _vector(data: dict, *keys: str) -> np.ndarray:
    value = _get(data, *keys)
    try:
        arr = np.asarray(value, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError) as e:
        raise ClassifierConfigError(f"field '{keys[0]}' is not numeric: {e}") from e
    if not np.all(np.isfinite(arr)):
        raise ClassifierConfigError(f"field '{keys[0]}' contains non-finite values")
    return arr


# ── Model records ──────────────────────────────────────────


@dataclass
class RBFModel:
    """Standardizer + support vectors of an RBF kernel machine."""
    mean: np.ndarray
    scale: np.ndarray
    support_vectors: np.ndarray  # (n_sv, feature_dim)
    dual_coef: np.ndarray  # (n_sv,)
    intercept: float
    gamma: float

    @property
    def n_sv(self) -> int:
        return self.support_vectors.shape[0]

    @property
    def feature_dim(self) -> int:
        return self.support_vectors.shape[1]

    @classmethod
    def from_dict(cls, data: dict) -> RBFModel:
        """Parse the external record {mean, scale, svFlat, dualCoef, nSV,
        featDim, intercept, gamma}; snake_case names are accepted too."""
        mean = _vector(data, "mean")
        scale = _vector(data, "scale")
        sv_flat = _vector(data, "svFlat", "sv_flat")
        dual_coef = _vector(data, "dualCoef", "dual_coef")
        n_sv = int(_get(data, "nSV", "n_sv"))
        feature_dim = int(_get(data, "featDim", "featureDim", "feature_dim"))
        intercept = float(_get(data, "intercept"))
        gamma = float(_get(data, "gamma"))

        if len(mean) != len(scale):
            raise ClassifierConfigError(
                f"mean/scale size mismatch: {len(mean)} != {len(scale)}"
            )
        if len(mean) != feature_dim:
            raise ClassifierConfigError(
                f"mean size {len(mean)} != featDim {feature_dim}"
            )
        if n_sv <= 0 or feature_dim <= 0:
            raise ClassifierConfigError(f"nSV and featDim must be positive ({n_sv}, {feature_dim})")
        if len(sv_flat) != n_sv * feature_dim:
            raise ClassifierConfigError(
                f"svFlat size {len(sv_flat)} != nSV*featDim {n_sv * feature_dim}"
            )
        if len(dual_coef) != n_sv:
            raise ClassifierConfigError(f"dualCoef size {len(dual_coef)} != nSV {n_sv}")
        if np.any(scale == 0):
            raise ClassifierConfigError("scale contains zeros")
        if gamma <= 0:
            raise ClassifierConfigError(f"gamma must be positive, got {gamma}")

        return cls(
            mean=mean,
            scale=scale,
            support_vectors=sv_flat.reshape(n_sv, feature_dim),
            dual_coef=dual_coef,
            intercept=intercept,
            gamma=gamma,
        )

    def to_dict(self) -> dict:
        return {
            "mean": self.mean.tolist(),
            "scale": self.scale.tolist(),
            "svFlat": self.support_vectors.reshape(-1).tolist(),
            "dualCoef": self.dual_coef.tolist(),
            "nSV": self.n_sv,
            "featDim": self.feature_dim,
            "intercept": self.intercept,
            "gamma": self.gamma,
        }


@dataclass
class LogisticModel:
    """Standardizer + weights over the fixed click feature set."""
    mean: np.ndarray
    scale: np.ndarray
    weight: np.ndarray
    bias: float

    FEATURES = ("windowed_rms", "log_band_ratio", "spectral_centroid", "spectral_flatness")

    @classmethod
    def from_dict(cls, data: dict) -> LogisticModel:
        mean = _vector(data, "mean")
        scale = _vector(data, "scale")
        weight = _vector(data, "weight", "weights")
        bias = float(_get(data, "bias"))

        n = len(cls.FEATURES)
        for label, arr in (("mean", mean), ("scale", scale), ("weight", weight)):
            if len(arr) != n:
                raise ClassifierConfigError(
                    f"{label} has {len(arr)} entries, expected {n} ({', '.join(cls.FEATURES)})"
                )
        return cls(mean=mean, scale=scale, weight=weight, bias=bias)


@dataclass
class CNNMeta:
    """Input framing and normalization of a mel-CNN model."""
    mean: float
    std: float
    n_mels: int
    hop: int
    sample_rate: int
    excerpt_seconds: float
    n_fft: int = 1024

    @classmethod
    def from_dict(cls, data: dict) -> CNNMeta:
        meta = cls(
            mean=float(_get(data, "mean")),
            std=float(_get(data, "std")),
            n_mels=int(_get(data, "n_mels")),
            hop=int(_get(data, "hop")),
            sample_rate=int(_get(data, "sr", "sample_rate")),
            excerpt_seconds=float(_get(data, "excerpt_sec", "excerpt_seconds")),
            n_fft=int(data.get("n_fft", 1024)),
        )
        if meta.n_mels <= 0 or meta.hop <= 0 or meta.sample_rate <= 0:
            raise ClassifierConfigError("n_mels, hop and sr must be positive")
        if meta.n_fft < 2 or meta.n_fft & (meta.n_fft - 1):
            raise ClassifierConfigError(f"n_fft must be a power of two, got {meta.n_fft}")
        if meta.n_frames <= 0:
            raise ClassifierConfigError("excerpt_sec too short for one hop")
        return meta

    @property
    def n_frames(self) -> int:
        return int(self.excerpt_seconds * self.sample_rate / self.hop)

    def mel_settings(self) -> MelSettings:
        return MelSettings(
            n_mels=self.n_mels,
            n_fft=self.n_fft,
            hop=self.hop,
            sample_rate=self.sample_rate,
            excerpt_seconds=self.excerpt_seconds,
            mean=self.mean,
            std=self.std,
        )


# ── Backends ───────────────────────────────────────────────


class Classifier(ABC):
    """Common scoring contract: feature vector -> probability in [0, 1]."""

    kind: ClassifierKind

    def __init__(self):
        self._closed = False

    @property
    @abstractmethod
    def feature_dim(self) -> int:
        ...

    @abstractmethod
    def _score(self, x: np.ndarray) -> float:
        ...

    def score(self, features: np.ndarray) -> float:
        """Score one feature vector.

        Raises:
            ValueError: wrong feature vector length.
            RuntimeError: the backend produced a value outside [0, 1].
        """
        if self._closed:
            raise RuntimeError(f"{type(self).__name__} is closed")
        x = np.asarray(features, dtype=np.float64).reshape(-1)
        if x.size != self.feature_dim:
            raise ValueError(f"Expected {self.feature_dim} features, got {x.size}")

        p = self._score(x)
        if not 0.0 <= p <= 1.0:
            raise RuntimeError(f"{type(self).__name__} produced score {p} outside [0, 1]")
        return p

    def _release(self):
        """Free backend resources (sessions, tensors)."""

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        if self._closed:
            return
        self._release()
        self._closed = True
        logger.debug("%s released", type(self).__name__)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class RBFClassifier(Classifier):
    """sigmoid(sum_s dualCoef[s] * exp(-gamma * |x - sv_s|^2) + intercept)

    on standardized features.
    """

    kind = ClassifierKind.RBF

    def __init__(self, model: RBFModel):
        super().__init__()
        self.model = model

    @property
    def feature_dim(self) -> int:
        return self.model.feature_dim

    def standardize(self, x: np.ndarray) -> np.ndarray:
        return (np.asarray(x, dtype=np.float64) - self.model.mean) / self.model.scale

    def kernel_terms(self, x_std: np.ndarray) -> np.ndarray:
        """Per-support-vector contributions dualCoef[s] * K(x, sv_s).

        Args:
            x_std: Already standardized feature vector.
        """
        diff = self.model.support_vectors - x_std
        d2 = np.einsum("ij,ij->i", diff, diff)
        return self.model.dual_coef * np.exp(-self.model.gamma * d2)

    def decision_function(self, x: np.ndarray) -> float:
        return float(np.sum(self.kernel_terms(self.standardize(x)))) + self.model.intercept

    def _score(self, x: np.ndarray) -> float:
        return sigmoid(self.decision_function(x))


class LogisticClassifier(Classifier):
    """Logistic regression over (windowed RMS, log10 band ratio, centroid, flatness)."""

    kind = ClassifierKind.LOGISTIC

    def __init__(self, model: LogisticModel):
        super().__init__()
        self.model = model
        # near-zero scales are treated as 1
        self._scale = np.where(np.abs(model.scale) > 1e-6, model.scale, 1.0)

    @property
    def feature_dim(self) -> int:
        return len(LogisticModel.FEATURES)

    @staticmethod
    def features_from(spectral: SpectralFeatures) -> np.ndarray:
        """Build the feature vector in the order the weights expect."""
        return np.array([
            spectral.windowed_rms,
            spectral.band_ratio(log10=True),
            spectral.spectral_centroid,
            spectral.spectral_flatness,
        ], dtype=np.float64)

    def _score(self, x: np.ndarray) -> float:
        z = self.model.bias + float(np.dot(self.model.weight, (x - self.model.mean) / self._scale))
        return sigmoid(z)


def build_mel_cnn():
    """The fixed mel-CNN topology: two conv blocks, global pool, one sigmoid unit.

    Input shape (batch, 1, n_mels, n_frames); output shape (batch, 1).
    """
    import torch.nn as nn

    return nn.Sequential(
        nn.Conv2d(1, 16, kernel_size=3, padding=1),
        nn.ReLU(),
        nn.MaxPool2d(2),
        nn.Conv2d(16, 32, kernel_size=3, padding=1),
        nn.ReLU(),
        nn.MaxPool2d(2),
        nn.AdaptiveAvgPool2d(1),
        nn.Flatten(),
        nn.Linear(32, 1),
        nn.Sigmoid(),
    )


class MelCNNClassifier(Classifier):
    """Scores a normalized log-mel spectrogram with the fixed CNN.

    Runs either a torch module (state dict from a `.pt` file, or a module
    passed in directly) or an ONNX graph via onnxruntime. The network must
    have exactly one scalar output; it is clamped to [0, 1].
    """

    kind = ClassifierKind.CNN

    def __init__(
        self,
        meta: CNNMeta,
        weights: Optional[str | Path] = None,
        module=None,
    ):
        super().__init__()
        self.meta = meta
        self._module = None
        self._session = None
        self._input_name: Optional[str] = None

        if module is not None:
            self._module = module
            self._module.eval()
        elif weights is None:
            raise ClassifierConfigError("cnn classifier needs 'weights' (.pt or .onnx)")
        elif Path(weights).suffix == ".onnx":
            self._load_onnx(Path(weights))
        else:
            self._load_torch(Path(weights))

    @property
    def feature_dim(self) -> int:
        return self.meta.n_mels * self.meta.n_frames

    @property
    def backend(self) -> str:
        return "onnx" if self._session is not None else "torch"

    def _load_torch(self, path: Path):
        try:
            import torch
        except ImportError:
            raise ImportError("torch is required for .pt CNN weights. Install with: pip install torch")

        if not path.exists():
            raise ClassifierConfigError(f"CNN weights not found: {path}")

        checkpoint = torch.load(path, map_location="cpu", weights_only=False)
        state = checkpoint.get("model_state", checkpoint) if isinstance(checkpoint, dict) else checkpoint

        module = build_mel_cnn()
        try:
            module.load_state_dict(state)
        except (RuntimeError, TypeError, AttributeError) as e:
            raise ClassifierConfigError(f"CNN weights {path} do not fit the network: {e}") from e
        module.eval()
        self._module = module

    def _load_onnx(self, path: Path):
        try:
            import onnxruntime as ort
        except ImportError:
            raise ImportError(
                "onnxruntime is required for .onnx CNN weights. Install with: pip install onnxruntime"
            )

        if not path.exists():
            raise ClassifierConfigError(f"CNN weights not found: {path}")

        session = ort.InferenceSession(str(path))
        outputs = session.get_outputs()
        if len(outputs) != 1:
            raise ClassifierConfigError(f"CNN model must have exactly one output, has {len(outputs)}")
        self._session = session
        self._input_name = session.get_inputs()[0].name

    def _score(self, x: np.ndarray) -> float:
        tensor = x.astype(np.float32).reshape(1, 1, self.meta.n_mels, self.meta.n_frames)

        if self._session is not None:
            out = self._session.run(None, {self._input_name: tensor})[0]
        else:
            import torch

            with torch.no_grad():
                out = self._module(torch.from_numpy(tensor)).numpy()

        out = np.asarray(out, dtype=np.float64).reshape(-1)
        if out.size != 1:
            raise RuntimeError(f"CNN produced {out.size} outputs, expected 1")
        return float(np.clip(out[0], 0.0, 1.0))

    def _release(self):
        self._session = None
        self._module = None


# ── Loader ─────────────────────────────────────────────────


def load_classifier(spec: ClassifierSpec) -> Classifier:
    """Build exactly one backend from its tagged spec.

    Raises:
        ClassifierConfigError: unknown kind, or inconsistent model record.
    """
    try:
        kind = ClassifierKind(spec.kind)
    except ValueError:
        raise ClassifierConfigError(
            f"Unknown classifier kind '{spec.kind}' (expected rbf, logistic or cnn)"
        ) from None

    params = spec.load_params()
    if not params:
        raise ClassifierConfigError(f"{kind.value} classifier has no model data")

    if kind is ClassifierKind.RBF:
        model = RBFModel.from_dict(params)
        logger.info("RBF model: %d SVs, dim=%d, gamma=%g", model.n_sv, model.feature_dim, model.gamma)
        return RBFClassifier(model)

    if kind is ClassifierKind.LOGISTIC:
        model = LogisticModel.from_dict(params)
        logger.info("Logistic model: weights=%s bias=%.3f", np.round(model.weight, 3).tolist(), model.bias)
        return LogisticClassifier(model)

    meta = CNNMeta.from_dict(params)
    weights = spec.weights
    if weights is None and params.get("weights"):
        weights = Path(params["weights"])
        if not weights.is_absolute() and spec.model:
            weights = Path(spec.model).parent / weights
    classifier = MelCNNClassifier(meta, weights=weights)
    logger.info(
        "CNN model (%s): %d mels x %d frames, %d Hz",
        classifier.backend, meta.n_mels, meta.n_frames, meta.sample_rate,
    )
    return classifier
