"""Shared fixtures: synthetic audio, hand poses and scripted classifiers."""

from pathlib import Path

import numpy as np
import pytest

from snapsense.classifier import Classifier, ClassifierKind
from snapsense.kinematics import FEATURE_DIM, HandJoint, HandSample

CONFIG_DIR = Path(__file__).resolve().parent.parent / "configs"


class ScriptedClassifier(Classifier):
    """Returns a fixed probability and counts how often it was asked."""

    def __init__(self, kind: ClassifierKind, dim: int, value: float = 0.95):
        super().__init__()
        self.kind = kind
        self._dim = dim
        self.value = value
        self.calls = 0

    @property
    def feature_dim(self) -> int:
        return self._dim

    def _score(self, x):
        self.calls += 1
        return self.value


def make_tone(freq: float, n: int = 1024, sample_rate: int = 48000, amplitude: float = 0.1) -> np.ndarray:
    t = np.arange(n) / sample_rate
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def make_hand(offset: float = 0.0, pinch_gap: float = 0.05) -> HandSample:
    """Right-ish hand in metres; `pinch_gap` is the thumb-index tip distance."""
    positions = {
        HandJoint.WRIST: np.array([0.0, 0.0, 0.0]),
        HandJoint.PALM: np.array([0.0, 0.05, 0.0]),
        HandJoint.THUMB_TIP: np.array([0.04, 0.08, 0.0]),
        HandJoint.INDEX_TIP: np.array([0.04 + pinch_gap, 0.08, 0.0]),
        HandJoint.MIDDLE_TIP: np.array([0.02, 0.16 + offset, 0.0]),
        HandJoint.RING_TIP: np.array([0.0, 0.15, 0.0]),
        HandJoint.LITTLE_TIP: np.array([-0.02, 0.13, 0.0]),
    }
    return HandSample(positions)


@pytest.fixture
def scripted():
    return ScriptedClassifier


@pytest.fixture
def tone():
    return make_tone


@pytest.fixture
def hand():
    return make_hand


@pytest.fixture
def rbf_record():
    """Valid two-SV RBF record over the kinematic feature vector."""
    rng = np.random.default_rng(7)
    return {
        "mean": rng.standard_normal(FEATURE_DIM).tolist(),
        "scale": (0.5 + rng.random(FEATURE_DIM)).tolist(),
        "svFlat": rng.standard_normal(2 * FEATURE_DIM).tolist(),
        "dualCoef": [1.5, -0.5],
        "nSV": 2,
        "featDim": FEATURE_DIM,
        "intercept": -0.25,
        "gamma": 0.1,
    }


@pytest.fixture
def logistic_record():
    return {
        "mean": [0.0, 0.0, 0.0, 0.0],
        "scale": [1.0, 1.0, 1.0, 1.0],
        "weight": [1.0, 0.0, 0.0, 0.0],
        "bias": 0.0,
    }


@pytest.fixture
def config_dir():
    return CONFIG_DIR
