"""SnapSense - Real-time snap, click and pinch detection from audio and hand pose."""

__version__ = "0.1.0"

from snapsense.config import ConfigurationError, DetectorConfig, EngineConfig, FeatureSource
from snapsense.spectral import BandLayout, SpectralAnalyzer, SpectralFeatures
from snapsense.gate import AdaptiveNoiseGate, GateConfig, GateDecision, RatioMode
from snapsense.mel import MelFilterbank, MelSettings, MelSpectrogram
from snapsense.classifier import (
    Classifier,
    ClassifierConfigError,
    LogisticClassifier,
    MelCNNClassifier,
    RBFClassifier,
    load_classifier,
)
from snapsense.kinematics import HandJoint, HandSample, KinematicWindow, PinchDetector, Pose
from snapsense.events import EventQueue, EventStateMachine, GestureEvent, ScoreSmoother
from snapsense.pipeline import AudioSource, GestureDetector, GestureEngine
from snapsense.recorder import SessionPlayer, SessionRecorder
from snapsense.profiler import PipelineProfiler
from snapsense.metrics import MetricsCollector
