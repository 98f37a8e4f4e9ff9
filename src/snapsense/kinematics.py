"""Hand kinematics: per-tick metrics and sliding-window features.

Every tick with a tracked hand produces a `KinematicFrame`:

- thumb tip <-> middle tip distance
- relative speed of the middle tip w.r.t. the thumb tip
- middle tip <-> palm distance
- five fingertip positions relative to the wrist, and their velocities

`KinematicWindow` keeps the last `size` frames and summarizes them into the
21-dimensional snap feature vector:

    [min dist, mean dist, max speed, mean speed, min palm, mean palm,
     thumb dxyz, index dxyz, middle dxyz, ring dxyz, little dxyz]

where each dxyz is the newest-minus-oldest wrist-relative tip position.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

import numpy as np

from snapsense.events import EventStateMachine, GestureEvent


class HandJoint(Enum):
    WRIST = "wrist"
    PALM = "palm"
    THUMB_TIP = "thumb_tip"
    INDEX_TIP = "index_tip"
    MIDDLE_TIP = "middle_tip"
    RING_TIP = "ring_tip"
    LITTLE_TIP = "little_tip"


FINGERTIPS = (
    HandJoint.THUMB_TIP,
    HandJoint.INDEX_TIP,
    HandJoint.MIDDLE_TIP,
    HandJoint.RING_TIP,
    HandJoint.LITTLE_TIP,
)

WINDOW_SIZE = 11  # +-5 frames, ~0.16 s at 60 Hz
FEATURE_DIM = 6 + 3 * len(FINGERTIPS)


@dataclass
class Pose:
    """Position (metres) and optional orientation quaternion (x, y, z, w)."""
    position: np.ndarray
    rotation: Optional[np.ndarray] = None

    def __post_init__(self):
        self.position = np.asarray(self.position, dtype=np.float64).reshape(3)
        if self.rotation is not None:
            self.rotation = np.asarray(self.rotation, dtype=np.float64).reshape(4)


class PoseSource(Protocol):
    """Hand tracking collaborator."""

    def get_hand_pose(self, joint: HandJoint) -> Optional[Pose]:
        """Current pose of `joint`, or None when untracked."""
        ...


@dataclass
class HandSample:
    """Joint positions of one tracked hand at one tick."""
    positions: dict[HandJoint, np.ndarray]

    def __getitem__(self, joint: HandJoint) -> np.ndarray:
        return self.positions[joint]

    @classmethod
    def from_source(cls, source: PoseSource) -> Optional[HandSample]:
        """Query every joint; None if any of them is untracked."""
        positions = {}
        for joint in HandJoint:
            pose = source.get_hand_pose(joint)
            if pose is None:
                return None
            positions[joint] = pose.position
        return cls(positions)

    @classmethod
    def from_array(cls, array: np.ndarray) -> HandSample:
        """Build from a (len(HandJoint), 3) array ordered like `HandJoint`."""
        array = np.asarray(array, dtype=np.float64)
        return cls({joint: array[i] for i, joint in enumerate(HandJoint)})

    def to_array(self) -> np.ndarray:
        return np.array([self.positions[j] for j in HandJoint], dtype=np.float64)


@dataclass
class KinematicFrame:
    """Hand metrics for one tick."""
    distance: float
    speed: float
    palm_distance: float
    tip_rel: np.ndarray  # (5, 3) wrist-relative tip positions
    tip_vel: np.ndarray = field(default_factory=lambda: np.zeros((5, 3)))


class HandMetricsTracker:
    """Turns hand samples into `KinematicFrame`s.

    Keeps the previous middle-relative-to-thumb vector, previous tip
    positions and timestamp for the finite differences. The first frame
    after a reset has zero speed and zero velocities.
    """

    def __init__(self):
        self._prev_mid_rel_thumb: Optional[np.ndarray] = None
        self._prev_tip_rel: Optional[np.ndarray] = None
        self._prev_time: Optional[float] = None

    def observe(self, sample: HandSample, now: float) -> KinematicFrame:
        wrist = sample[HandJoint.WRIST]
        thumb = sample[HandJoint.THUMB_TIP]
        middle = sample[HandJoint.MIDDLE_TIP]
        palm = sample[HandJoint.PALM]

        tip_rel = np.array([sample[t] - wrist for t in FINGERTIPS], dtype=np.float64)
        mid_rel_thumb = middle - thumb

        dt = now - self._prev_time if self._prev_time is not None else 0.0

        if self._prev_mid_rel_thumb is not None and dt > 0:
            speed = float(np.linalg.norm(mid_rel_thumb - self._prev_mid_rel_thumb) / dt)
            tip_vel = (tip_rel - self._prev_tip_rel) / dt
        else:
            speed = 0.0
            tip_vel = np.zeros_like(tip_rel)

        self._prev_mid_rel_thumb = mid_rel_thumb
        self._prev_tip_rel = tip_rel
        self._prev_time = now

        return KinematicFrame(
            distance=float(np.linalg.norm(thumb - middle)),
            speed=speed,
            palm_distance=float(np.linalg.norm(middle - palm)),
            tip_rel=tip_rel,
            tip_vel=tip_vel,
        )

    def reset(self):
        self._prev_mid_rel_thumb = None
        self._prev_tip_rel = None
        self._prev_time = None


class KinematicWindow:
    """Fixed-capacity FIFO of kinematic frames."""

    def __init__(self, size: int = WINDOW_SIZE):
        if size < 2:
            raise ValueError(f"Window size must be >= 2, got {size}")
        self.size = size
        self._frames: deque[KinematicFrame] = deque(maxlen=size)

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def ready(self) -> bool:
        return len(self._frames) == self.size

    def push(self, frame: KinematicFrame):
        self._frames.append(frame)

    def features(self) -> Optional[np.ndarray]:
        """Summary vector of shape (21,), or None while the window fills."""
        if not self.ready:
            return None

        dist = np.array([f.distance for f in self._frames])
        speed = np.array([f.speed for f in self._frames])
        palm = np.array([f.palm_distance for f in self._frames])

        stats = [
            dist.min(), dist.mean(),
            speed.max(), speed.mean(),
            palm.min(), palm.mean(),
        ]
        deltas = self._frames[-1].tip_rel - self._frames[0].tip_rel

        return np.concatenate([np.array(stats), deltas.reshape(-1)]).astype(np.float64)

    def clear(self):
        self._frames.clear()


class PinchDetector:
    """Rule-based pinch: thumb tip and index tip closer than a threshold.

    Fires on the rising edge of the pinch condition, debounced by the same
    state machine the scored detectors use.
    """

    def __init__(
        self,
        name: str = "pinch",
        threshold: float = 0.025,
        cooldown: float = 0.25,
    ):
        self.name = name
        self.threshold = threshold
        self._machine = EventStateMachine(threshold=0.5, cooldown=cooldown)
        self._pinched = False

    @property
    def pinched(self) -> bool:
        return self._pinched

    def process(self, sample: Optional[HandSample], now: float) -> Optional[GestureEvent]:
        if sample is None:
            self._pinched = False
        else:
            d = float(np.linalg.norm(sample[HandJoint.THUMB_TIP] - sample[HandJoint.INDEX_TIP]))
            self._pinched = d < self.threshold

        if self._machine.step(1.0 if self._pinched else 0.0, now):
            return GestureEvent(self.name, now)
        return None

    def reset(self):
        self._machine.reset()
        self._pinched = False
