"""Session recording and replay: audio blocks plus hand poses, per tick.

Record live sessions for:
- Reproducible detector tests without a microphone or headset
- Tuning gate thresholds offline against the same input
- CI regression checks of event timing
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

import numpy as np

from snapsense.events import GestureEvent
from snapsense.kinematics import HandJoint, HandSample

FORMAT_VERSION = 1


@dataclass
class RecordedTick:
    """Input of one engine tick."""
    timestamp: float  # seconds from recording start
    audio: Optional[np.ndarray]  # (block_size,) or None if no block was captured
    hand: Optional[HandSample]  # None if the hand was untracked
    events: list[GestureEvent] = field(default_factory=list)


class SessionRecorder:
    """Records per-tick engine input (and the events it produced).

    Usage:
        recorder = SessionRecorder(sample_rate=48000, block_size=1024)
        recorder.start()
        # In the tick loop:
        recorder.add_tick(block, hand, events)
        # When done:
        recorder.save("session.npz")
    """

    def __init__(self, sample_rate: int = 48000, block_size: int = 1024):
        self.sample_rate = sample_rate
        self.block_size = block_size
        self._ticks: list[RecordedTick] = []
        self._start_time: Optional[float] = None
        self._recording = False

    def start(self):
        self._ticks = []
        self._start_time = time.monotonic()
        self._recording = True

    def stop(self) -> int:
        """Stop recording. Returns number of ticks captured."""
        self._recording = False
        return len(self._ticks)

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def tick_count(self) -> int:
        return len(self._ticks)

    @property
    def duration(self) -> float:
        if not self._ticks:
            return 0.0
        return self._ticks[-1].timestamp

    def add_tick(
        self,
        audio: Optional[np.ndarray],
        hand: Optional[HandSample],
        events: Optional[list[GestureEvent]] = None,
        timestamp: Optional[float] = None,
    ):
        """Append one tick.

        Args:
            audio: Newest block of exactly `block_size` samples, or None.
            hand: Tracked hand sample, or None.
            events: Events the engine emitted on this tick.
            timestamp: Seconds from start; defaults to the monotonic clock.
        """
        if not self._recording:
            return
        if timestamp is None:
            timestamp = time.monotonic() - self._start_time

        if audio is not None:
            audio = np.asarray(audio, dtype=np.float32).ravel()
            if audio.size != self.block_size:
                raise ValueError(f"Expected {self.block_size} samples, got {audio.size}")
            audio = audio.copy()

        self._ticks.append(RecordedTick(timestamp, audio, hand, list(events or [])))

    def save(self, path: str | Path) -> Path:
        """Write the session as compressed npz."""
        path = Path(path).with_suffix(".npz")
        path.parent.mkdir(parents=True, exist_ok=True)

        n = len(self._ticks)
        n_joints = len(HandJoint)
        timestamps = np.array([t.timestamp for t in self._ticks], dtype=np.float64)
        audio = np.zeros((n, self.block_size), dtype=np.float32)
        has_audio = np.zeros(n, dtype=bool)
        hands = np.zeros((n, n_joints, 3), dtype=np.float32)
        tracked = np.zeros(n, dtype=bool)

        for i, tick in enumerate(self._ticks):
            if tick.audio is not None:
                audio[i] = tick.audio
                has_audio[i] = True
            if tick.hand is not None:
                hands[i] = tick.hand.to_array()
                tracked[i] = True

        # Events as a JSON string, one list per tick
        event_data = json.dumps([
            [{"gesture": e.gesture, "timestamp": e.timestamp} for e in t.events]
            for t in self._ticks
        ])

        np.savez_compressed(
            path,
            version=np.array(FORMAT_VERSION),
            sample_rate=np.array(self.sample_rate),
            timestamps=timestamps,
            audio=audio,
            has_audio=has_audio,
            hands=hands,
            tracked=tracked,
            event_data=np.array([event_data]),
        )
        return path


class SessionPlayer:
    """Replays a recorded session tick by tick.

    Usage:
        player = SessionPlayer.load("session.npz")
        for tick in player.play():
            engine.process(tick.timestamp, audio=tick.audio, hand=tick.hand)
    """

    def __init__(self, ticks: list[RecordedTick], sample_rate: int = 48000):
        self._ticks = ticks
        self.sample_rate = sample_rate

    @classmethod
    def load(cls, path: str | Path) -> SessionPlayer:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Recording not found: {path}")

        with np.load(path, allow_pickle=False) as data:
            version = int(data["version"])
            if version != FORMAT_VERSION:
                raise ValueError(f"Unsupported recording version {version}")
            sample_rate = int(data["sample_rate"])
            timestamps = data["timestamps"]
            audio = data["audio"]
            has_audio = data["has_audio"]
            hands = data["hands"]
            tracked = data["tracked"]
            event_data = json.loads(str(data["event_data"][0]))

        ticks = []
        for i in range(len(timestamps)):
            events = [GestureEvent(e["gesture"], float(e["timestamp"])) for e in event_data[i]]
            ticks.append(RecordedTick(
                timestamp=float(timestamps[i]),
                audio=audio[i].copy() if has_audio[i] else None,
                hand=HandSample.from_array(hands[i]) if tracked[i] else None,
                events=events,
            ))
        return cls(ticks, sample_rate)

    @property
    def tick_count(self) -> int:
        return len(self._ticks)

    @property
    def duration(self) -> float:
        if not self._ticks:
            return 0.0
        return self._ticks[-1].timestamp

    @property
    def recorded_events(self) -> list[GestureEvent]:
        return [e for t in self._ticks for e in t.events]

    def play(self) -> Iterator[RecordedTick]:
        """Iterate through all ticks without timing."""
        yield from self._ticks

    def play_realtime(self, speed: float = 1.0) -> Iterator[RecordedTick]:
        """Replay at the recorded cadence, scaled by `speed`."""
        if not self._ticks:
            return

        start = time.monotonic()
        for tick in self._ticks:
            target = tick.timestamp / speed
            elapsed = time.monotonic() - start
            if target > elapsed:
                time.sleep(target - elapsed)
            yield tick

    def get_tick(self, index: int) -> Optional[RecordedTick]:
        if 0 <= index < len(self._ticks):
            return self._ticks[index]
        return None
