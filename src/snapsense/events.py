"""Temporal smoothing, debouncing and delivery of gesture events.

A detector produces one probability per tick. `ScoreSmoother` integrates it
with an exponential moving average, `EventStateMachine` turns the smoothed
score into at most one event per rising edge with a cooldown, and
`EventQueue` hands events to consumers without coupling them to the tick
loop.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

# slack for decimal timestamps such as 0.35 - 0.1 < 0.25
TIME_TOLERANCE = 1e-9

logger = logging.getLogger("snapsense.events")


@dataclass(frozen=True)
class GestureEvent:
    """A debounced gesture detection."""
    gesture: str
    timestamp: float


class ScoreSmoother:
    """EMA over per-tick probabilities.

    update(p):  score = score * alpha + p * (1 - alpha)
    decay():    score = score * alpha

    alpha = 0 disables smoothing (the score follows p, and a decay tick
    drops it to zero).
    """

    def __init__(self, smoothing: float = 0.85):
        if not 0.0 <= smoothing < 1.0:
            raise ValueError(f"smoothing must be in [0, 1), got {smoothing}")
        self.smoothing = smoothing
        self._score = 0.0

    @property
    def score(self) -> float:
        return self._score

    def update(self, probability: float) -> float:
        self._score = self._score * self.smoothing + probability * (1.0 - self.smoothing)
        return self._score

    def decay(self) -> float:
        self._score *= self.smoothing
        return self._score

    def reset(self):
        self._score = 0.0


class EventState(Enum):
    IDLE = "idle"
    COOLDOWN = "cooldown"


class EventStateMachine:
    """Rising-edge detector with a time-based cooldown.

    States:
        IDLE      ready; a rising edge fires an event and enters COOLDOWN
        COOLDOWN  rising edges are ignored until `cooldown` seconds have
                  passed since the last event, then back to IDLE

    The "above threshold" flag is tracked on every step, in both states, so
    a score that stays high through the cooldown does not fire again when
    the cooldown ends.
    """

    def __init__(self, threshold: float = 0.6, cooldown: float = 0.5):
        if cooldown < 0:
            raise ValueError(f"cooldown must be >= 0, got {cooldown}")
        self.threshold = threshold
        self.cooldown = cooldown
        self._state = EventState.IDLE
        self._last_event: Optional[float] = None
        self._was_above = False

    @property
    def state(self) -> EventState:
        return self._state

    @property
    def last_event_time(self) -> Optional[float]:
        return self._last_event

    def update_state(self, now: float) -> EventState:
        """Leave COOLDOWN once the cooldown has elapsed."""
        if (
            self._state is EventState.COOLDOWN
            and self._last_event is not None
            and now - self._last_event >= self.cooldown - TIME_TOLERANCE
        ):
            self._state = EventState.IDLE
        return self._state

    def step(self, score: float, now: float) -> bool:
        """Feed one smoothed score. Returns True if an event fires now."""
        state = self.update_state(now)
        above = score > self.threshold
        rising = above and not self._was_above
        self._was_above = above

        if rising and state is EventState.IDLE:
            self._state = EventState.COOLDOWN
            self._last_event = now
            return True
        return False

    def reset(self):
        self._state = EventState.IDLE
        self._last_event = None
        self._was_above = False


class EventQueue:
    """Bounded queue of gesture events with optional push subscribers.

    Consumers either poll:

        for event in queue.poll():
            ...

    or subscribe a callback, invoked synchronously on publish. A failing
    callback is logged and does not affect the publisher or other
    subscribers.
    """

    def __init__(self, maxlen: int = 256):
        self._events: deque[GestureEvent] = deque(maxlen=maxlen)
        self._subscribers: list[Callable[[GestureEvent], None]] = []

    def subscribe(self, callback: Callable[[GestureEvent], None]):
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[GestureEvent], None]):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, event: GestureEvent):
        self._events.append(event)
        for cb in list(self._subscribers):
            try:
                cb(event)
            except Exception as e:
                logger.error("Gesture subscriber %r failed: %s", cb, e)

    def poll(self) -> list[GestureEvent]:
        """Remove and return all pending events, oldest first."""
        events = list(self._events)
        self._events.clear()
        return events

    def __len__(self) -> int:
        return len(self._events)

    def clear(self):
        self._events.clear()
