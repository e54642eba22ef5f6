from __future__ import annotations

import bisect
import math
from dataclasses import dataclass
from typing import Literal

import numpy as np

from .audio import FloatArray

EventKind = Literal["set", "linear"]


@dataclass(frozen=True, slots=True)
class _Event:
    time: float
    kind: EventKind
    value: float


class Param:
    """A scalar automated on the audio timeline.

    Events follow Web Audio semantics: a ``set`` event steps to its value at
    its time; a ``linear`` event ramps from the previous event's (time, value)
    to its own (time, value).
    """

    def __init__(
        self,
        value: float,
        *,
        name: str = "param",
        min_value: float | None = None,
        max_value: float | None = None,
    ) -> None:
        self.name = name
        self._min = min_value
        self._max = max_value
        self._default = self._clamp(value)
        self._events: list[_Event] = []
        self._times: list[float] = []

    def __repr__(self) -> str:
        return f"Param({self.name}={self._default!r}, events={len(self._events)})"

    def _clamp(self, value: float) -> float:
        value = float(value)
        if self._min is not None:
            value = max(self._min, value)
        if self._max is not None:
            value = min(self._max, value)
        return value

    @property
    def value(self) -> float:
        """Value when no automation is scheduled. Assigning clears the timeline."""
        return self._default

    @value.setter
    def value(self, value: float) -> None:
        self._default = self._clamp(value)
        self._events.clear()
        self._times.clear()

    @property
    def events(self) -> int:
        return len(self._events)

    def _insert(self, event: _Event) -> None:
        # Events at equal times keep insertion order.
        index = bisect.bisect_right(self._times, event.time)
        self._events.insert(index, event)
        self._times.insert(index, event.time)

    def set_value_at_time(self, value: float, time: float) -> "Param":
        self._insert(_Event(max(0.0, float(time)), "set", self._clamp(value)))
        return self

    def linear_ramp_to_value_at_time(self, value: float, end_time: float) -> "Param":
        self._insert(_Event(max(0.0, float(end_time)), "linear", self._clamp(value)))
        return self

    def cancel_scheduled_values(self, after: float) -> "Param":
        index = bisect.bisect_left(self._times, after)
        del self._events[index:]
        del self._times[index:]
        return self

    def cancel_and_hold_at_time(self, time: float) -> "Param":
        held = self.get_value_at_time(time)
        self.cancel_scheduled_values(time)
        self.set_value_at_time(held, time)
        return self

    def ramp_to(self, value: float, ramp_time: float, start_time: float) -> "Param":
        """Smoothly move from the value at ``start_time`` to ``value`` over ``ramp_time`` s."""
        self.cancel_and_hold_at_time(start_time)
        if ramp_time <= 0:
            return self.set_value_at_time(value, start_time)
        return self.linear_ramp_to_value_at_time(value, start_time + ramp_time)

    def get_value_at_time(self, time: float) -> float:
        if not self._events:
            return self._default
        index = bisect.bisect_right(self._times, time)
        previous = self._events[index - 1] if index > 0 else None
        following = self._events[index] if index < len(self._events) else None
        if following is not None and following.kind == "linear":
            start_time = previous.time if previous is not None else 0.0
            start_value = previous.value if previous is not None else self._default
            span = following.time - start_time
            if span <= 0:
                return following.value
            progress = (time - start_time) / span
            return start_value + (following.value - start_value) * progress
        if previous is not None:
            return previous.value
        return self._default

    def values(self, start_time: float, frames: int, sample_rate: int) -> FloatArray:
        """Per-sample values for ``frames`` samples starting at ``start_time``."""
        end_time = start_time + frames / sample_rate
        first = bisect.bisect_right(self._times, start_time)
        last = bisect.bisect_right(self._times, end_time)
        ramp_pending = first < len(self._events) and self._events[first].kind == "linear"
        if first == last and not ramp_pending:
            return np.full(frames, self.get_value_at_time(start_time), dtype=np.float32)
        times = start_time + np.arange(frames, dtype=np.float64) / sample_rate
        out = np.empty(frames, dtype=np.float64)
        # Boundaries: block start, every event inside the block, block end.
        bounds = [0, *np.searchsorted(times, self._times[first:last], side="left").tolist(), frames]
        for lo, hi in zip(bounds[:-1], bounds[1:]):
            if hi <= lo:
                continue
            out[lo:hi] = self._segment(times[lo:hi])
        return out.astype(np.float32)

    def _segment(self, times: np.ndarray) -> np.ndarray:
        # ``times`` never crosses an event, so the bracketing pair is fixed.
        head = float(times[0])
        index = bisect.bisect_right(self._times, head)
        previous = self._events[index - 1] if index > 0 else None
        following = self._events[index] if index < len(self._events) else None
        if following is not None and following.kind == "linear":
            start_time = previous.time if previous is not None else 0.0
            start_value = previous.value if previous is not None else self._default
            span = following.time - start_time
            if span <= 0:
                return np.full(times.shape, following.value)
            progress = (times - start_time) / span
            return start_value + (following.value - start_value) * progress
        value = previous.value if previous is not None else self._default
        return np.full(times.shape, value)

    def prune(self, before: float) -> None:
        """Drop events older than ``before``, keeping the latest one as the anchor."""
        index = bisect.bisect_right(self._times, before)
        if index <= 1:
            return
        del self._events[: index - 1]
        del self._times[: index - 1]


def db_to_gain(db: FloatArray | float) -> FloatArray:
    """Decibels to linear amplitude; -inf or <= -100 dB is silence."""
    db_array = np.asarray(db, dtype=np.float64)
    gain = np.power(10.0, db_array / 20.0)
    return np.where(db_array <= -100.0, 0.0, gain).astype(np.float32)


def gain_to_db(gain: float) -> float:
    if gain <= 0:
        return -math.inf
    return 20.0 * math.log10(gain)
