from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from typing import Callable

from .errors import InvalidConfigError
from .params import Param

_LOGGER = logging.getLogger("attractorscore.transport")

PPQ = 192
BEATS_PER_BAR = 4
TICKS_PER_BAR = PPQ * BEATS_PER_BAR
MIN_BPM = 1.0
MAX_BPM = 999.0

Time = str | float | int
LoopCallback = Callable[[float, int], None]

_NOTATION = re.compile(r"^(?P<count>\d+(?:\.\d+)?)(?P<unit>[mnt])(?P<dotted>\.?)$")


def to_ticks(value: Time, *, bpm: float) -> int:
    """Convert musical notation (``"1m"``, ``"8n"``, ``"8n."``, ``"96t"``) or seconds to ticks."""

    if isinstance(value, (int, float)):
        if value < 0 or math.isnan(value):
            raise InvalidConfigError(f"time must be non-negative, got {value!r}")
        return int(round(value * bpm / 60.0 * PPQ))
    match = _NOTATION.match(value.strip())
    if match is None:
        raise InvalidConfigError(f"unrecognised time notation: {value!r}")
    count = float(match.group("count"))
    unit = match.group("unit")
    if unit == "m":
        ticks = count * TICKS_PER_BAR
    elif unit == "n":
        if count <= 0:
            raise InvalidConfigError(f"note value must be positive: {value!r}")
        ticks = TICKS_PER_BAR / count
    else:
        ticks = count
    if match.group("dotted"):
        ticks *= 1.5
    return int(round(ticks))


def to_seconds(value: Time, *, bpm: float) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    return ticks_to_seconds(to_ticks(value, bpm=bpm), bpm=bpm)


def ticks_to_seconds(ticks: float, *, bpm: float) -> float:
    return ticks / PPQ * 60.0 / bpm


def bar_index(tick: int, length: int) -> int:
    """Bar containing ``tick``, wrapped to a progression of ``length`` bars."""
    return (tick // TICKS_PER_BAR) % length


class TransportState(str, Enum):
    STOPPED = "stopped"
    STARTED = "started"


@dataclass(eq=False)
class LoopHandle:
    """A repeating callback on the transport. Cancel to stop further firing."""

    interval: int
    callback: LoopCallback
    start: int = 0
    name: str = "loop"
    _active: bool = field(default=True, repr=False)
    _next: int = field(default=0, repr=False)

    def __post_init__(self) -> None:
        self._next = self.start

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        self._active = False

    def dispose(self) -> None:
        self.cancel()


@dataclass(frozen=True)
class _TempoAnchor:
    frame: int
    ticks: Fraction
    bpm: float
    sample_rate: int
    ticks_per_frame: Fraction

    def ticks_at(self, frame: int) -> Fraction:
        return self.ticks + (frame - self.frame) * self.ticks_per_frame


class Transport:
    """Tick clock driving repeating loops.

    The playhead is derived from the context's integer frame counter against a
    tempo anchor, so with a steady tempo bar lines land on whole ticks exactly.
    Tempo is read at the start of each block and a change re-anchors.
    """

    def __init__(self, bpm: float = 60.0) -> None:
        self.bpm = Param(bpm, name="bpm", min_value=MIN_BPM, max_value=MAX_BPM)
        self.state = TransportState.STOPPED
        self._ticks = Fraction(0)
        self._anchor: _TempoAnchor | None = None
        self._loops: list[LoopHandle] = []

    @property
    def ticks(self) -> int:
        return int(self._ticks)

    @property
    def loops(self) -> tuple[LoopHandle, ...]:
        return tuple(loop for loop in self._loops if loop.active)

    @property
    def position(self) -> str:
        ticks = int(self._ticks)
        bars, remainder = divmod(ticks, TICKS_PER_BAR)
        beats, remainder = divmod(remainder, PPQ)
        sixteenths = remainder / (PPQ / 4)
        return f"{bars}:{beats}:{sixteenths:g}"

    def schedule_repeating(
        self,
        interval: Time,
        callback: LoopCallback,
        *,
        start: Time = 0,
        name: str = "loop",
    ) -> LoopHandle:
        bpm = self.bpm.value
        interval_ticks = to_ticks(interval, bpm=bpm)
        if interval_ticks <= 0:
            raise InvalidConfigError(f"loop interval must be positive: {interval!r}")
        handle = LoopHandle(
            interval=interval_ticks,
            callback=callback,
            start=to_ticks(start, bpm=bpm),
            name=name,
        )
        # Skip occurrences already behind the playhead.
        while handle._next < self._ticks:
            handle._next += interval_ticks
        self._loops.append(handle)
        return handle

    def start(self, time: float = 0.0) -> None:
        _LOGGER.debug("Transport start at %.3fs (ticks=%d)", time, self.ticks)
        self.state = TransportState.STARTED
        self._anchor = None

    def stop(self, time: float = 0.0) -> None:
        _LOGGER.debug("Transport stop at %.3fs", time)
        self.state = TransportState.STOPPED
        self._ticks = Fraction(0)
        self._anchor = None
        for loop in self._loops:
            loop._next = loop.start

    def cancel(self) -> None:
        """Dispose every scheduled loop."""
        for loop in self._loops:
            loop.dispose()
        self._loops.clear()

    def _anchor_for(self, frame: int, sample_rate: int, bpm: float) -> _TempoAnchor:
        anchor = self._anchor
        if anchor is None or anchor.bpm != bpm or anchor.sample_rate != sample_rate:
            anchor = _TempoAnchor(
                frame=frame,
                ticks=self._ticks,
                bpm=bpm,
                sample_rate=sample_rate,
                ticks_per_frame=Fraction(bpm) * PPQ / (60 * sample_rate),
            )
            self._anchor = anchor
        return anchor

    def advance(self, start_frame: int, frames: int, sample_rate: int) -> None:
        """Move the playhead across ``frames`` samples from ``start_frame`` and fire due loops.

        A loop tick is due in this block when its first affected sample falls
        inside it, i.e. the tick is at or before the block's last sample.
        """

        if self.state is not TransportState.STARTED or frames <= 0:
            return
        start_time = start_frame / sample_rate
        bpm = self.bpm.get_value_at_time(start_time)
        anchor = self._anchor_for(start_frame, sample_rate, bpm)
        ticks_per_second = bpm / 60.0 * PPQ
        block_start = self._ticks
        last_sample = anchor.ticks_at(start_frame + frames - 1)

        due: list[tuple[int, int, LoopHandle]] = []
        for order, loop in enumerate(self._loops):
            while loop.active and loop._next <= last_sample:
                due.append((loop._next, order, loop))
                loop._next += loop.interval
        self._ticks = anchor.ticks_at(start_frame + frames)
        self._loops = [loop for loop in self._loops if loop.active]

        due.sort(key=lambda item: (item[0], item[1]))
        for tick, _, loop in due:
            if not loop.active:
                continue
            time = start_time + max(0.0, float(tick - block_start)) / ticks_per_second
            loop.callback(time, tick)
