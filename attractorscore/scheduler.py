from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict

from .config import AttractorMappings, Pattern, TrajectoryPoint, VoiceName
from .graph import InstrumentGraph
from .synth import DuoSynth, transpose
from .transport import LoopHandle, Transport, bar_index, to_seconds

_LOGGER = logging.getLogger("attractorscore.scheduler")

CHORD_INTERVAL = "1m"
ARPEGGIO_INTERVAL = "8n"
ARPEGGIO_NOTE = "16n"
ARPEGGIO_REST_PROBABILITY = 0.3
ARPEGGIO_OCTAVE = 12
ATTRACTOR_ROOT_HZ = 200.0
ATTRACTOR_RAMP = 0.1


class NoteEvent(BaseModel):
    voice: VoiceName
    notes: tuple[str | float, ...]
    time: float
    duration: float | None = None
    bar: int | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class RenderHooks(BaseModel):
    on_start: Callable[[], None] | None = None
    on_note: Callable[[NoteEvent], None] | None = None
    on_end: Callable[[], None] | None = None
    on_error: Callable[[Exception], None] | None = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )


def _emit(hooks: RenderHooks | None, event: NoteEvent) -> None:
    if hooks is not None and hooks.on_note is not None:
        hooks.on_note(event)


def schedule_events(
    graph: InstrumentGraph,
    transport: Transport,
    pattern: Pattern,
    mappings: AttractorMappings,
    trajectory: Sequence[TrajectoryPoint] | None = None,
    *,
    rng: np.random.Generator | None = None,
    hooks: RenderHooks | None = None,
) -> list[LoopHandle]:
    """Schedule the chord and arpeggio loops, plus attractor automation when a trajectory is given.

    Both loops derive the bar from the tick they fire on via ``bar_index``, so
    within one bar they always read the same chord.
    """

    local_rng = rng or np.random.default_rng()
    length = len(pattern)

    def _chord_tick(time: float, tick: int) -> None:
        bar = bar_index(tick, length)
        chord = pattern.chord_at(bar)
        measure = to_seconds(CHORD_INTERVAL, bpm=transport.bpm.get_value_at_time(time))
        graph.pad.trigger_attack_release(chord, measure, time)
        _emit(hooks, NoteEvent(voice="pad", notes=chord, time=time, duration=measure, bar=bar))
        bass_note = pattern.bass_at(bar)
        if bass_note:
            graph.bass.trigger_attack_release(bass_note, measure, time)
            _emit(
                hooks,
                NoteEvent(voice="bass", notes=(bass_note,), time=time, duration=measure, bar=bar),
            )

    def _arpeggio_tick(time: float, tick: int) -> None:
        bar = bar_index(tick, length)
        chord = pattern.chord_at(bar)
        if local_rng.random() < ARPEGGIO_REST_PROBABILITY:
            return
        note = chord[int(local_rng.integers(len(chord)))]
        high = transpose(note, ARPEGGIO_OCTAVE)
        duration = to_seconds(ARPEGGIO_NOTE, bpm=transport.bpm.get_value_at_time(time))
        graph.keys.trigger_attack_release(high, duration, time)
        _emit(hooks, NoteEvent(voice="keys", notes=(high,), time=time, duration=duration, bar=bar))

    loops = [
        transport.schedule_repeating(CHORD_INTERVAL, _chord_tick, name="chords"),
        transport.schedule_repeating(ARPEGGIO_INTERVAL, _arpeggio_tick, name="arpeggio"),
    ]

    if trajectory:
        automate_attractor(graph.attractor, mappings, trajectory)
        _emit(hooks, NoteEvent(voice="attractor", notes=(ATTRACTOR_ROOT_HZ,), time=0.0))
    return loops


def automate_attractor(
    synth: DuoSynth,
    mappings: AttractorMappings,
    trajectory: Sequence[TrajectoryPoint],
    *,
    start_time: float = 0.0,
) -> None:
    """Sound the attractor voice and step its mapped parameters at every trajectory sample."""

    synth.trigger_attack(ATTRACTOR_ROOT_HZ, start_time)
    for point in trajectory:
        for param, value in mappings.for_point(point.x, point.y, point.z):
            synth.param(param).set_value_at_time(value, start_time + point.time)
    _LOGGER.debug("Scheduled %d attractor automation points", len(trajectory))


def ramp_attractor(
    synth: DuoSynth,
    mappings: AttractorMappings,
    x: float,
    y: float,
    z: float,
    *,
    time: float,
    ramp: float = ATTRACTOR_RAMP,
) -> None:
    for param, value in mappings.for_point(x, y, z):
        synth.param(param).ramp_to(value, ramp, time)
