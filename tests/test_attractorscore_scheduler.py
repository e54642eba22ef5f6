import numpy as np
import pytest

from attractorscore.config import Pattern, TrajectoryPoint, default_synths
from attractorscore.graph import RenderContext, create_graph
from attractorscore.patterns import DEFAULT_PATTERNS
from attractorscore.scheduler import (
    ATTRACTOR_ROOT_HZ,
    NoteEvent,
    RenderHooks,
    automate_attractor,
    ramp_attractor,
    schedule_events,
)
from attractorscore.synth import note_to_frequency, transpose
from attractorscore.transport import to_seconds

SR = 8_000
BPM = 240.0


class _FixedRng:
    """Stand-in for ``np.random.Generator`` returning a constant draw."""

    def __init__(self, draw: float) -> None:
        self.draw = draw

    def random(self) -> float:
        return self.draw

    def integers(self, high: int) -> int:
        _ = high
        return 0


def _advance(context: RenderContext, seconds: float) -> None:
    # Transport only; no audio needs to be rendered to observe scheduling.
    frame = 0
    end = int(round(seconds * context.sample_rate))
    while frame < end:
        count = min(context.block_size, end - frame)
        context.transport.advance(frame, count, context.sample_rate)
        frame += count


def _schedule(
    pattern: Pattern, rng: object, trajectory=None, *, sample_rate: int = SR, bpm: float = BPM
) -> tuple[RenderContext, list[NoteEvent]]:
    context = RenderContext(sample_rate=sample_rate, bpm=bpm)
    synths = default_synths()
    graph = create_graph(context, synths)
    events: list[NoteEvent] = []
    schedule_events(
        graph,
        context.transport,
        pattern,
        synths.attractor.mappings,
        trajectory,
        rng=rng,  # type: ignore[arg-type]
        hooks=RenderHooks(on_note=events.append),
    )
    context.transport.start(0.0)
    return context, events


def test_chords_cycle_in_order() -> None:
    pattern = DEFAULT_PATTERNS["Ethereal"]
    bar = to_seconds("1m", bpm=BPM)
    context, events = _schedule(pattern, _FixedRng(0.0))
    _advance(context, 2 * len(pattern) * bar)

    pads = [event for event in events if event.voice == "pad"]
    assert [event.notes for event in pads] == list(pattern.chords) * 2
    assert [event.bar for event in pads] == [0, 1, 2, 3, 0, 1, 2, 3]
    assert [event.time for event in pads] == pytest.approx([i * bar for i in range(8)], abs=1e-6)


def test_bass_follows_bar_index() -> None:
    pattern = DEFAULT_PATTERNS["Mystery"]
    context, events = _schedule(pattern, _FixedRng(0.0))
    _advance(context, 5 * to_seconds("1m", bpm=BPM))

    bass = [event.notes[0] for event in events if event.voice == "bass"]
    assert bass == ["D2", "Bb1", "G1", "A1", "D2"]


@pytest.mark.parametrize("sample_rate", [22_050, 44_100, 48_000])
@pytest.mark.parametrize("bpm", [60.0, 133.0])
def test_single_bar_drone_triggers_bass_once(sample_rate: int, bpm: float) -> None:
    pattern = DEFAULT_PATTERNS["Drone"]
    context, events = _schedule(pattern, _FixedRng(0.0), sample_rate=sample_rate, bpm=bpm)
    _advance(context, to_seconds("1m", bpm=bpm))

    bass = [event for event in events if event.voice == "bass"]
    assert len(bass) == 1
    assert bass[0].time == 0.0
    assert bass[0].notes == ("C2",)


def test_pattern_without_bass_skips_bass() -> None:
    pattern = Pattern(chords=(("C3", "E3", "G3"),))
    context, events = _schedule(pattern, _FixedRng(0.0))
    _advance(context, 2 * to_seconds("1m", bpm=BPM))
    assert [event.voice for event in events] == ["pad", "pad"]


def test_arpeggio_rest_probability() -> None:
    pattern = DEFAULT_PATTERNS["Ethereal"]
    context, events = _schedule(pattern, _FixedRng(0.29))
    _advance(context, to_seconds("1m", bpm=BPM))
    assert not any(event.voice == "keys" for event in events)

    context, events = _schedule(pattern, _FixedRng(0.3))
    _advance(context, to_seconds("1m", bpm=BPM))
    keys = [event for event in events if event.voice == "keys"]
    assert len(keys) == 8
    expected = transpose(pattern.chords[0][0], 12)
    assert all(event.notes == (pytest.approx(expected),) for event in keys)
    assert keys[1].time == pytest.approx(to_seconds("8n", bpm=BPM), abs=1e-6)
    assert keys[0].duration == pytest.approx(to_seconds("16n", bpm=BPM))


def test_arpeggio_uses_current_bar_chord() -> None:
    pattern = DEFAULT_PATTERNS["Dark Space"]
    context, events = _schedule(pattern, _FixedRng(0.9))
    _advance(context, 2 * to_seconds("1m", bpm=BPM))
    keys = [event for event in events if event.voice == "keys"]
    assert {event.bar for event in keys[:8]} == {0}
    assert {event.bar for event in keys[8:]} == {1}
    assert keys[8].notes[0] == pytest.approx(transpose(pattern.chords[1][0], 12))


def test_seeded_rng_is_reproducible() -> None:
    pattern = DEFAULT_PATTERNS["Ethereal"]
    runs = []
    for _ in range(2):
        context, events = _schedule(pattern, np.random.default_rng(42))
        _advance(context, 2 * to_seconds("1m", bpm=BPM))
        runs.append([(event.voice, event.notes, event.time) for event in events])
    assert runs[0] == runs[1]


def test_trajectory_automates_attractor() -> None:
    trajectory = [
        TrajectoryPoint(time=0.0, x=0.0, y=0.0, z=0.0),
        TrajectoryPoint(time=0.5, x=20.0, y=10.0, z=-20.0),
    ]
    context, events = _schedule(DEFAULT_PATTERNS["Ethereal"], _FixedRng(0.0), trajectory)
    assert any(event.voice == "attractor" for event in events)


def test_automate_attractor_steps_mapped_values() -> None:
    context = RenderContext(sample_rate=SR)
    synths = default_synths()
    graph = create_graph(context, synths)
    trajectory = [
        TrajectoryPoint(time=0.0, x=0.0, y=0.0, z=0.0),
        TrajectoryPoint(time=0.5, x=20.0, y=10.0, z=-20.0),
    ]
    automate_attractor(graph.attractor, synths.attractor.mappings, trajectory)

    attractor = graph.attractor
    assert attractor.sounding
    assert attractor.frequency.get_value_at_time(0.25) == pytest.approx(100.0)
    assert attractor.frequency.get_value_at_time(0.5) == pytest.approx(800.0)
    assert attractor.harmonicity.get_value_at_time(0.6) == pytest.approx(1.25)
    assert attractor.vibrato_rate.get_value_at_time(0.6) == pytest.approx(10.0)


def test_automate_attractor_starts_at_root() -> None:
    context = RenderContext(sample_rate=SR)
    synths = default_synths()
    graph = create_graph(context, synths)
    automate_attractor(graph.attractor, synths.attractor.mappings, [], start_time=0.0)
    assert graph.attractor.frequency.get_value_at_time(0.0) == ATTRACTOR_ROOT_HZ


def test_ramp_attractor_ramps_all_axes() -> None:
    context = RenderContext(sample_rate=SR)
    synths = default_synths()
    graph = create_graph(context, synths)
    graph.attractor.trigger_attack(note_to_frequency(ATTRACTOR_ROOT_HZ), 0.0)
    ramp_attractor(graph.attractor, synths.attractor.mappings, 10.0, 20.0, 0.0, time=1.0)
    assert graph.attractor.frequency.get_value_at_time(1.0) == pytest.approx(ATTRACTOR_ROOT_HZ)
    assert graph.attractor.frequency.get_value_at_time(1.1) == pytest.approx(450.0)
    assert graph.attractor.harmonicity.get_value_at_time(1.1) == pytest.approx(2.0)
    assert graph.attractor.vibrato_rate.get_value_at_time(1.1) == pytest.approx(1.0)


@pytest.mark.parametrize("sample_rate", [22_050, 44_100, 48_000])
@pytest.mark.parametrize("bpm", [60.0, 90.0, 133.0])
@pytest.mark.parametrize("bars", [1, 2, 3, 4, 5])
def test_n_bars_visit_each_chord_once_per_bar(sample_rate: int, bpm: float, bars: int) -> None:
    pattern = DEFAULT_PATTERNS["Ethereal"]
    context, events = _schedule(pattern, _FixedRng(0.0), sample_rate=sample_rate, bpm=bpm)
    _advance(context, bars * to_seconds("1m", bpm=bpm))
    pads = [event for event in events if event.voice == "pad"]
    assert [event.bar for event in pads] == [bar % len(pattern) for bar in range(bars)]
