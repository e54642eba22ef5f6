# pyright: reportUnknownVariableType=false
# pyright: reportUnknownMemberType=false

"""
Voices for the instrument graph.

1. Primitives: note names, phase-accumulating oscillators, ADSR envelopes, filters
2. Voices: PolySynth (pad/keys), MonoSynth (bass), DuoSynth (attractor)
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from functools import lru_cache
from types import MappingProxyType

import numpy as np
from numpy.typing import NDArray
from scipy.signal import lfilter  # type: ignore[import]

from .config import AttractorParam, EnvelopeConfig, OscillatorShape
from .errors import InvalidConfigError
from .nodes import NUM_CHANNELS, AudioNode, Block, StereoBlock
from .params import Param, db_to_gain

_LOGGER = logging.getLogger("attractorscore.synth")

Signal = NDArray[np.float64]
NoteInput = str | float | int

# =============================================================================
# PART 1: PRIMITIVES
# =============================================================================

_PITCH_CLASSES: Mapping[str, int] = MappingProxyType(
    {"c": 0, "d": 2, "e": 4, "f": 5, "g": 7, "a": 9, "b": 11}
)
_ACCIDENTALS: Mapping[str, int] = MappingProxyType(
    {"": 0, "#": 1, "##": 2, "x": 2, "b": -1, "bb": -2}
)
_NOTE_NAME = re.compile(r"^(?P<letter>[A-Ga-g])(?P<accidental>##|#|x|bb|b)?(?P<octave>-?\d+)$")

# Minimum times to prevent clicks (5ms attack, 10ms release)
MIN_ATTACK = 0.005
MIN_RELEASE = 0.01
FAT_COUNT = 3
FAT_SPREAD_CENTS = 20.0


def note_to_midi(note: str) -> int:
    """Scientific pitch name to MIDI number (``C4`` = 60, ``A4`` = 69)."""
    match = _NOTE_NAME.match(note.strip())
    if match is None:
        raise InvalidConfigError(f"Unknown note name: {note!r}")
    pitch_class = _PITCH_CLASSES[match.group("letter").lower()]
    accidental = _ACCIDENTALS[match.group("accidental") or ""]
    octave = int(match.group("octave"))
    return (octave + 1) * 12 + pitch_class + accidental


def midi_to_frequency(midi: float) -> float:
    return 440.0 * 2 ** ((midi - 69) / 12)


def note_to_frequency(note: NoteInput) -> float:
    if isinstance(note, str):
        return midi_to_frequency(note_to_midi(note))
    frequency = float(note)
    if not frequency > 0:
        raise InvalidConfigError(f"Frequency must be positive: {note!r}")
    return frequency


def transpose(note: NoteInput, semitones: float) -> float:
    """Frequency of ``note`` shifted by ``semitones``."""
    return note_to_frequency(note) * 2 ** (semitones / 12)


def advance_phase(
    start: float, frequency: Signal, sample_rate: int
) -> tuple[Signal, float]:
    """Per-sample phase (in cycles) for ``frequency``, plus the phase after the block."""
    increments = frequency / sample_rate
    phase = start + np.concatenate(([0.0], np.cumsum(increments[:-1])))
    return phase, float((start + increments.sum()) % 1.0)


def _poly_blep(t: Signal, dt: Signal) -> Signal:
    out = np.zeros_like(t)
    low = t < dt
    x = t[low] / dt[low]
    out[low] = x + x - x * x - 1.0
    high = t > 1.0 - dt
    x = (t[high] - 1.0) / dt[high]
    out[high] = x * x + x + x + 1.0
    return out


def waveform(shape: str, phase: Signal, dt: Signal) -> Signal:
    """Band-limited (PolyBLEP) waveform for a phase in cycles; ``dt`` is cycles per sample."""
    t = phase % 1.0
    dt = np.clip(dt, 1e-9, 0.5)
    if shape == "sine":
        return np.sin(2 * np.pi * t)
    if shape == "triangle":
        return 1.0 - 4.0 * np.abs(((t + 0.25) % 1.0) - 0.5)
    if shape == "sawtooth":
        return 2.0 * t - 1.0 - _poly_blep(t, dt)
    if shape == "square":
        naive = np.where(t < 0.5, 1.0, -1.0)
        return naive + _poly_blep(t, dt) - _poly_blep((t + 0.5) % 1.0, dt)
    raise InvalidConfigError(f"Unknown oscillator shape: {shape!r}")


@dataclass(frozen=True, slots=True)
class Oscillator:
    """Oscillator shape; ``fat*`` shapes stack detuned copies."""

    shape: OscillatorShape

    @property
    def base(self) -> str:
        return self.shape[3:] if self.shape.startswith("fat") else self.shape

    @property
    def ratios(self) -> tuple[float, ...]:
        if not self.shape.startswith("fat"):
            return (1.0,)
        half = FAT_SPREAD_CENTS / 2
        cents = np.linspace(-half, half, FAT_COUNT)
        return tuple(float(2 ** (c / 1200)) for c in cents)

    def render(
        self, frequency: Signal, phases: list[float], sample_rate: int
    ) -> tuple[Signal, list[float]]:
        ratios = self.ratios
        if len(phases) != len(ratios):
            phases = [0.0] * len(ratios)
        out = np.zeros_like(frequency)
        next_phases: list[float] = []
        for ratio, start in zip(ratios, phases):
            detuned = frequency * ratio
            phase, after = advance_phase(start, detuned, sample_rate)
            out += waveform(self.base, phase, detuned / sample_rate)
            next_phases.append(after)
        return out / len(ratios), next_phases


def envelope_level(
    times: Signal,
    start: float,
    release_at: float | None,
    env: EnvelopeConfig,
) -> Signal:
    """Linear ADSR. Release ramps from whatever level the envelope had reached."""
    attack = max(env.attack, MIN_ATTACK)
    release = max(env.release, MIN_RELEASE)

    def _gate(t: Signal) -> Signal:
        level = np.where(t < attack, t / attack, env.sustain)
        if env.decay > 0:
            in_decay = (t >= attack) & (t < attack + env.decay)
            decayed = 1.0 - (1.0 - env.sustain) * ((t - attack) / env.decay)
            level = np.where(in_decay, decayed, level)
        return np.where(t < 0, 0.0, level)

    elapsed = times - start
    level = _gate(elapsed)
    if release_at is None:
        return level
    held = float(_gate(np.array([release_at - start]))[0])
    since = times - release_at
    released = held * np.clip(1.0 - since / release, 0.0, 1.0)
    return np.where(since >= 0, released, level)


def release_end(release_at: float | None, env: EnvelopeConfig) -> float:
    if release_at is None:
        return math.inf
    return release_at + max(env.release, MIN_RELEASE)


def _quantize(value: float, step: float = 1.0) -> float:
    return round(value / step) * step


@lru_cache(maxsize=512)
def _lowpass_cached(cutoff: float, q: float, sample_rate: int) -> tuple[Signal, Signal]:
    """RBJ cookbook biquad lowpass coefficients."""
    w0 = 2 * math.pi * cutoff / sample_rate
    alpha = math.sin(w0) / (2 * q)
    cos_w0 = math.cos(w0)
    b = np.array([(1 - cos_w0) / 2, 1 - cos_w0, (1 - cos_w0) / 2])
    a = np.array([1 + alpha, -2 * cos_w0, 1 - alpha])
    return b / a[0], a / a[0]


class ResonantLowpass:
    """Two cascaded biquads (-24 dB/oct). Filter state carries across blocks."""

    def __init__(self, q: float = 2.0) -> None:
        self.q = q
        self._state = (np.zeros(2), np.zeros(2))

    def reset(self) -> None:
        self._state = (np.zeros(2), np.zeros(2))

    def process(self, signal: Signal, cutoff: float, sample_rate: int) -> Signal:
        nyquist = sample_rate / 2
        cutoff = _quantize(min(max(cutoff, 10.0), nyquist * 0.9))
        b1, a1 = _lowpass_cached(cutoff, self.q, sample_rate)
        b2, a2 = _lowpass_cached(cutoff, math.sqrt(0.5), sample_rate)
        stage1, z1 = lfilter(b1, a1, signal, zi=self._state[0])
        stage2, z2 = lfilter(b2, a2, stage1, zi=self._state[1])
        self._state = (z1, z2)
        return np.asarray(stage2, dtype=np.float64)


def _as_notes(notes: NoteInput | Sequence[NoteInput]) -> list[NoteInput]:
    if isinstance(notes, (str, int, float)):
        return [notes]
    return list(notes)


def _stereo(mono: Signal) -> StereoBlock:
    return np.broadcast_to(mono, (NUM_CHANNELS, mono.shape[0])).copy()


# =============================================================================
# PART 2: VOICES
# =============================================================================


@dataclass(eq=False)
class _Note:
    frequency: float
    start: float
    release_at: float | None = None
    velocity: float = 1.0
    phases: list[float] = field(default_factory=list)
    mod_phase: float = 0.0

    def release(self, time: float) -> None:
        if self.release_at is None or self.release_at > time:
            self.release_at = max(time, self.start)


@dataclass(frozen=True, slots=True)
class FMSettings:
    harmonicity: float = 0.5
    modulation_index: float = 1.2
    modulation_env: EnvelopeConfig = EnvelopeConfig(attack=1, decay=3, sustain=0.8, release=5)


class Instrument(AudioNode):
    """Source node with a dB ``volume`` Param."""

    def __init__(self, name: str, *, volume: float) -> None:
        super().__init__(name)
        self.volume = Param(volume, name=f"{name}.volume")

    def _gain(self, block: Block) -> Signal:
        return db_to_gain(
            self.volume.values(block.start_time, block.frames, block.sample_rate)
        ).astype(np.float64)


class PolySynth(Instrument):
    """Polyphonic voice. With ``fm`` set, each note is an FM carrier/modulator pair."""

    def __init__(
        self,
        name: str,
        *,
        osc: OscillatorShape,
        envelope: EnvelopeConfig,
        volume: float = 0.0,
        fm: FMSettings | None = None,
        max_polyphony: int = 32,
    ) -> None:
        super().__init__(name, volume=volume)
        self.oscillator = Oscillator(osc)
        self.envelope = envelope
        self.fm = fm
        self.max_polyphony = max_polyphony
        self._notes: list[_Note] = []

    @property
    def active_notes(self) -> int:
        return len(self._notes)

    def set(
        self, *, osc: OscillatorShape | None = None, env: EnvelopeConfig | None = None
    ) -> None:
        if osc is not None:
            self.oscillator = Oscillator(osc)
        if env is not None:
            self.envelope = env

    def trigger_attack(
        self, notes: NoteInput | Sequence[NoteInput], time: float, velocity: float = 1.0
    ) -> None:
        for note in _as_notes(notes):
            self._start(note_to_frequency(note), time, None, velocity)

    def trigger_release(self, notes: NoteInput | Sequence[NoteInput], time: float) -> None:
        targets = {round(note_to_frequency(note), 6) for note in _as_notes(notes)}
        for held in self._notes:
            if held.release_at is None and round(held.frequency, 6) in targets:
                held.release(time)

    def trigger_attack_release(
        self,
        notes: NoteInput | Sequence[NoteInput],
        duration: float,
        time: float,
        velocity: float = 1.0,
    ) -> None:
        for note in _as_notes(notes):
            self._start(note_to_frequency(note), time, time + duration, velocity)

    def release_all(self, time: float) -> None:
        for held in self._notes:
            held.release(time)

    def _start(
        self, frequency: float, time: float, release_at: float | None, velocity: float
    ) -> None:
        self._notes.append(_Note(frequency, time, release_at, velocity))
        if len(self._notes) > self.max_polyphony:
            stolen = self._notes.pop(0)
            _LOGGER.debug("%s voice stolen (%.1f Hz)", self.name, stolen.frequency)

    def process(self, block: Block, inputs: StereoBlock) -> StereoBlock:
        if not self._notes:
            return inputs
        times = block.times()
        mono = np.zeros(block.frames, dtype=np.float64)
        remaining: list[_Note] = []
        for note in self._notes:
            if note.start >= block.end_time:
                remaining.append(note)
                continue
            mono += self._render_note(note, times, block.sample_rate)
            if release_end(note.release_at, self.envelope) > block.end_time:
                remaining.append(note)
        self._notes = remaining
        return inputs + _stereo(mono * self._gain(block))

    def _render_note(self, note: _Note, times: Signal, sample_rate: int) -> Signal:
        level = envelope_level(times, note.start, note.release_at, self.envelope)
        frequency = np.full(times.shape, note.frequency)
        if self.fm is not None:
            modulator_freq = note.frequency * self.fm.harmonicity
            mod_phase, note.mod_phase = advance_phase(
                note.mod_phase, np.full(times.shape, modulator_freq), sample_rate
            )
            depth = self.fm.modulation_index * modulator_freq
            mod_level = envelope_level(times, note.start, note.release_at, self.fm.modulation_env)
            frequency = frequency + depth * mod_level * np.sin(2 * np.pi * mod_phase)
        signal, note.phases = self.oscillator.render(frequency, note.phases, sample_rate)
        return signal * level * note.velocity


@dataclass(frozen=True, slots=True)
class FilterEnvelope:
    attack: float = 0.01
    decay: float = 0.5
    sustain: float = 0.2
    release: float = 2.0
    base_frequency: float = 50.0
    octaves: float = 2.0

    def as_envelope(self) -> EnvelopeConfig:
        return EnvelopeConfig(
            attack=self.attack, decay=self.decay, sustain=self.sustain, release=self.release
        )


class MonoSynth(PolySynth):
    """Monophonic voice through a resonant lowpass swept by a filter envelope.

    A new attack releases whatever note is still sounding at that time.
    """

    def __init__(
        self,
        name: str,
        *,
        osc: OscillatorShape,
        envelope: EnvelopeConfig,
        volume: float = 0.0,
        filter_q: float = 2.0,
        filter_envelope: FilterEnvelope | None = None,
    ) -> None:
        super().__init__(name, osc=osc, envelope=envelope, volume=volume, max_polyphony=4)
        self.filter = ResonantLowpass(filter_q)
        self.filter_envelope = filter_envelope or FilterEnvelope()

    def _start(
        self, frequency: float, time: float, release_at: float | None, velocity: float
    ) -> None:
        for held in self._notes:
            held.release(time)
        super()._start(frequency, time, release_at, velocity)

    def process(self, block: Block, inputs: StereoBlock) -> StereoBlock:
        if not self._notes:
            return inputs
        latest = self._notes[-1]
        midpoint = np.array([block.start_time + block.frames / block.sample_rate / 2])
        sweep = float(
            envelope_level(
                midpoint, latest.start, latest.release_at, self.filter_envelope.as_envelope()
            )[0]
        )
        cutoff = self.filter_envelope.base_frequency * 2 ** (self.filter_envelope.octaves * sweep)
        voiced = super().process(block, block.silence())
        filtered = self.filter.process(voiced[0], cutoff, block.sample_rate)
        return inputs + _stereo(filtered)


class DuoSynth(Instrument):
    """Two-oscillator monophonic voice whose pitch, interval and vibrato are automatable."""

    VIBRATO_CENTS = 50.0

    def __init__(
        self,
        name: str,
        *,
        osc0: OscillatorShape,
        osc1: OscillatorShape,
        envelope: EnvelopeConfig,
        volume: float = 0.0,
        voice_volume: float = -10.0,
        harmonicity: float = 1.5,
        vibrato_rate: float = 5.0,
        vibrato_amount: float = 0.5,
    ) -> None:
        super().__init__(name, volume=volume)
        self.voice0 = Oscillator(osc0)
        self.voice1 = Oscillator(osc1)
        self.envelope = envelope
        self.voice_gain = float(db_to_gain(voice_volume))
        self.frequency = Param(440.0, name=f"{name}.frequency", min_value=0.0)
        self.harmonicity = Param(harmonicity, name=f"{name}.harmonicity", min_value=0.0)
        self.vibrato_rate = Param(vibrato_rate, name=f"{name}.vibratoRate", min_value=0.0)
        self.vibrato_amount = Param(
            vibrato_amount, name=f"{name}.vibratoAmount", min_value=0.0, max_value=1.0
        )
        self._notes: list[_Note] = []
        self._phases: tuple[list[float], list[float]] = ([], [])
        self._vibrato_phase = 0.0

    @property
    def sounding(self) -> bool:
        return any(note.release_at is None for note in self._notes)

    def param(self, name: AttractorParam) -> Param:
        match name:
            case "frequency":
                return self.frequency
            case "harmonicity":
                return self.harmonicity
            case "vibratoRate":
                return self.vibrato_rate
            case "vibratoAmount":
                return self.vibrato_amount
            case "volume":
                return self.volume
        raise InvalidConfigError(f"Unknown attractor parameter: {name!r}")

    def params(self) -> Iterable[Param]:
        return (
            self.frequency,
            self.harmonicity,
            self.vibrato_rate,
            self.vibrato_amount,
            self.volume,
        )

    def set(
        self,
        *,
        osc0: OscillatorShape | None = None,
        osc1: OscillatorShape | None = None,
        env: EnvelopeConfig | None = None,
    ) -> None:
        if osc0 is not None:
            self.voice0 = Oscillator(osc0)
        if osc1 is not None:
            self.voice1 = Oscillator(osc1)
        if env is not None:
            self.envelope = env

    def trigger_attack(self, note: NoteInput, time: float, velocity: float = 1.0) -> None:
        self.frequency.set_value_at_time(note_to_frequency(note), time)
        for held in self._notes:
            held.release(time)
        self._notes.append(_Note(note_to_frequency(note), time, None, velocity))

    def trigger_release(self, time: float) -> None:
        for held in self._notes:
            held.release(time)

    def release_all(self, time: float) -> None:
        self.trigger_release(time)

    def process(self, block: Block, inputs: StereoBlock) -> StereoBlock:
        if not self._notes:
            return inputs
        times = block.times()
        sr = block.sample_rate
        level = np.zeros(block.frames, dtype=np.float64)
        remaining: list[_Note] = []
        for note in self._notes:
            if note.start < block.end_time:
                level += envelope_level(times, note.start, note.release_at, self.envelope) * note.velocity
            if release_end(note.release_at, self.envelope) > block.end_time:
                remaining.append(note)
        self._notes = remaining

        frequency = self.frequency.values(block.start_time, block.frames, sr).astype(np.float64)
        rate = self.vibrato_rate.values(block.start_time, block.frames, sr).astype(np.float64)
        amount = self.vibrato_amount.values(block.start_time, block.frames, sr).astype(np.float64)
        harmonicity = self.harmonicity.values(block.start_time, block.frames, sr).astype(np.float64)

        vibrato_phase, self._vibrato_phase = advance_phase(self._vibrato_phase, rate, sr)
        cents = np.sin(2 * np.pi * vibrato_phase) * self.VIBRATO_CENTS * amount
        freq0 = frequency * 2 ** (cents / 1200)
        freq1 = freq0 * harmonicity
        out0, phases0 = self.voice0.render(freq0, self._phases[0], sr)
        out1, phases1 = self.voice1.render(freq1, self._phases[1], sr)
        self._phases = (phases0, phases1)
        mono = (out0 + out1) * self.voice_gain * level
        return inputs + _stereo(mono * self._gain(block))
