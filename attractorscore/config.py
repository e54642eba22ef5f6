from __future__ import annotations

import logging
import os
from collections.abc import Iterator, Mapping
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import InvalidConfigError

_LOGGER = logging.getLogger("attractorscore.config")

OscillatorShape = Literal[
    "sine",
    "triangle",
    "sawtooth",
    "square",
    "fatsine",
    "fattriangle",
    "fatsawtooth",
    "fatsquare",
]
AttractorParam = Literal["frequency", "harmonicity", "vibratoRate", "vibratoAmount", "volume"]
VoiceName = Literal["pad", "keys", "bass", "attractor"]
MixTarget = Literal["pad", "keys", "bass", "attractor", "master"]
FxName = Literal["bpm", "reverb", "delay"]
Axis = Literal["x", "y", "z"]

# |axis value| at which a mapping reaches its max (typical attractor extent).
AXIS_RANGE = 20.0
MIN_FREQUENCY = 20.0
MAX_FREQUENCY = 20_000.0

_FROZEN = ConfigDict(frozen=True, extra="forbid")


class EnvelopeConfig(BaseModel):
    attack: float = Field(ge=0.0)
    decay: float = Field(ge=0.0)
    sustain: float = Field(ge=0.0, le=1.0)
    release: float = Field(ge=0.0)

    model_config = _FROZEN


class InstrumentConfig(BaseModel):
    """Per-voice synthesis template: oscillator, gain and ADSR envelope."""

    vol: float
    osc: OscillatorShape
    env: EnvelopeConfig

    model_config = _FROZEN


class AxisMapping(BaseModel):
    """Maps one spatial axis of the attractor onto a synthesis parameter."""

    param: AttractorParam
    min: float
    max: float

    model_config = _FROZEN

    def map(self, value: float) -> float:
        norm = min(1.0, abs(value) / AXIS_RANGE)
        target = self.min + (self.max - self.min) * norm
        if self.param == "frequency":
            return max(MIN_FREQUENCY, min(MAX_FREQUENCY, target))
        return target


class AttractorMappings(BaseModel):
    x: AxisMapping
    y: AxisMapping
    z: AxisMapping

    model_config = _FROZEN

    def for_point(self, x: float, y: float, z: float) -> Iterator[tuple[AttractorParam, float]]:
        yield self.x.param, self.x.map(x)
        yield self.y.param, self.y.map(y)
        yield self.z.param, self.z.map(z)


class AttractorConfig(BaseModel):
    vol: float
    osc0: OscillatorShape
    osc1: OscillatorShape
    env: EnvelopeConfig
    mappings: AttractorMappings

    model_config = _FROZEN


class SynthConfig(BaseModel):
    pad: InstrumentConfig
    keys: InstrumentConfig
    bass: InstrumentConfig
    attractor: AttractorConfig

    model_config = _FROZEN

    def instrument(self, name: Literal["pad", "keys", "bass"]) -> InstrumentConfig:
        match name:
            case "pad":
                return self.pad
            case "keys":
                return self.keys
            case "bass":
                return self.bass


DEFAULT_SYNTHS = SynthConfig(
    pad=InstrumentConfig(
        vol=-12,
        osc="fatsawtooth",
        env=EnvelopeConfig(attack=2, decay=3, sustain=0.8, release=5),
    ),
    keys=InstrumentConfig(
        vol=-10,
        osc="triangle",
        env=EnvelopeConfig(attack=0.02, decay=0.3, sustain=0.1, release=1.5),
    ),
    bass=InstrumentConfig(
        vol=-8,
        osc="square",
        env=EnvelopeConfig(attack=0.1, decay=0.5, sustain=0.4, release=2),
    ),
    attractor=AttractorConfig(
        vol=-60,
        osc0="sine",
        osc1="triangle",
        env=EnvelopeConfig(attack=0.1, decay=0.1, sustain=1, release=1),
        mappings=AttractorMappings(
            x=AxisMapping(param="frequency", min=100, max=800),
            y=AxisMapping(param="harmonicity", min=0.5, max=2.0),
            z=AxisMapping(param="vibratoRate", min=1, max=10),
        ),
    ),
)


def default_synths() -> SynthConfig:
    return DEFAULT_SYNTHS.model_copy(deep=True)


class Pattern(BaseModel):
    """A chord progression with a bass line aligned by bar index."""

    chords: tuple[tuple[str, ...], ...]
    bass: tuple[str, ...] = ()
    synths: SynthConfig | None = None

    model_config = _FROZEN

    @field_validator("chords")
    @classmethod
    def _validate_chords(cls, value: tuple[tuple[str, ...], ...]) -> tuple[tuple[str, ...], ...]:
        if not value:
            raise ValueError("pattern needs at least one chord")
        if any(not chord for chord in value):
            raise ValueError("chords must contain at least one pitch")
        return value

    @model_validator(mode="after")
    def _validate_alignment(self) -> "Pattern":
        if self.bass and len(self.bass) < len(self.chords):
            raise ValueError(
                f"bass line has {len(self.bass)} notes for {len(self.chords)} chords"
            )
        return self

    def __len__(self) -> int:
        return len(self.chords)

    def chord_at(self, bar: int) -> tuple[str, ...]:
        return self.chords[bar % len(self.chords)]

    def bass_at(self, bar: int) -> str | None:
        if not self.bass:
            return None
        return self.bass[bar % len(self.chords)] or None

    def resolve_synths(self) -> SynthConfig:
        if self.synths is not None:
            return self.synths
        return default_synths()

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "chords": [list(chord) for chord in self.chords],
            "bass": list(self.bass),
        }
        if self.synths is not None:
            payload["synths"] = self.synths.model_dump(mode="json")
        return payload


class TrajectoryPoint(BaseModel):
    time: float = Field(validation_alias=AliasChoices("time", "timestamp"), ge=0.0)
    x: float
    y: float
    z: float

    model_config = ConfigDict(frozen=True, extra="ignore")


class VolumeParams(BaseModel):
    pad: float = -12.0
    keys: float = -10.0
    bass: float = -8.0
    master: float = -10.0
    attractor: float = -60.0

    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class FxParams(BaseModel):
    reverb: float = Field(default=0.5, ge=0.0, le=1.0)
    delay: float = Field(default=0.3, ge=0.0, le=1.0)

    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class MixParams(BaseModel):
    """Mixer state applied to both the realtime graph and offline renders."""

    vol: VolumeParams = Field(default_factory=VolumeParams)
    fx: FxParams = Field(default_factory=FxParams)

    model_config = ConfigDict(extra="forbid", validate_assignment=True)


_ENV_PREFIX = "ATTRACTORSCORE_"


class EngineSettings(BaseModel):
    bpm: float = Field(default=60.0, gt=0.0)
    sample_rate: int = Field(default=44_100, ge=1_000)
    block_size: int = Field(default=128, ge=1)
    seed: int | None = None
    patterns_url: str | None = None
    admin_password: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @classmethod
    def from_env(cls, **overrides: Any) -> "EngineSettings":
        values: dict[str, Any] = {}
        fields = ("bpm", "sample_rate", "block_size", "seed", "patterns_url", "admin_password")
        for field in fields:
            raw = os.environ.get(f"{_ENV_PREFIX}{field.upper()}")
            if raw:
                values[field] = raw
        values.update({key: value for key, value in overrides.items() if value is not None})
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise InvalidConfigError(f"Invalid engine settings: {exc}") from exc


def parse_pattern(payload: Mapping[str, Any]) -> Pattern:
    try:
        return Pattern.model_validate(payload)
    except ValidationError as exc:
        raise InvalidConfigError(f"Invalid pattern: {exc}") from exc


def parse_library(payload: object) -> dict[str, Pattern]:
    if not isinstance(payload, Mapping):
        raise InvalidConfigError("pattern library must be a JSON object")
    library: dict[str, Pattern] = {}
    for name, entry in payload.items():
        if not isinstance(name, str) or not isinstance(entry, Mapping):
            raise InvalidConfigError(f"pattern {name!r} must map a name to an object")
        library[name] = parse_pattern(entry)
    return library


def parse_trajectory(payload: object) -> list[TrajectoryPoint]:
    if not isinstance(payload, list):
        raise InvalidConfigError("trajectory must be a list of {time, x, y, z} points")
    try:
        points = [TrajectoryPoint.model_validate(item) for item in payload]
    except ValidationError as exc:
        raise InvalidConfigError(f"Invalid trajectory point: {exc}") from exc
    return sorted(points, key=lambda point: point.time)
