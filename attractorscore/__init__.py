from __future__ import annotations

from .audio import SAMPLE_RATE, AudioBuffer, encode_wav, write_wav
from .config import (
    AttractorConfig,
    AttractorMappings,
    AxisMapping,
    EngineSettings,
    EnvelopeConfig,
    InstrumentConfig,
    MixParams,
    Pattern,
    SynthConfig,
    TrajectoryPoint,
)
from .engine import AudioEngine, EngineState
from .errors import (
    AttractorScoreError,
    InvalidConfigError,
    PatternSyncError,
    PlaybackError,
    RenderError,
)
from .graph import InstrumentGraph, OfflineContext, RenderContext, create_graph
from .logging_utils import configure_logging as _configure_logging
from .patterns import DEFAULT_PATTERNS, PatternLibrary
from .playback import HeadlessOutput
from .scheduler import NoteEvent, RenderHooks, schedule_events
from .trajectory import load_trajectory, lorenz_trajectory

__all__ = [
    "SAMPLE_RATE",
    "AttractorConfig",
    "AttractorMappings",
    "AttractorScoreError",
    "AudioBuffer",
    "AudioEngine",
    "AxisMapping",
    "DEFAULT_PATTERNS",
    "EngineSettings",
    "EngineState",
    "EnvelopeConfig",
    "HeadlessOutput",
    "InstrumentConfig",
    "InstrumentGraph",
    "InvalidConfigError",
    "MixParams",
    "NoteEvent",
    "OfflineContext",
    "Pattern",
    "PatternLibrary",
    "PatternSyncError",
    "PlaybackError",
    "RenderContext",
    "RenderError",
    "RenderHooks",
    "SynthConfig",
    "TrajectoryPoint",
    "create_graph",
    "encode_wav",
    "load_trajectory",
    "lorenz_trajectory",
    "schedule_events",
    "write_wav",
]

__version__ = "0.1.0"

_configure_logging()
del _configure_logging
