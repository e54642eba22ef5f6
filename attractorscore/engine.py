from __future__ import annotations

import asyncio
import logging
import math
import threading
from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any

import numpy as np
from pydantic import ValidationError

from .audio import AudioBuffer, FloatArray
from .config import (
    EngineSettings,
    MixParams,
    Pattern,
    SynthConfig,
    TrajectoryPoint,
    default_synths,
    parse_trajectory,
)
from .errors import AttractorScoreError, InvalidConfigError, RenderError
from .graph import InstrumentGraph, OfflineContext, RenderContext, apply_synths, create_graph
from .nodes import NUM_CHANNELS
from .patterns import DEFAULT_PATTERN, FetchFn, PatternLibrary
from .playback import OutputFactory, OutputStream, open_output_stream
from .scheduler import (
    ATTRACTOR_ROOT_HZ,
    RenderHooks,
    ramp_attractor,
    schedule_events,
)
from .transport import LoopHandle

_LOGGER = logging.getLogger("attractorscore.engine")

VOLUME_RAMP = 0.1
FX_RAMP = 0.5
BPM_RAMP = 1.0
# Realtime automation older than this is pruned after each callback.
_PRUNE_HORIZON = 2.0

TrajectoryInput = Sequence[TrajectoryPoint] | Sequence[Mapping[str, Any]]


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    PLAYING = "playing"
    STOPPED = "stopped"


class AudioEngine:
    """Owns the pattern library, mixer state and the single realtime graph.

    Control calls and the realtime render callback are serialised by one
    re-entrant lock. Offline renders build their own context and graph.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        library: PatternLibrary | None = None,
        fetch: FetchFn | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.library = library or PatternLibrary(url=self.settings.patterns_url, fetch=fetch)
        self.bpm = self.settings.bpm
        self.current_pattern_name = DEFAULT_PATTERN
        self.synth_config: SynthConfig = default_synths()
        self.params = MixParams()
        self.state = EngineState.UNINITIALIZED
        self._context: RenderContext | None = None
        self._graph: InstrumentGraph | None = None
        self._output: OutputStream | None = None
        self._loops: list[LoopHandle] = []
        self._rng = np.random.default_rng(self.settings.seed)
        self._lock = threading.RLock()

    @property
    def is_ready(self) -> bool:
        return self.state is not EngineState.UNINITIALIZED

    @property
    def is_playing(self) -> bool:
        return self.state is EngineState.PLAYING

    @property
    def graph(self) -> InstrumentGraph | None:
        return self._graph

    @property
    def context(self) -> RenderContext | None:
        return self._context

    @property
    def output(self) -> OutputStream | None:
        return self._output

    @property
    def loops(self) -> tuple[LoopHandle, ...]:
        return tuple(self._loops)

    @property
    def current_pattern(self) -> Pattern:
        pattern = self.library.get(self.current_pattern_name)
        if pattern is None:
            raise InvalidConfigError(f"Unknown pattern: {self.current_pattern_name!r}")
        return pattern

    def _now(self) -> float:
        return self._context.current_time if self._context is not None else 0.0

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    def load_patterns(self, url: str | None = None) -> set[str]:
        names = self.library.load(url)
        with self._lock:
            if self.current_pattern_name not in self.library:
                fallback = self.library.names()[0]
                _LOGGER.info(
                    "Pattern %r not in loaded library; switching to %r",
                    self.current_pattern_name,
                    fallback,
                )
                self.set_pattern(fallback)
        return names

    def set_pattern(self, name: str) -> None:
        with self._lock:
            pattern = self.library.get(name)
            if pattern is None:
                _LOGGER.debug("Ignoring unknown pattern %r", name)
                return
            self.current_pattern_name = name
            self.synth_config = pattern.resolve_synths()
            if self._graph is not None:
                apply_synths(self._graph, self.synth_config, self._now())
            if self.is_playing:
                self.start()

    # ------------------------------------------------------------------
    # Realtime lifecycle
    # ------------------------------------------------------------------

    def init(self, output: OutputFactory | None = None) -> None:
        """Build the realtime graph and open the output stream. Idempotent."""

        with self._lock:
            if self.is_ready:
                return
            context = RenderContext(
                sample_rate=self.settings.sample_rate,
                block_size=self.settings.block_size,
                bpm=self.bpm,
            )
            graph = create_graph(context, self.synth_config, self.params)
            self._apply_mix(context, graph)
            context.destination.volume.value = self.params.vol.master
            factory = output or open_output_stream
            stream = factory(
                self._render_realtime,
                sample_rate=context.sample_rate,
                channels=NUM_CHANNELS,
                block_size=context.block_size,
            )
            self._context = context
            self._graph = graph
            self._output = stream
            stream.start()
            self.state = EngineState.READY
            _LOGGER.info("Audio engine initialised at %d Hz", context.sample_rate)

    def _render_realtime(self, frames: int) -> FloatArray:
        with self._lock:
            assert self._context is not None and self._graph is not None
            samples = self._context.pull_frames(frames)
            horizon = self._context.current_time - _PRUNE_HORIZON
            if horizon > 0:
                self._graph.prune(horizon)
                self._context.transport.bpm.prune(horizon)
                self._context.destination.volume.prune(horizon)
        return samples.T

    def start(self) -> None:
        with self._lock:
            if self._context is None or self._graph is None:
                _LOGGER.debug("start() before init(); ignoring")
                return
            now = self._now()
            transport = self._context.transport
            transport.stop(now)
            transport.cancel()
            for loop in self._loops:
                loop.dispose()

            attractor = self._graph.attractor
            attractor.trigger_release(now)
            attractor.trigger_attack(ATTRACTOR_ROOT_HZ, now)

            self._loops = schedule_events(
                self._graph,
                transport,
                self.current_pattern,
                self.synth_config.attractor.mappings,
                rng=self._rng,
            )
            transport.start(now)
            self.state = EngineState.PLAYING
            _LOGGER.debug("Playing pattern %r at %.1f bpm", self.current_pattern_name, self.bpm)

    def stop(self) -> None:
        with self._lock:
            if self._context is None or self._graph is None:
                return
            now = self._now()
            self._context.transport.stop(now)
            self._graph.release_all(now)
            self.state = EngineState.STOPPED

    def close(self) -> None:
        with self._lock:
            if self._output is not None:
                self._output.stop()
                self._output.close()
            if self._context is not None:
                self._context.transport.cancel()
            if self._graph is not None:
                self._graph.dispose()
            self._output = None
            self._context = None
            self._graph = None
            self._loops = []
            self.state = EngineState.UNINITIALIZED

    # ------------------------------------------------------------------
    # Mixer
    # ------------------------------------------------------------------

    def set_volume(self, voice: str, db: float) -> None:
        with self._lock:
            if voice not in ("pad", "keys", "bass", "attractor"):
                _LOGGER.warning("Ignoring volume for unknown voice %r", voice)
                return
            try:
                setattr(self.params.vol, voice, db)
            except ValidationError as exc:
                raise InvalidConfigError(f"Invalid volume for {voice}: {exc}") from exc
            if self._graph is not None:
                self._graph.voice(voice).volume.ramp_to(db, VOLUME_RAMP, self._now())  # type: ignore[arg-type]

    def set_param(self, name: str, value: float) -> None:
        with self._lock:
            now = self._now()
            try:
                match name:
                    case "bpm":
                        if not value > 0:
                            raise InvalidConfigError(f"bpm must be positive, got {value!r}")
                        self.bpm = float(value)
                        if self._context is not None:
                            self._context.transport.bpm.ramp_to(value, BPM_RAMP, now)
                    case "reverb":
                        self.params.fx.reverb = value
                        if self._graph is not None:
                            self._graph.reverb.wet.ramp_to(value, FX_RAMP, now)
                    case "delay":
                        self.params.fx.delay = value
                        if self._graph is not None:
                            self._graph.delay.wet.ramp_to(value, FX_RAMP, now)
                    case _:
                        _LOGGER.warning("Ignoring unknown parameter %r", name)
            except ValidationError as exc:
                raise InvalidConfigError(f"Invalid value for {name}: {exc}") from exc

    def set_master_volume(self, db: float) -> None:
        with self._lock:
            try:
                self.params.vol.master = db
            except ValidationError as exc:
                raise InvalidConfigError(f"Invalid master volume: {exc}") from exc
            if self._context is not None:
                self._context.destination.volume.ramp_to(db, VOLUME_RAMP, self._now())

    def update_attractor_state(self, x: float, y: float, z: float) -> None:
        with self._lock:
            if self._graph is None:
                return
            try:
                coords = [float(x), float(y), float(z)]
            except (TypeError, ValueError):
                return
            if any(math.isnan(value) for value in coords):
                return
            ramp_attractor(
                self._graph.attractor,
                self.synth_config.attractor.mappings,
                *coords,
                time=self._now(),
            )

    def _apply_mix(self, context: RenderContext, graph: InstrumentGraph) -> None:
        context.transport.bpm.value = self.bpm
        graph.pad.volume.value = self.params.vol.pad
        graph.keys.volume.value = self.params.vol.keys
        graph.bass.volume.value = self.params.vol.bass
        graph.attractor.volume.value = self.params.vol.attractor

    # ------------------------------------------------------------------
    # Offline
    # ------------------------------------------------------------------

    def render_offline(
        self,
        duration: float,
        trajectory: TrajectoryInput | None = None,
        *,
        seed: int | None = None,
        hooks: RenderHooks | None = None,
    ) -> AudioBuffer:
        """Render ``duration`` seconds of the current pattern on an isolated graph.

        With a seed (argument or settings) the arpeggio choices, and so the
        output, are reproducible.
        """

        if hooks is not None and hooks.on_start is not None:
            hooks.on_start()
        try:
            buffer = self._render_offline(duration, trajectory, seed=seed, hooks=hooks)
        except Exception as exc:
            if hooks is not None and hooks.on_error is not None:
                hooks.on_error(exc)
            _LOGGER.warning("Offline render failed: %s", exc, exc_info=True)
            if isinstance(exc, AttractorScoreError):
                raise
            raise RenderError(f"Offline render failed: {exc}") from exc
        if hooks is not None and hooks.on_end is not None:
            hooks.on_end()
        return buffer

    def _render_offline(
        self,
        duration: float,
        trajectory: TrajectoryInput | None,
        *,
        seed: int | None,
        hooks: RenderHooks | None,
    ) -> AudioBuffer:
        points = _coerce_trajectory(trajectory)
        with self._lock:
            pattern = self.current_pattern
            synths = self.synth_config
            mix = self.params.model_copy(deep=True)
            bpm = self.bpm
        resolved_seed = seed if seed is not None else self.settings.seed
        rng = np.random.default_rng(resolved_seed)

        context = OfflineContext(
            duration,
            sample_rate=self.settings.sample_rate,
            block_size=self.settings.block_size,
            bpm=bpm,
        )
        graph = create_graph(context, synths, mix)
        graph.pad.volume.value = mix.vol.pad
        graph.keys.volume.value = mix.vol.keys
        graph.bass.volume.value = mix.vol.bass
        graph.attractor.volume.value = mix.vol.attractor

        schedule_events(
            graph,
            context.transport,
            pattern,
            synths.attractor.mappings,
            points,
            rng=rng,
            hooks=hooks,
        )
        context.transport.start(0.0)
        try:
            buffer = context.render()
        finally:
            context.transport.cancel()
            graph.dispose()
        _LOGGER.info(
            "Rendered %.2fs of %r (%d frames, %d points)",
            context.duration,
            self.current_pattern_name,
            buffer.length,
            len(points),
        )
        return buffer

    async def arender_offline(
        self,
        duration: float,
        trajectory: TrajectoryInput | None = None,
        *,
        seed: int | None = None,
        hooks: RenderHooks | None = None,
    ) -> AudioBuffer:
        return await asyncio.to_thread(
            self.render_offline,
            duration,
            trajectory,
            seed=seed,
            hooks=hooks,
        )


def _coerce_trajectory(trajectory: TrajectoryInput | None) -> list[TrajectoryPoint]:
    if not trajectory:
        return []
    points = [item for item in trajectory if isinstance(item, TrajectoryPoint)]
    if len(points) == len(trajectory):
        return sorted(points, key=lambda point: point.time)
    return parse_trajectory(
        [item.model_dump() if isinstance(item, TrajectoryPoint) else item for item in trajectory]
    )
