from __future__ import annotations

import logging
import math
from collections.abc import Iterator
from dataclasses import dataclass

import numpy as np

from .audio import SAMPLE_RATE, AudioBuffer, FloatArray
from .config import MixParams, SynthConfig, VoiceName
from .effects import Limiter, PingPongDelay, Reverb
from .errors import RenderError
from .nodes import NUM_CHANNELS, Block, Destination, StereoBlock
from .params import Param
from .synth import DuoSynth, FilterEnvelope, FMSettings, Instrument, MonoSynth, PolySynth
from .transport import Transport, to_seconds

_LOGGER = logging.getLogger("attractorscore.graph")

BLOCK_SIZE = 128
ATTRACTOR_SILENT_DB = -60.0
LIMITER_THRESHOLD_DB = -1.0
REVERB_DECAY = 10.0
REVERB_PRE_DELAY = 0.2
DELAY_TIME = "8n."
DELAY_FEEDBACK = 0.4
SYNTH_RAMP = 0.1


class RenderContext:
    """Timeline shared by one destination and one transport, rendered block by block."""

    def __init__(
        self,
        *,
        sample_rate: int = SAMPLE_RATE,
        block_size: int = BLOCK_SIZE,
        bpm: float = 60.0,
    ) -> None:
        if sample_rate <= 0 or block_size <= 0:
            raise RenderError("sample_rate and block_size must be positive")
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.destination = Destination()
        self.transport = Transport(bpm)
        self._frame = 0
        self._block_index = 0

    @property
    def current_time(self) -> float:
        return self._frame / self.sample_rate

    @property
    def frames_rendered(self) -> int:
        return self._frame

    def render_block(self, frames: int | None = None) -> StereoBlock:
        frames = self.block_size if frames is None else frames
        block = Block(self._block_index, self.current_time, frames, self.sample_rate)
        self.transport.advance(self._frame, frames, self.sample_rate)
        output = self.destination.pull(block)
        self._frame += frames
        self._block_index += 1
        return output

    def pull_frames(self, frames: int) -> FloatArray:
        """Render ``frames`` samples as ``(channels, frames)``, splitting into render quanta."""
        out = np.zeros((NUM_CHANNELS, frames), dtype=np.float32)
        position = 0
        while position < frames:
            count = min(self.block_size, frames - position)
            out[:, position : position + count] = self.render_block(count)
            position += count
        return out


class OfflineContext(RenderContext):
    """Context that renders a fixed duration as fast as computation allows."""

    def __init__(
        self,
        duration: float,
        *,
        sample_rate: int = SAMPLE_RATE,
        block_size: int = BLOCK_SIZE,
        bpm: float = 60.0,
    ) -> None:
        if not isinstance(duration, (int, float)) or not math.isfinite(duration) or duration <= 0:
            raise RenderError(f"duration must be a positive number of seconds, got {duration!r}")
        super().__init__(sample_rate=sample_rate, block_size=block_size, bpm=bpm)
        self.duration = float(duration)
        self.length = int(round(self.duration * sample_rate))

    def render(self) -> AudioBuffer:
        samples = self.pull_frames(self.length)
        return AudioBuffer(channels=samples, sample_rate=self.sample_rate)


@dataclass(eq=False)
class InstrumentGraph:
    pad: PolySynth
    keys: PolySynth
    bass: MonoSynth
    attractor: DuoSynth
    reverb: Reverb
    delay: PingPongDelay
    limiter: Limiter

    def voice(self, name: VoiceName) -> Instrument:
        match name:
            case "pad":
                return self.pad
            case "keys":
                return self.keys
            case "bass":
                return self.bass
            case "attractor":
                return self.attractor

    def params(self) -> Iterator[Param]:
        yield self.pad.volume
        yield self.keys.volume
        yield self.bass.volume
        yield from self.attractor.params()
        yield self.reverb.wet
        yield self.delay.wet

    def release_all(self, time: float) -> None:
        """Release every sounding note on every voice at ``time``."""
        for voice in (self.pad, self.keys, self.bass, self.attractor):
            voice.release_all(time)

    def prune(self, before: float) -> None:
        for param in self.params():
            param.prune(before)

    def dispose(self) -> None:
        for node in (
            self.pad,
            self.keys,
            self.bass,
            self.attractor,
            self.delay,
            self.reverb,
            self.limiter,
        ):
            node.dispose()


def create_graph(
    context: RenderContext,
    synths: SynthConfig,
    mix: MixParams | None = None,
) -> InstrumentGraph:
    """Build voices -> sends -> limiter -> destination on ``context``.

    keys feed the ping-pong delay, which feeds the reverb along with pad and
    attractor; bass and reverb meet at the limiter.
    """

    mix = mix or MixParams()
    sr = context.sample_rate

    limiter = Limiter(LIMITER_THRESHOLD_DB)
    limiter.connect(context.destination)

    reverb = Reverb(
        decay=REVERB_DECAY,
        pre_delay=REVERB_PRE_DELAY,
        wet=mix.fx.reverb,
        sample_rate=sr,
    )
    reverb.connect(limiter)

    delay = PingPongDelay(
        delay_time=to_seconds(DELAY_TIME, bpm=context.transport.bpm.value),
        feedback=DELAY_FEEDBACK,
        wet=mix.fx.delay,
        sample_rate=sr,
    )
    delay.connect(reverb)

    # 1. Pad (atmosphere)
    pad = PolySynth(
        "pad",
        osc=synths.pad.osc,
        envelope=synths.pad.env,
        volume=synths.pad.vol,
        fm=FMSettings(),
    )
    pad.connect(reverb)

    # 2. Keys (arpeggio)
    keys = PolySynth("keys", osc=synths.keys.osc, envelope=synths.keys.env, volume=synths.keys.vol)
    keys.connect(delay)

    # 3. Bass (grounding)
    bass = MonoSynth(
        "bass",
        osc=synths.bass.osc,
        envelope=synths.bass.env,
        volume=synths.bass.vol,
        filter_q=2.0,
        filter_envelope=FilterEnvelope(),
    )
    bass.connect(limiter)

    # 4. Attractor voice, muted until driven
    attractor = DuoSynth(
        "attractor",
        osc0=synths.attractor.osc0,
        osc1=synths.attractor.osc1,
        envelope=synths.attractor.env,
        volume=ATTRACTOR_SILENT_DB,
        harmonicity=1.5,
        vibrato_rate=5.0,
        vibrato_amount=0.5,
    )
    attractor.connect(reverb)

    _LOGGER.debug("Instrument graph built at %d Hz", sr)
    return InstrumentGraph(
        pad=pad,
        keys=keys,
        bass=bass,
        attractor=attractor,
        reverb=reverb,
        delay=delay,
        limiter=limiter,
    )


def apply_synths(graph: InstrumentGraph, synths: SynthConfig, time: float) -> None:
    """Load a synth config into a live graph, ramping voice volumes."""

    for name in ("pad", "keys", "bass"):
        cfg = synths.instrument(name)
        voice = graph.voice(name)
        assert isinstance(voice, PolySynth)
        voice.set(osc=cfg.osc, env=cfg.env)
        voice.volume.ramp_to(cfg.vol, SYNTH_RAMP, time)
    graph.attractor.set(
        osc0=synths.attractor.osc0,
        osc1=synths.attractor.osc1,
        env=synths.attractor.env,
    )
