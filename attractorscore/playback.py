from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

import numpy as np
from numpy.typing import NDArray
from pydantic import BaseModel, ConfigDict

from .audio import AudioBuffer, FloatArray
from .errors import PlaybackError

_LOGGER = logging.getLogger("attractorscore.playback")

# Returns ``(frames, channels)`` float32 samples.
RenderCallback = Callable[[int], FloatArray]


class OutputStream(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...

    def close(self) -> None: ...


class OutputFactory(Protocol):
    def __call__(
        self,
        render: RenderCallback,
        *,
        sample_rate: int,
        channels: int,
        block_size: int,
    ) -> OutputStream: ...


class PlaybackBackend(BaseModel):
    name: str
    play_buffer: Callable[[AudioBuffer], None]
    open_stream: Callable[..., OutputStream] | None = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )


class HeadlessOutput:
    """Output that renders only when pulled; for servers, tests and file capture."""

    def __init__(
        self,
        render: RenderCallback,
        *,
        sample_rate: int,
        channels: int,
        block_size: int,
    ) -> None:
        self._render = render
        self.sample_rate = sample_rate
        self.channels = channels
        self.block_size = block_size
        self.active = False
        self.closed = False
        self.frames_pulled = 0

    def start(self) -> None:
        if self.closed:
            raise PlaybackError("output stream is closed")
        self.active = True

    def stop(self) -> None:
        self.active = False

    def close(self) -> None:
        self.active = False
        self.closed = True

    def pull(self, frames: int) -> NDArray[np.float32]:
        """Render ``frames`` samples shaped ``(frames, channels)``."""
        if not self.active:
            return np.zeros((frames, self.channels), dtype=np.float32)
        self.frames_pulled += frames
        return np.asarray(self._render(frames), dtype=np.float32)


def _load_backend() -> PlaybackBackend | None:
    return _load_sounddevice() or _load_simpleaudio()


def _resolve_backend() -> PlaybackBackend:
    backend = _load_backend()
    if backend is None:
        raise PlaybackError(
            "Playback requires sounddevice or simpleaudio. "
            "Install one of them (or render to a file with .save())."
        )
    return backend


def play_buffer(buffer: AudioBuffer) -> None:
    backend = _resolve_backend()
    _LOGGER.debug("Playing %.2fs via %s", buffer.duration, backend.name)
    backend.play_buffer(buffer)


def open_output_stream(
    render: RenderCallback,
    *,
    sample_rate: int,
    channels: int,
    block_size: int,
) -> OutputStream:
    backend = _load_sounddevice()
    if backend is None or backend.open_stream is None:
        raise PlaybackError("Realtime playback requires sounddevice.")
    return backend.open_stream(
        render, sample_rate=sample_rate, channels=channels, block_size=block_size
    )


def _load_sounddevice() -> PlaybackBackend | None:
    try:
        import sounddevice as sd_module  # type: ignore[import]
    except (ImportError, OSError) as exc:
        _LOGGER.info("sounddevice not available: %s", exc, exc_info=True)
        return None
    sd: Any = sd_module

    def _play_buffer(buffer: AudioBuffer) -> None:
        sd.play(buffer.channels.T, buffer.sample_rate)
        sd.wait()

    def _open_stream(
        render: RenderCallback,
        *,
        sample_rate: int,
        channels: int,
        block_size: int,
    ) -> OutputStream:
        def _callback(outdata: Any, frames: int, time_info: Any, status: Any) -> None:
            if status:
                _LOGGER.debug("Output stream status: %s", status)
            try:
                outdata[:] = render(frames)
            except Exception:
                _LOGGER.exception("Realtime render failed; aborting stream")
                outdata.fill(0)
                raise sd.CallbackAbort

        stream: OutputStream = sd.OutputStream(
            samplerate=sample_rate,
            channels=channels,
            dtype="float32",
            blocksize=block_size,
            callback=_callback,
        )
        return stream

    return PlaybackBackend(name="sounddevice", play_buffer=_play_buffer, open_stream=_open_stream)


def _load_simpleaudio() -> PlaybackBackend | None:
    try:
        import simpleaudio as sa_module  # type: ignore[import]
    except ImportError as exc:
        _LOGGER.info("simpleaudio not available: %s", exc, exc_info=True)
        return None
    sa: Any = sa_module

    def _play_buffer(buffer: AudioBuffer) -> None:
        clipped = np.clip(buffer.channels.T, -1.0, 1.0)
        audio = np.ascontiguousarray((clipped * 32_767).astype(np.int16))
        play = sa.play_buffer(audio, buffer.number_of_channels, 2, buffer.sample_rate)
        play.wait_done()

    return PlaybackBackend(name="simpleaudio", play_buffer=_play_buffer)
