from __future__ import annotations

import struct
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Callable, cast

import numpy as np
import soundfile as sf  # type: ignore[import]
from numpy.typing import DTypeLike, NDArray
from pydantic import BaseModel, ConfigDict, model_validator

from .errors import InvalidConfigError

FloatArray = NDArray[np.float32]
AudioNumbers = NDArray[np.floating[Any]] | Sequence[float] | FloatArray

SAMPLE_RATE = 44_100
WAV_HEADER_BYTES = 44
_BITS_PER_SAMPLE = 16
_BYTES_PER_SAMPLE = _BITS_PER_SAMPLE // 8
_PCM_FORMAT = 1


class AudioBuffer(BaseModel):
    """Multi-channel float buffer shaped ``(channels, frames)``."""

    channels: FloatArray
    sample_rate: int = SAMPLE_RATE

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )

    @model_validator(mode="after")
    def _normalize(self) -> "AudioBuffer":
        data = np.asarray(self.channels, dtype=np.float32)
        if data.ndim == 1:
            data = data.reshape(1, -1)
        if data.ndim != 2 or data.shape[0] < 1:
            raise InvalidConfigError("audio buffer must be shaped (channels, frames)")
        if self.sample_rate <= 0:
            raise InvalidConfigError("sample_rate must be positive")
        object.__setattr__(self, "channels", data)
        return self

    @property
    def number_of_channels(self) -> int:
        return int(self.channels.shape[0])

    @property
    def length(self) -> int:
        return int(self.channels.shape[1])

    @property
    def duration(self) -> float:
        return self.length / self.sample_rate

    def get_channel_data(self, index: int) -> FloatArray:
        return self.channels[index]

    def __array__(self, dtype: DTypeLike | None = None) -> NDArray[np.generic]:
        return np.asarray(self.channels, dtype=dtype)

    def to_wav(self) -> bytes:
        return encode_wav(self, self.length)

    def save(self, path: str | Path) -> Path:
        return write_wav(path, self)

    def play(self) -> None:
        from .playback import play_buffer

        play_buffer(self)


def _scale_to_int16(samples: NDArray[np.floating[Any]]) -> NDArray[np.int16]:
    clipped = np.clip(np.nan_to_num(samples.astype(np.float64)), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32_768, clipped * 32_767)
    # astype truncates toward zero.
    return scaled.astype(np.int16)


def encode_wav(buffer: AudioBuffer, frame_count: int) -> bytes:
    """Encode the first ``frame_count`` frames as a 16-bit PCM RIFF/WAVE file."""

    if frame_count < 0:
        raise InvalidConfigError("frame_count must be non-negative")
    if frame_count > buffer.length:
        raise InvalidConfigError(
            f"frame_count {frame_count} exceeds buffer length {buffer.length}"
        )
    num_channels = buffer.number_of_channels
    block_align = num_channels * _BYTES_PER_SAMPLE
    data_size = frame_count * block_align
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        WAV_HEADER_BYTES + data_size - 8,
        b"WAVE",
        b"fmt ",
        16,
        _PCM_FORMAT,
        num_channels,
        buffer.sample_rate,
        buffer.sample_rate * block_align,
        block_align,
        _BITS_PER_SAMPLE,
        b"data",
        data_size,
    )
    # Interleave channels: frame-major, one sample per channel.
    interleaved = buffer.channels[:, :frame_count].T.reshape(-1)
    payload = _scale_to_int16(interleaved).astype("<i2").tobytes()
    return header + payload


def write_wav(path: str | Path, buffer: AudioBuffer) -> Path:
    """Write a buffer to disk; ``.wav`` uses the PCM encoder, other formats go via soundfile."""

    target = Path(path)
    if target.suffix.lower() in ("", ".wav", ".wave"):
        target.write_bytes(encode_wav(buffer, buffer.length))
        return target
    write_fn = getattr(sf, "write", None)
    assert callable(write_fn)
    write_audio = cast(Callable[[Path | str, NDArray[np.float32], int], None], write_fn)
    try:
        # soundfile expects (frames, channels).
        write_audio(target, buffer.channels.T, buffer.sample_rate)  # type: ignore[reportUnknownMemberType]
    except (RuntimeError, TypeError, ValueError) as exc:
        raise InvalidConfigError(f"Cannot write audio to {target}: {exc}") from exc
    return target
