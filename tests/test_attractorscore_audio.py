import struct
from pathlib import Path

import numpy as np
import pytest
import soundfile as sf

from attractorscore.audio import WAV_HEADER_BYTES, AudioBuffer, encode_wav, write_wav
from attractorscore.errors import InvalidConfigError


def test_empty_mono_buffer_encodes_header_only() -> None:
    buffer = AudioBuffer(channels=np.zeros((1, 0), dtype=np.float32), sample_rate=44_100)
    data = encode_wav(buffer, 0)

    assert len(data) == WAV_HEADER_BYTES
    assert data[:4] == b"RIFF"
    assert struct.unpack_from("<I", data, 4)[0] == 36
    assert data[8:16] == b"WAVEfmt "
    assert data[36:40] == b"data"
    assert struct.unpack_from("<I", data, 40)[0] == 0


def test_stereo_samples_are_interleaved_and_truncated() -> None:
    buffer = AudioBuffer(
        channels=np.array([[1.0, -1.0], [0.0, 0.5]], dtype=np.float32),
        sample_rate=8_000,
    )
    data = encode_wav(buffer, 2)

    assert len(data) == WAV_HEADER_BYTES + 8
    assert struct.unpack("<4h", data[WAV_HEADER_BYTES:]) == (32767, 0, -32768, 16383)


def test_header_fields_describe_pcm_format() -> None:
    buffer = AudioBuffer(channels=np.zeros((2, 10), dtype=np.float32), sample_rate=22_050)
    data = encode_wav(buffer, 10)

    fmt_size, fmt, channels, rate, byte_rate, align, bits = struct.unpack_from("<IHHIIHH", data, 16)
    assert fmt_size == 16
    assert fmt == 1
    assert channels == 2
    assert rate == 22_050
    assert byte_rate == 22_050 * 4
    assert align == 4
    assert bits == 16
    assert struct.unpack_from("<I", data, 4)[0] == len(data) - 8


def test_out_of_range_and_nan_samples_are_clamped() -> None:
    buffer = AudioBuffer(channels=np.array([3.0, -3.0, np.nan], dtype=np.float32))
    data = encode_wav(buffer, 3)
    assert struct.unpack("<3h", data[WAV_HEADER_BYTES:]) == (32767, -32768, 0)


def test_encode_rejects_frame_count_beyond_buffer() -> None:
    buffer = AudioBuffer(channels=np.zeros((2, 4), dtype=np.float32))
    with pytest.raises(InvalidConfigError):
        encode_wav(buffer, 5)
    with pytest.raises(InvalidConfigError):
        encode_wav(buffer, -1)


def test_partial_frame_count_truncates_payload() -> None:
    buffer = AudioBuffer(channels=np.full((2, 8), 0.25, dtype=np.float32))
    assert len(encode_wav(buffer, 3)) == WAV_HEADER_BYTES + 3 * 2 * 2


def test_mono_array_becomes_single_channel() -> None:
    buffer = AudioBuffer(channels=np.zeros(16, dtype=np.float32), sample_rate=8_000)
    assert buffer.number_of_channels == 1
    assert buffer.length == 16
    assert buffer.duration == pytest.approx(0.002)


def test_write_wav_is_readable_by_soundfile(tmp_path: Path) -> None:
    samples = np.array([[0.0, 0.5, -0.5, 0.25], [0.1, -0.1, 0.0, 0.0]], dtype=np.float32)
    buffer = AudioBuffer(channels=samples, sample_rate=8_000)
    target = write_wav(tmp_path / "clip.wav", buffer)

    data, sample_rate = sf.read(target, dtype="float32")
    assert sample_rate == 8_000
    assert data.shape == (4, 2)
    assert np.allclose(data.T, samples, atol=1e-4)


def test_save_non_wav_goes_through_soundfile(tmp_path: Path) -> None:
    buffer = AudioBuffer(channels=np.zeros((2, 800), dtype=np.float32), sample_rate=8_000)
    target = buffer.save(tmp_path / "clip.flac")
    info = sf.info(target)
    assert info.channels == 2
    assert info.frames == 800
