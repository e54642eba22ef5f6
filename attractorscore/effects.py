from __future__ import annotations

import math

import numpy as np
from numpy.typing import NDArray
from scipy.signal import lfilter  # type: ignore[import]

from .nodes import AudioNode, Block, StereoBlock
from .params import Param, db_to_gain

Signal = NDArray[np.float64]

# Freeverb tunings at 44.1 kHz (tuple)
_COMB_TUNINGS = (1116, 1188, 1277, 1356, 1422, 1491, 1557, 1617)
_ALLPASS_TUNINGS = (556, 441, 341, 225)
_STEREO_SPREAD = 23
_ALLPASS_FEEDBACK = 0.5
_TUNING_RATE = 44_100


class RingDelay:
    """Fixed-length delay line. Reads and writes happen in slices no longer than the delay."""

    def __init__(self, length: int) -> None:
        self.length = max(1, int(length))
        self._buffer = np.zeros(self.length, dtype=np.float64)
        self._pos = 0

    def _indices(self, count: int) -> NDArray[np.intp]:
        return (self._pos + np.arange(count)) % self.length

    def read(self, count: int) -> Signal:
        """Samples written ``length`` samples ago."""
        return self._buffer[self._indices(count)]

    def write(self, values: Signal) -> None:
        self._buffer[self._indices(values.shape[0])] = values
        self._pos = (self._pos + values.shape[0]) % self.length

    def chunks(self, count: int) -> list[tuple[int, int]]:
        return [(lo, min(lo + self.length, count)) for lo in range(0, count, self.length)]


class FeedbackComb:
    """y[n] = x[n-D] + g * y[n-D], damped by a one-pole lowpass in the loop."""

    def __init__(self, delay: int, feedback: float, damping: float = 0.2) -> None:
        self.line = RingDelay(delay)
        self.feedback = feedback
        self.damping = damping
        self._filter_state = 0.0

    def process(self, signal: Signal) -> Signal:
        out = np.empty_like(signal)
        for lo, hi in self.line.chunks(signal.shape[0]):
            delayed = self.line.read(hi - lo)
            damped, _ = lfilter(
                [1.0 - self.damping],
                [1.0, -self.damping],
                delayed,
                zi=[self.damping * self._filter_state],
            )
            self._filter_state = float(damped[-1])
            self.line.write(signal[lo:hi] + damped * self.feedback)
            out[lo:hi] = delayed
        return out


class Allpass:
    """Schroeder allpass: v[n] = x[n] + g v[n-D]; y[n] = v[n-D] - g v[n]."""

    def __init__(self, delay: int, feedback: float = _ALLPASS_FEEDBACK) -> None:
        self.line = RingDelay(delay)
        self.feedback = feedback

    def process(self, signal: Signal) -> Signal:
        out = np.empty_like(signal)
        for lo, hi in self.line.chunks(signal.shape[0]):
            delayed = self.line.read(hi - lo)
            v = signal[lo:hi] + self.feedback * delayed
            self.line.write(v)
            out[lo:hi] = delayed - self.feedback * v
        return out


class WetDryEffect(AudioNode):
    def __init__(self, name: str, *, wet: float) -> None:
        super().__init__(name)
        self.wet = Param(wet, name=f"{name}.wet", min_value=0.0, max_value=1.0)

    def process(self, block: Block, inputs: StereoBlock) -> StereoBlock:
        wet = self.wet.values(block.start_time, block.frames, block.sample_rate).astype(np.float64)
        return inputs * (1.0 - wet) + self.effect(block, inputs) * wet

    def effect(self, block: Block, inputs: StereoBlock) -> StereoBlock:
        raise NotImplementedError


class PingPongDelay(WetDryEffect):
    """Stereo delay whose echoes alternate between left and right."""

    def __init__(
        self,
        name: str = "delay",
        *,
        delay_time: float,
        feedback: float = 0.4,
        wet: float = 0.3,
        sample_rate: int,
    ) -> None:
        super().__init__(name, wet=wet)
        self.delay_time = delay_time
        self.feedback = feedback
        samples = max(1, int(round(delay_time * sample_rate)))
        self._left = RingDelay(samples)
        self._right = RingDelay(samples)

    def effect(self, block: Block, inputs: StereoBlock) -> StereoBlock:
        mono = inputs.mean(axis=0)
        out = np.empty_like(inputs)
        for lo, hi in self._left.chunks(block.frames):
            left = self._left.read(hi - lo)
            right = self._right.read(hi - lo)
            self._left.write(mono[lo:hi] + right * self.feedback)
            self._right.write(left)
            out[0, lo:hi] = left
            out[1, lo:hi] = right
        return out


class Reverb(WetDryEffect):
    """Freeverb-style comb/allpass network; comb feedback is tuned to the decay time."""

    def __init__(
        self,
        name: str = "reverb",
        *,
        decay: float = 10.0,
        pre_delay: float = 0.2,
        wet: float = 0.5,
        sample_rate: int,
    ) -> None:
        super().__init__(name, wet=wet)
        self.decay = decay
        self.pre_delay = pre_delay
        scale = sample_rate / _TUNING_RATE
        self._pre = RingDelay(max(1, int(round(pre_delay * sample_rate))))
        self._channels: list[tuple[list[FeedbackComb], list[Allpass]]] = []
        for spread in (0, _STEREO_SPREAD):
            combs = []
            for tuning in _COMB_TUNINGS:
                delay = max(1, int(round((tuning + spread) * scale)))
                # -60 dB after ``decay`` seconds.
                feedback = 10 ** (-3 * delay / (max(decay, 0.01) * sample_rate))
                combs.append(FeedbackComb(delay, feedback))
            allpasses = [
                Allpass(max(1, int(round((tuning + spread) * scale)))) for tuning in _ALLPASS_TUNINGS
            ]
            self._channels.append((combs, allpasses))
        self._gain = 1.0 / len(_COMB_TUNINGS)

    def effect(self, block: Block, inputs: StereoBlock) -> StereoBlock:
        mono = inputs.mean(axis=0)
        delayed = np.empty_like(mono)
        for lo, hi in self._pre.chunks(block.frames):
            delayed[lo:hi] = self._pre.read(hi - lo)
            self._pre.write(mono[lo:hi])
        out = np.empty_like(inputs)
        for channel, (combs, allpasses) in enumerate(self._channels):
            wet = np.zeros_like(mono)
            for comb in combs:
                wet += comb.process(delayed)
            wet *= self._gain
            for allpass in allpasses:
                wet = allpass.process(wet)
            out[channel] = wet
        return out


class Limiter(AudioNode):
    """Peak limiter: gain drops instantly to keep block peaks under threshold, recovers smoothly."""

    def __init__(self, threshold: float = -1.0, *, release: float = 0.05) -> None:
        super().__init__("limiter")
        self.threshold = threshold
        self.release = release
        self._gain = 1.0

    def process(self, block: Block, inputs: StereoBlock) -> StereoBlock:
        ceiling = float(db_to_gain(self.threshold))
        peak = float(np.max(np.abs(inputs))) if inputs.size else 0.0
        target = min(1.0, ceiling / peak) if peak > 0 else 1.0
        if target < self._gain:
            end_gain = target
        else:
            seconds = block.frames / block.sample_rate
            coeff = math.exp(-seconds / self.release)
            end_gain = target + (self._gain - target) * coeff
        ramp = np.linspace(self._gain, end_gain, block.frames, endpoint=True)
        # Never exceed the gain required by this block's peak.
        ramp = np.minimum(ramp, target)
        self._gain = end_gain
        return inputs * ramp
