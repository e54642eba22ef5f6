from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from .params import Param, db_to_gain

_LOGGER = logging.getLogger("attractorscore.nodes")

StereoBlock = NDArray[np.float64]
NUM_CHANNELS = 2


@dataclass(frozen=True, slots=True)
class Block:
    """One render quantum on the context timeline."""

    index: int
    start_time: float
    frames: int
    sample_rate: int

    @property
    def end_time(self) -> float:
        return self.start_time + self.frames / self.sample_rate

    def times(self) -> NDArray[np.float64]:
        return self.start_time + np.arange(self.frames, dtype=np.float64) / self.sample_rate

    def silence(self) -> StereoBlock:
        return np.zeros((NUM_CHANNELS, self.frames), dtype=np.float64)


class AudioNode:
    """Pull-based stereo node. Output is cached per block so fan-out renders once."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._inputs: list[AudioNode] = []
        self._outputs: list[AudioNode] = []
        self._cached_index = -1
        self._cached: StereoBlock | None = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"

    @property
    def inputs(self) -> tuple["AudioNode", ...]:
        return tuple(self._inputs)

    @property
    def outputs(self) -> tuple["AudioNode", ...]:
        return tuple(self._outputs)

    def connect(self, destination: "AudioNode") -> "AudioNode":
        if destination is self:
            raise ValueError(f"{self!r} cannot connect to itself")
        if destination not in self._outputs:
            self._outputs.append(destination)
            destination._inputs.append(self)
        return self

    def disconnect(self) -> None:
        for destination in self._outputs:
            destination._inputs.remove(self)
        self._outputs.clear()

    def dispose(self) -> None:
        self.disconnect()
        for source in list(self._inputs):
            source._outputs.remove(self)
        self._inputs.clear()
        self._cached = None

    def pull(self, block: Block) -> StereoBlock:
        if self._cached_index == block.index and self._cached is not None:
            return self._cached
        mixed = block.silence()
        for source in self._inputs:
            mixed += source.pull(block)
        output = self.process(block, mixed)
        self._cached_index = block.index
        self._cached = output
        return output

    def process(self, block: Block, inputs: StereoBlock) -> StereoBlock:
        return inputs


class Destination(AudioNode):
    """Output sink with a master volume in dB."""

    def __init__(self, volume: float = 0.0) -> None:
        super().__init__("destination")
        self.volume = Param(volume, name="master.volume")

    def process(self, block: Block, inputs: StereoBlock) -> StereoBlock:
        gain = db_to_gain(self.volume.values(block.start_time, block.frames, block.sample_rate))
        return inputs * gain
