"""Program model (instruments, drum kits) and the registries passed into core calls."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Union

import numpy as np

from xpmkit.errors import DataError

log = logging.getLogger(__name__)

BANKS = ("A", "B", "C", "D", "E", "F", "G", "H")
PADS_PER_BANK = 16
WAVEFORM_POINTS = 100


@dataclass
class AudioData:
    """Decoded audio: one float array per channel, all the same length."""

    sample_rate: int
    channels: List[np.ndarray]

    @property
    def channel_count(self) -> int:
        return len(self.channels)

    @property
    def frame_count(self) -> int:
        return int(len(self.channels[0])) if self.channels else 0

    @property
    def duration(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.frame_count / float(self.sample_rate)

    def is_decodable(self) -> bool:
        return self.sample_rate > 0 and self.channel_count > 0 and self.frame_count > 0


@dataclass
class Sample:
    id: str
    name: str
    audio: Optional[AudioData] = None
    waveform: List[float] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return self.audio.duration if self.audio else 0.0

    @property
    def has_audio(self) -> bool:
        return self.audio is not None and self.audio.is_decodable()


def peak_envelope(audio: AudioData, points: int = WAVEFORM_POINTS) -> List[float]:
    """Coarse peak envelope of the first channel, normalised to 0..1."""
    if not audio.is_decodable() or points <= 0:
        return []
    data = np.abs(np.asarray(audio.channels[0], dtype=np.float64))
    blocks = np.array_split(data, min(points, len(data)))
    peaks = np.array([b.max() if len(b) else 0.0 for b in blocks])
    top = peaks.max()
    if top > 0:
        peaks = peaks / top
    return [float(p) for p in peaks]


@dataclass
class VelocityLayer:
    id: str
    low_velocity: Optional[int] = 0
    high_velocity: Optional[int] = 127
    sample_id: Optional[str] = None

    @property
    def has_range(self) -> bool:
        return self.low_velocity is not None and self.high_velocity is not None


@dataclass
class Keygroup:
    id: str
    low_note: int
    high_note: int
    root_note: Optional[int]
    velocity_layers: List[VelocityLayer] = field(default_factory=list)


@dataclass
class Instrument:
    id: str
    name: str
    keygroups: List[Keygroup] = field(default_factory=list)

    kind = "instrument"

    def sample_ids(self) -> List[str]:
        return [layer.sample_id for kg in self.keygroups for layer in kg.velocity_layers if layer.sample_id]


@dataclass
class DrumPad:
    bank: str
    number: int  # 0..15 within the bank
    sample_id: Optional[str] = None
    label: str = ""

    @property
    def id(self) -> str:
        return f"pad_{self.bank}_{self.number}"

    @property
    def index(self) -> int:
        return BANKS.index(self.bank) * PADS_PER_BANK + self.number


@dataclass
class DrumKit:
    id: str
    name: str
    pads: List[DrumPad] = field(default_factory=list)

    kind = "drumkit"

    def sample_ids(self) -> List[str]:
        return [p.sample_id for p in self.pads if p.sample_id]

    def pad(self, index: int) -> DrumPad:
        return self.pads[index]

    def pad_by_label(self, label: str) -> Optional[DrumPad]:
        for p in self.pads:
            if p.label == label:
                return p
        return None


Program = Union[Instrument, DrumKit]


def pad_label(bank: str, number: int) -> str:
    return f"{bank}{number + 1:02d}"


def new_drum_kit(kit_id: str, name: str = "Default Kit") -> DrumKit:
    pads = [DrumPad(bank=b, number=i, label=pad_label(b, i)) for b in BANKS for i in range(PADS_PER_BANK)]
    return DrumKit(id=kit_id, name=name, pads=pads)


def new_instrument(instrument_id: str, name: str = "Default Instrument") -> Instrument:
    """One keygroup over the whole keyboard with a single empty full-velocity layer."""
    kg = Keygroup(
        id="keygroup_0",
        low_note=0,
        high_note=127,
        root_note=60,
        velocity_layers=[VelocityLayer(id="velocity_0_0", low_velocity=0, high_velocity=127)],
    )
    return Instrument(id=instrument_id, name=name, keygroups=[kg])


class SampleRegistry:
    """Id -> Sample store owned by the caller and passed into core operations."""

    def __init__(self, samples: Iterable[Sample] = ()) -> None:
        self._samples: Dict[str, Sample] = {}
        for s in samples:
            self.add(s)

    def __contains__(self, sample_id: object) -> bool:
        return sample_id in self._samples

    def __iter__(self) -> Iterator[Sample]:
        return iter(list(self._samples.values()))

    def __len__(self) -> int:
        return len(self._samples)

    def add(self, sample: Sample) -> Sample:
        if sample.id in self._samples:
            raise KeyError(f"sample id already registered: {sample.id}")
        self._samples[sample.id] = sample
        return sample

    def get(self, sample_id: str) -> Optional[Sample]:
        return self._samples.get(sample_id)

    def require(self, sample_id: str) -> Sample:
        sample = self._samples.get(sample_id)
        if sample is None:
            raise DataError(f"Sample {sample_id} not found in registry.")
        return sample

    def find_by_name(self, name: str) -> Optional[Sample]:
        for s in self._samples.values():
            if s.name == name:
                return s
        lowered = name.lower()
        for s in self._samples.values():
            if s.name.lower() == lowered:
                return s
        return None

    def replace(self, sample: Sample) -> None:
        """Swap in an edited sample under the same id."""
        if sample.id not in self._samples:
            raise KeyError(f"unknown sample id: {sample.id}")
        self._samples[sample.id] = sample

    def remove(self, sample_id: str, programs: Iterable[Program] = ()) -> Optional[Sample]:
        """Delete a sample and clear references to it from `programs`."""
        sample = self._samples.pop(sample_id, None)
        cleared = 0
        for program in programs:
            cleared += clear_sample_references(program, sample_id)
        if cleared:
            log.debug("removed sample %s and cleared %d references", sample_id, cleared)
        return sample


class ProgramRegistry:
    """Id -> Program store; lifetime of entries is managed by the caller."""

    def __init__(self) -> None:
        self._programs: Dict[str, Program] = {}

    def __iter__(self) -> Iterator[Program]:
        return iter(list(self._programs.values()))

    def __len__(self) -> int:
        return len(self._programs)

    def add(self, program: Program) -> Program:
        self._programs[program.id] = program
        return program

    def get(self, program_id: str) -> Optional[Program]:
        return self._programs.get(program_id)

    def remove(self, program_id: str) -> Optional[Program]:
        return self._programs.pop(program_id, None)


def clear_sample_references(program: Program, sample_id: str) -> int:
    cleared = 0
    if isinstance(program, Instrument):
        for kg in program.keygroups:
            for layer in kg.velocity_layers:
                if layer.sample_id == sample_id:
                    layer.sample_id = None
                    cleared += 1
    else:
        for pad in program.pads:
            if pad.sample_id == sample_id:
                pad.sample_id = None
                cleared += 1
    return cleared
