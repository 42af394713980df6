"""Single-peak pitch estimate.

A coarse fallback for root-note detection: window a short prefix, take the
strongest FFT bin and snap it to the nearest equal-tempered MIDI note. Note
names parsed from a sample's name should always win over this.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np

from xpmkit.models import Sample
from xpmkit.notes import midi_to_note_name

ANALYSIS_FRAMES = 2048
A4_HZ = 440.0


@dataclass(frozen=True)
class PitchEstimate:
    frequency: float
    midi_note: int
    note: str


def estimate_pitch(samples: Union[Sequence[float], np.ndarray], sample_rate: int) -> Optional[PitchEstimate]:
    data = np.asarray(samples, dtype=np.float64)[:ANALYSIS_FRAMES]
    n = len(data)
    if n == 0 or sample_rate <= 0:
        return None

    windowed = data * np.hamming(n)
    spectrum = np.abs(np.fft.rfft(windowed))
    peak_bin = int(np.argmax(spectrum))
    frequency = peak_bin * sample_rate / n
    if frequency <= 0:
        return None

    midi = int(round(69 + 12 * math.log2(frequency / A4_HZ)))
    return PitchEstimate(frequency=float(frequency), midi_note=midi, note=midi_to_note_name(midi))


def estimate_sample_pitch(sample: Sample) -> Optional[PitchEstimate]:
    if not sample.has_audio:
        return None
    return estimate_pitch(sample.audio.channels[0], sample.audio.sample_rate)
