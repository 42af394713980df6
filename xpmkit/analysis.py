"""Per-sample level statistics and sanity checks ahead of mapping."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Dict, Iterable, List, Optional

import numpy as np

from xpmkit.errors import Issue
from xpmkit.models import Sample
from xpmkit.pitch import PitchEstimate, estimate_sample_pitch

log = logging.getLogger(__name__)

COMMON_SAMPLE_RATES = (44100, 48000)
MAX_CHANNELS = 2
MIN_DURATION = 0.05
MAX_DURATION = 10.0
DC_OFFSET_LIMIT = 0.1
CLIP_LEVEL = 0.99
LOW_LEVEL = 0.1

FORMATS = {".wav": "WAV", ".aif": "AIFF", ".aiff": "AIFF", ".flac": "FLAC", ".ogg": "OGG", ".mp3": "MP3"}


@dataclass(frozen=True)
class WaveformStats:
    min: float
    max: float
    peak: float
    rms: float
    crest_factor: float
    zero_crossings: int


@dataclass
class SampleAnalysis:
    id: str
    name: str
    format: str
    channels: int = 0
    sample_rate: int = 0
    duration: float = 0.0
    stats: Optional[WaveformStats] = None
    pitch: Optional[PitchEstimate] = None
    error: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, object]:
        out: Dict[str, object] = {
            "id": self.id,
            "name": self.name,
            "format": self.format,
            "channels": self.channels,
            "sampleRate": self.sample_rate,
            "duration": self.duration,
            "valid": self.valid,
        }
        if self.stats is not None:
            out.update(
                {
                    "peakAmplitude": self.stats.peak,
                    "rmsAmplitude": self.stats.rms,
                    "crestFactor": self.stats.crest_factor,
                    "zeroCrossings": self.stats.zero_crossings,
                }
            )
        if self.pitch is not None:
            out["estimatedPitch"] = {"frequency": self.pitch.frequency, "note": self.pitch.note, "midiNote": self.pitch.midi_note}
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class SampleCheck:
    valid: List[str] = field(default_factory=list)
    invalid: List[str] = field(default_factory=list)
    issues: List[Issue] = field(default_factory=list)


def detect_format(name: str) -> str:
    return FORMATS.get(PurePath(name).suffix.lower(), "Unknown")


def waveform_stats(data) -> WaveformStats:
    """Level statistics over one channel. Silence or empty input gives zeros."""
    x = np.asarray(data, dtype=np.float64)
    if x.size == 0:
        return WaveformStats(0.0, 0.0, 0.0, 0.0, 0.0, 0)
    lo, hi = float(min(x.min(), 0.0)), float(max(x.max(), 0.0))
    peak = max(abs(lo), abs(hi))
    rms = float(np.sqrt(np.mean(x * x)))
    negative = x < 0
    crossings = int(negative[0]) + int(np.count_nonzero(negative[1:] != negative[:-1]))
    return WaveformStats(
        min=lo,
        max=hi,
        peak=peak,
        rms=rms,
        crest_factor=peak / rms if rms > 0 else 0.0,
        zero_crossings=crossings,
    )


def analyze_sample(sample: Sample) -> SampleAnalysis:
    result = SampleAnalysis(id=sample.id, name=sample.name, format=detect_format(sample.name))
    if not sample.has_audio:
        result.error = "No audio buffer available"
        return result
    audio = sample.audio
    result.channels = audio.channel_count
    result.sample_rate = audio.sample_rate
    result.duration = audio.duration
    result.stats = waveform_stats(audio.channels[0])
    result.pitch = estimate_sample_pitch(sample)
    return result


def analyze_samples(samples: Iterable[Sample]) -> List[SampleAnalysis]:
    return [analyze_sample(s) for s in samples]


def check_sample(sample: Sample) -> List[Issue]:
    """Flag properties that usually need attention before a sample is mapped."""
    sid = sample.id
    if not sample.has_audio:
        return [Issue("no_audio", f"Sample {sample.name} has no audio data.", sample_id=sid)]

    audio = sample.audio
    issues: List[Issue] = []
    if audio.sample_rate not in COMMON_SAMPLE_RATES:
        issues.append(Issue("unusual_sample_rate", f"Unusual sample rate: {audio.sample_rate}Hz", sample_id=sid))
    if audio.channel_count > MAX_CHANNELS:
        issues.append(Issue("unusual_channel_count", f"Unusual channel count: {audio.channel_count}", sample_id=sid))
    if audio.duration < MIN_DURATION:
        issues.append(Issue("too_short", f"Sample is extremely short (<{int(MIN_DURATION * 1000)}ms)", sample_id=sid))
    elif audio.duration > MAX_DURATION:
        issues.append(Issue("too_long", f"Sample is very long (>{MAX_DURATION:g}s)", sample_id=sid))

    stats = waveform_stats(audio.channels[0])
    if abs(stats.min + stats.max) > DC_OFFSET_LIMIT:
        issues.append(Issue("dc_offset", "Sample may have DC offset", sample_id=sid))
    if stats.peak > CLIP_LEVEL:
        issues.append(Issue("clipping", "Sample may be clipping", sample_id=sid))
    if stats.peak < LOW_LEVEL:
        issues.append(Issue("low_level", "Sample has very low level", sample_id=sid))
    return issues


def check_samples(samples: Iterable[Sample]) -> SampleCheck:
    check = SampleCheck()
    for sample in samples:
        issues = check_sample(sample)
        if issues:
            check.invalid.append(sample.id)
            check.issues.extend(issues)
            log.debug("sample %s: %s", sample.id, ", ".join(i.kind for i in issues))
        else:
            check.valid.append(sample.id)
    return check
