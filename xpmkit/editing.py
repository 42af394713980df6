"""Sample edits.

Every edit returns a new Sample under the same id with a fresh peak envelope;
the input is never modified. The batch helpers swap results into the registry
with `SampleRegistry.replace`, so programs referencing the id pick up the
edited audio.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from xpmkit.errors import DataError
from xpmkit.models import AudioData, Sample, SampleRegistry, peak_envelope

log = logging.getLogger(__name__)

SILENCE_THRESHOLD = 0.01
TRIM_MARGIN_FRAMES = 100
LOOP_PEAK_RATIO = 0.5
LOOP_MARGIN_SECONDS = 0.1


@dataclass(frozen=True)
class LoopPoints:
    start: int
    end: int


def _audio(sample: Sample) -> AudioData:
    if not sample.has_audio:
        raise DataError(f"Sample {sample.name} has no audio data.")
    return sample.audio


def _with_channels(sample: Sample, channels: List[np.ndarray]) -> Sample:
    audio = AudioData(sample_rate=sample.audio.sample_rate, channels=channels)
    return dataclasses.replace(sample, audio=audio, waveform=peak_envelope(audio))


def peak_level(sample: Sample) -> float:
    audio = _audio(sample)
    return float(max(np.max(np.abs(ch)) for ch in audio.channels))


def apply_gain(sample: Sample, gain: float) -> Sample:
    audio = _audio(sample)
    return _with_channels(sample, [np.asarray(ch, dtype=np.float64) * gain for ch in audio.channels])


def normalize(sample: Sample, target: float = 1.0) -> Sample:
    """Scale so the loudest frame of any channel reaches `target`. Silence is left as is."""
    peak = peak_level(sample)
    if peak <= 0:
        return apply_gain(sample, 1.0)
    return apply_gain(sample, target / peak)


def trim_silence(sample: Sample, threshold: float = SILENCE_THRESHOLD, margin: int = TRIM_MARGIN_FRAMES) -> Sample:
    audio = _audio(sample)
    loud = np.flatnonzero(np.abs(audio.channels[0]) > threshold)
    if loud.size == 0:
        log.debug("sample %s is below %.3f throughout; not trimmed", sample.id, threshold)
        return apply_gain(sample, 1.0)
    start = max(0, int(loud[0]) - margin)
    end = min(audio.frame_count - 1, int(loud[-1]) + margin)
    return _with_channels(sample, [np.array(ch[start : end + 1], dtype=np.float64) for ch in audio.channels])


def fade(sample: Sample, fade_in_ms: float = 10.0, fade_out_ms: float = 10.0) -> Sample:
    """Linear fade in and out. Ramps longer than the sample are cut to its length."""
    audio = _audio(sample)
    n = audio.frame_count
    n_in = min(n, int(fade_in_ms * audio.sample_rate / 1000))
    n_out = min(n, int(fade_out_ms * audio.sample_rate / 1000))
    envelope = np.ones(n)
    if n_in:
        envelope[:n_in] *= np.arange(n_in) / n_in
    if n_out:
        envelope[n - n_out :] *= 1.0 - np.arange(n_out) / n_out
    return _with_channels(sample, [np.asarray(ch, dtype=np.float64) * envelope for ch in audio.channels])


def detect_loop_points(sample: Sample) -> Optional[LoopPoints]:
    """Loop between the first and last strong peaks, pulled in by 100ms on each side.

    Returns None when there are fewer than two peaks or the margins cross.
    """
    audio = _audio(sample)
    x = np.abs(np.asarray(audio.channels[0], dtype=np.float64))
    if x.size < 3:
        return None
    top = x.max()
    mid = x[1:-1]
    is_peak = (mid > LOOP_PEAK_RATIO * top) & (mid > x[:-2]) & (mid > x[2:])
    peaks = np.flatnonzero(is_peak) + 1
    if peaks.size < 2:
        return None
    margin = int(audio.sample_rate * LOOP_MARGIN_SECONDS)
    start, end = int(peaks[0]) + margin, int(peaks[-1]) - margin
    if start >= end:
        return None
    return LoopPoints(start=start, end=end)


# --- Batch processing ---


@dataclass(frozen=True)
class EditOptions:
    normalize: bool = False
    trim_silence: bool = False
    silence_threshold: float = SILENCE_THRESHOLD
    fade_in_ms: float = 0.0
    fade_out_ms: float = 0.0


@dataclass
class BatchResult:
    processed: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)


def apply_edits(sample: Sample, options: EditOptions) -> Sample:
    """Normalize, then trim, then fade, as selected in `options`."""
    out = sample
    if options.normalize:
        out = normalize(out)
    if options.trim_silence:
        out = trim_silence(out, options.silence_threshold)
    if options.fade_in_ms > 0 or options.fade_out_ms > 0:
        out = fade(out, options.fade_in_ms, options.fade_out_ms)
    return out


def process_samples(registry: SampleRegistry, sample_ids: Iterable[str], options: EditOptions) -> BatchResult:
    result = BatchResult()
    for sid in sample_ids:
        try:
            edited = apply_edits(registry.require(sid), options)
        except DataError as e:
            log.warning("not editing %s: %s", sid, e)
            result.failed.append((sid, str(e)))
            continue
        registry.replace(edited)
        result.processed.append(sid)
    return result


def normalize_batch(registry: SampleRegistry, sample_ids: Iterable[str], target_level: float = 0.95) -> BatchResult:
    """One shared gain so the loudest sample hits `target_level` and relative levels hold."""
    result = BatchResult()
    found: List[Sample] = []
    for sid in sample_ids:
        try:
            sample = registry.require(sid)
            peak_level(sample)
        except DataError as e:
            result.failed.append((sid, str(e)))
            continue
        found.append(sample)

    loudest = max((peak_level(s) for s in found), default=0.0)
    gain = target_level / loudest if loudest > 0 else 1.0
    for sample in found:
        registry.replace(apply_gain(sample, gain))
        result.processed.append(sample.id)
    log.debug("normalized %d samples with gain %.3f", len(found), gain)
    return result


def detect_loop_points_batch(registry: SampleRegistry, sample_ids: Iterable[str]) -> Dict[str, Optional[LoopPoints]]:
    points: Dict[str, Optional[LoopPoints]] = {}
    for sid in sample_ids:
        try:
            points[sid] = detect_loop_points(registry.require(sid))
        except DataError as e:
            log.debug("no loop points for %s: %s", sid, e)
            points[sid] = None
    return points
