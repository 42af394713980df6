from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

import numpy as np
import soundfile as sf

from xpmkit.errors import DataError, FormatError
from xpmkit.models import AudioData, Sample, SampleRegistry, peak_envelope

log = logging.getLogger(__name__)

AUDIO_EXTS = {".wav", ".aif", ".aiff", ".flac"}


def safe_slug(text: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "_", text).strip("_").lower()
    return slug or "sample"


def load_audio(path: Union[str, Path], sample_id: Optional[str] = None) -> Sample:
    """Decode an audio file into a Sample with float channels in -1..1."""
    path = Path(path)
    try:
        data, sr = sf.read(str(path), always_2d=True, dtype="float64")
    except (sf.SoundFileError, RuntimeError) as e:
        raise FormatError(f"cannot decode {path.name}: {e}") from e

    channels = [np.ascontiguousarray(data[:, c]) for c in range(data.shape[1])]
    audio = AudioData(sample_rate=int(sr), channels=channels)
    return Sample(
        id=sample_id or safe_slug(path.stem),
        name=path.name,
        audio=audio,
        waveform=peak_envelope(audio),
    )


def write_audio(path: Union[str, Path], sample: Sample, subtype: str = "PCM_16") -> None:
    if not sample.has_audio:
        raise DataError(f"Sample {sample.name} has no audio data.")
    data = np.stack(sample.audio.channels, axis=1)
    sf.write(str(path), data, sample.audio.sample_rate, subtype=subtype)


def load_samples(paths: Iterable[Union[str, Path]], registry: SampleRegistry) -> Tuple[List[Sample], List[str]]:
    """Load audio files into `registry`; a file that fails is reported and skipped."""
    loaded: List[Sample] = []
    problems: List[str] = []
    for p in paths:
        p = Path(p)
        if p.suffix.lower() not in AUDIO_EXTS:
            problems.append(f"{p.name}: unsupported audio format")
            continue
        try:
            sample = load_audio(p, sample_id=_unique_id(registry, safe_slug(p.stem)))
        except (FormatError, OSError) as e:
            log.warning("skipping %s: %s", p, e)
            problems.append(f"{p.name}: {e}")
            continue
        loaded.append(registry.add(sample))
    return loaded, problems


def _unique_id(registry: SampleRegistry, base: str) -> str:
    candidate = base
    n = 1
    while candidate in registry:
        n += 1
        candidate = f"{base}_{n}"
    return candidate
