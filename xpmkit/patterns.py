"""Projections of decoded MIDI into pattern documents.

Two result kinds:
- Progression: every note on one flat timeline plus tempo/metre metadata.
- PadPattern: notes grouped per pad (or channel) on a tick grid with a bar count.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type, TypeVar, Union

from xpmkit.smf import MidiEvent, MidiFile, Note, Tempo, TimeSignature, TrackName

DEFAULT_BPM = 120.0
DEFAULT_TIME_SIGNATURE = (4, 4)
DEFAULT_PATTERN_NAME = "Imported Pattern"
DEFAULT_PROBABILITY = 1.0

E = TypeVar("E", bound=MidiEvent)


@dataclass(frozen=True)
class ProgressionMeta:
    bpm: float
    numerator: int
    denominator: int
    name: Optional[str] = None
    source: str = "midi"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "source": self.source,
            "bpm": self.bpm,
            "timeSignature": {"numerator": self.numerator, "denominator": self.denominator},
        }
        if self.name:
            out["name"] = self.name
        return out


@dataclass(frozen=True)
class Progression:
    notes: List[Note]
    meta: ProgressionMeta

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notes": [
                {"note": n.note, "velocity": n.velocity, "time": n.start, "duration": n.duration, "channel": n.channel}
                for n in self.notes
            ],
            "meta": self.meta.to_dict(),
        }

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> "Progression":
        meta = doc.get("meta") or {}
        sig = meta.get("timeSignature") or {}
        notes = [
            Note(note=int(n["note"]), velocity=int(n["velocity"]), start=int(n["time"]), duration=int(n.get("duration", 0)), channel=int(n.get("channel", 0)))
            for n in doc.get("notes", [])
        ]
        return cls(
            notes=notes,
            meta=ProgressionMeta(
                bpm=float(meta.get("bpm", DEFAULT_BPM)),
                numerator=int(sig.get("numerator", DEFAULT_TIME_SIGNATURE[0])),
                denominator=int(sig.get("denominator", DEFAULT_TIME_SIGNATURE[1])),
                name=meta.get("name"),
                source=meta.get("source", "midi"),
            ),
        )


@dataclass(frozen=True)
class PatternEvent:
    tick: int
    duration: int
    velocity: int
    probability: float = DEFAULT_PROBABILITY

    def to_dict(self) -> Dict[str, Any]:
        return {"tick": self.tick, "duration": self.duration, "velocity": self.velocity, "probability": self.probability}


@dataclass(frozen=True)
class PatternTrack:
    pad_id: int
    events: List[PatternEvent] = field(default_factory=list)

    @property
    def id(self) -> str:
        return f"track_{self.pad_id}"

    @property
    def name(self) -> str:
        return f"Track {self.pad_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "padId": self.pad_id, "events": [e.to_dict() for e in self.events]}


@dataclass(frozen=True)
class PadPattern:
    name: str
    bpm: float
    bars: int
    numerator: int
    denominator: int
    tracks: List[PatternTrack]
    swing: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "bpm": self.bpm,
            "swing": self.swing,
            "bars": self.bars,
            "timeSig": {"numerator": self.numerator, "denominator": self.denominator},
            "tracks": [t.to_dict() for t in self.tracks],
        }


Projection = Union[Progression, PadPattern]


def to_progression(midi: MidiFile) -> Progression:
    notes = [n for track in midi.tracks for n in track.notes]
    notes.sort(key=lambda n: n.start)
    bpm, (num, den), name = _song_meta(midi)
    return Progression(notes=notes, meta=ProgressionMeta(bpm=bpm, numerator=num, denominator=den, name=name))


def to_pad_pattern(midi: MidiFile, pad_map: Optional[Mapping[int, int]] = None) -> PadPattern:
    """Group notes per pad using `pad_map` (note -> pad), or per channel without one."""
    bpm, (num, den), name = _song_meta(midi)

    max_end = 0
    grouped: Dict[int, List[PatternEvent]] = {}
    for track in midi.tracks:
        for n in track.notes:
            max_end = max(max_end, n.end)
            if pad_map is not None:
                pad = pad_map.get(n.note, n.note)
            else:
                pad = n.channel
            grouped.setdefault(pad, []).append(PatternEvent(tick=n.start, duration=n.duration, velocity=n.velocity))

    ticks_per_bar = midi.header.ticks_per_quarter * num
    bars = math.ceil(max_end / ticks_per_bar) if ticks_per_bar > 0 else 0
    tracks = [PatternTrack(pad_id=pad, events=events) for pad, events in grouped.items()]
    return PadPattern(name=name or DEFAULT_PATTERN_NAME, bpm=bpm, bars=bars, numerator=num, denominator=den, tracks=tracks)


def load_pad_map(path: Union[str, Path]) -> Dict[int, int]:
    """Read a JSON object of {"<note>": <pad>} into an int->int mapping."""
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"pad map must be a JSON object: {path}")
    return {int(k): int(v) for k, v in raw.items()}


def write_projection(path: Union[str, Path], projection: Projection) -> None:
    data = json.dumps(projection.to_dict(), ensure_ascii=False, indent=2) + "\n"
    with open(path, "w", encoding="utf-8") as f:
        f.write(data)


def _first(midi: MidiFile, kind: Type[E]) -> Optional[E]:
    for ev in midi.iter_events():
        if isinstance(ev, kind):
            return ev
    return None


def _song_meta(midi: MidiFile) -> Tuple[float, Tuple[int, int], Optional[str]]:
    tempo = _first(midi, Tempo)
    bpm = tempo.bpm if tempo else DEFAULT_BPM
    ts = _first(midi, TimeSignature)
    sig = (ts.numerator, ts.denominator) if ts and ts.numerator > 0 else DEFAULT_TIME_SIGNATURE
    name = None
    for ev in midi.iter_events():
        if isinstance(ev, TrackName) and ev.text:
            name = ev.text
            break
    return bpm, sig, name
