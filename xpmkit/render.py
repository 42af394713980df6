"""Render a Progression back into a single-track Standard MIDI File."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Tuple, Union

from xpmkit.patterns import Progression

log = logging.getLogger(__name__)

DEFAULT_TICKS_PER_QUARTER = 480


def progression_to_midi(progression: Progression, ticks_per_quarter: int = DEFAULT_TICKS_PER_QUARTER):
    """Build a type-0 mido.MidiFile holding every note of `progression`.

    Note times are taken as ticks at `ticks_per_quarter`. At equal ticks a
    note-off is emitted before a note-on so re-struck keys stay separate.
    """
    import mido

    meta = progression.meta
    mid = mido.MidiFile(type=0, ticks_per_beat=ticks_per_quarter)
    track = mido.MidiTrack()
    mid.tracks.append(track)

    if meta.name:
        track.append(mido.MetaMessage("track_name", name=meta.name, time=0))
    track.append(mido.MetaMessage("set_tempo", tempo=int(round(mido.bpm2tempo(meta.bpm))), time=0))
    track.append(mido.MetaMessage("time_signature", numerator=meta.numerator, denominator=meta.denominator, time=0))

    # (tick, order, message): order 0 = closing off, 1 = on, 2 = off of a zero-length note
    timeline: List[Tuple[int, int, int, object]] = []
    for seq, n in enumerate(progression.notes):
        on = mido.Message("note_on", note=n.note, velocity=n.velocity, channel=n.channel)
        off = mido.Message("note_off", note=n.note, velocity=0, channel=n.channel)
        timeline.append((n.start, 1, seq, on))
        timeline.append((n.end, 0 if n.duration > 0 else 2, seq, off))
    timeline.sort(key=lambda item: item[:3])

    last = 0
    for tick, _, _, msg in timeline:
        track.append(msg.copy(time=tick - last))
        last = tick
    log.debug("rendered %d notes at %d tpq", len(progression.notes), ticks_per_quarter)
    return mid


def write_midi(path: Union[str, Path], progression: Progression, ticks_per_quarter: int = DEFAULT_TICKS_PER_QUARTER) -> None:
    progression_to_midi(progression, ticks_per_quarter).save(str(path))
