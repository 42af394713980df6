from __future__ import annotations

import re
from typing import Optional

NOTE_NAMES = ("C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B")

LETTER_SEMITONES = {"C": 0, "D": 2, "E": 4, "F": 5, "G": 7, "A": 9, "B": 11}
ACCIDENTALS = {"": 0, "#": 1, "b": -1}

# Note token inside a sample name, e.g. "Piano_C#3_soft.wav" -> C#3. A token may
# follow a separator or a lower-case letter (camel case "PianoC4") and may be
# followed by letters ("C4soft", "C4v100") but never by another digit.
NOTE_TOKEN_RE = re.compile(r"(?:(?<![A-Za-z0-9])|(?<=[a-z])(?=[A-G]))([A-Ga-g])([#b])?(-?\d)(?!\d)")

MIDDLE_C = 60


def midi_to_note_name(midi: int) -> str:
    """Return sharp-spelled note label, for example C#4 for 61."""
    return f"{NOTE_NAMES[midi % 12]}{(midi // 12) - 1}"


def note_name_to_midi(name: str) -> Optional[int]:
    """Parse a note label like 'Eb2' or 'c-1'. Returns None when out of 0..127."""
    m = NOTE_TOKEN_RE.fullmatch(name.strip())
    if not m:
        return None
    return _token_to_midi(m)


def note_from_name(sample_name: str) -> Optional[int]:
    """Find the first note token in a sample/file name and return its MIDI number."""
    for m in NOTE_TOKEN_RE.finditer(sample_name):
        midi = _token_to_midi(m)
        if midi is not None:
            return midi
    return None


def _token_to_midi(m: re.Match) -> Optional[int]:
    letter, accidental, octave = m.group(1).upper(), m.group(2) or "", int(m.group(3))
    midi = (octave + 1) * 12 + LETTER_SEMITONES[letter] + ACCIDENTALS[accidental]
    if not (0 <= midi <= 127):
        return None
    return midi


def clamp_midi(value: int) -> int:
    return max(0, min(127, int(value)))
