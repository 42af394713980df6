"""Standard MIDI File decoder.

Decodes a raw SMF byte buffer into a header, per-track typed events and the
notes derived from note-on/note-off pairs. Every malformed or truncated input
ends in `FormatError`; low-level read failures never escape as IndexError.
"""

from __future__ import annotations

import logging
import struct
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, Dict, Iterable, List, Optional, Tuple, Union

from xpmkit.errors import FormatError

log = logging.getLogger(__name__)

HEADER_ID = b"MThd"
TRACK_ID = b"MTrk"

META = 0xFF
SYSEX = 0xF0
SYSEX_ESCAPE = 0xF7

META_TEXT = 0x01
META_TRACK_NAME = 0x03
META_END_OF_TRACK = 0x2F
META_TEMPO = 0x51
META_TIME_SIGNATURE = 0x58
META_KEY_SIGNATURE = 0x59

DEFAULT_TEMPO = 500_000  # microseconds per quarter note (120 bpm)


# --- Decoded structures ---


@dataclass(frozen=True)
class MidiHeader:
    format: int
    track_count: int
    ticks_per_quarter: int


@dataclass(frozen=True)
class MidiEvent:
    """Base for all track events. `tick` is absolute within the track."""

    delta: int
    tick: int


@dataclass(frozen=True)
class NoteOff(MidiEvent):
    channel: int
    note: int
    velocity: int


@dataclass(frozen=True)
class NoteOn(MidiEvent):
    channel: int
    note: int
    velocity: int


@dataclass(frozen=True)
class PolyAftertouch(MidiEvent):
    channel: int
    note: int
    pressure: int


@dataclass(frozen=True)
class ControlChange(MidiEvent):
    channel: int
    control: int
    value: int


@dataclass(frozen=True)
class ProgramChange(MidiEvent):
    channel: int
    program: int


@dataclass(frozen=True)
class ChannelAftertouch(MidiEvent):
    channel: int
    pressure: int


@dataclass(frozen=True)
class PitchBend(MidiEvent):
    channel: int
    value: int  # 0..16383, 8192 is centre


@dataclass(frozen=True)
class Text(MidiEvent):
    text: str


@dataclass(frozen=True)
class TrackName(MidiEvent):
    text: str


@dataclass(frozen=True)
class Tempo(MidiEvent):
    microseconds_per_quarter: int

    @property
    def bpm(self) -> float:
        return 60_000_000 / self.microseconds_per_quarter


@dataclass(frozen=True)
class TimeSignature(MidiEvent):
    numerator: int
    denominator: int
    clocks_per_click: int = 24
    notated_32nds: int = 8


@dataclass(frozen=True)
class KeySignature(MidiEvent):
    key: int  # sharps (>0) or flats (<0)
    scale: int  # 0 major, 1 minor


@dataclass(frozen=True)
class EndOfTrack(MidiEvent):
    pass


@dataclass(frozen=True)
class UnknownMeta(MidiEvent):
    meta_type: int
    data: bytes


@dataclass(frozen=True)
class SysEx(MidiEvent):
    status: int
    data: bytes


@dataclass(frozen=True)
class Note:
    """A closed note derived from a note-on and its matching note-off."""

    note: int
    velocity: int
    start: int
    duration: int
    channel: int

    @property
    def end(self) -> int:
        return self.start + self.duration


@dataclass
class MidiTrack:
    events: List[MidiEvent] = field(default_factory=list)
    notes: List[Note] = field(default_factory=list)
    name: Optional[str] = None


@dataclass
class MidiFile:
    header: MidiHeader
    tracks: List[MidiTrack]

    def iter_events(self) -> Iterable[MidiEvent]:
        for track in self.tracks:
            yield from track.events


# --- Byte reader ---


class _Reader:
    def __init__(self, data: bytes, base: int = 0) -> None:
        self.data = data
        self.pos = 0
        self.base = base

    @property
    def offset(self) -> int:
        return self.base + self.pos

    def at_end(self) -> bool:
        return self.pos >= len(self.data)

    def peek(self) -> int:
        if self.pos >= len(self.data):
            raise FormatError("unexpected end of track data", self.offset)
        return self.data[self.pos]

    def u8(self) -> int:
        value = self.peek()
        self.pos += 1
        return value

    def read(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise FormatError(f"truncated data: wanted {n} bytes, {len(self.data) - self.pos} left", self.offset)
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def varlen(self) -> int:
        """Variable-length quantity: 7 bits per byte, top bit means more follow."""
        value = 0
        for _ in range(4):
            byte = self.u8()
            value = (value << 7) | (byte & 0x7F)
            if not byte & 0x80:
                return value
        raise FormatError("variable-length quantity longer than 4 bytes", self.offset)


# --- Public API ---


def decode_midi(data: bytes) -> MidiFile:
    """Decode a Standard MIDI File from `data`.

    Raises FormatError on any structural problem.
    """
    data = bytes(data)
    pos = 0
    header: Optional[MidiHeader] = None
    tracks: List[MidiTrack] = []

    while pos < len(data):
        chunk_id, payload, payload_offset = _read_chunk(data, pos)
        pos = payload_offset + len(payload)
        if header is None:
            if chunk_id != HEADER_ID:
                raise FormatError(f"expected MThd header chunk, got {chunk_id!r}", 0)
            header = _decode_header(payload, payload_offset)
            continue
        if chunk_id != TRACK_ID:
            raise FormatError(f"expected MTrk chunk, got {chunk_id!r}", payload_offset - 8)
        tracks.append(decode_track(payload, base=payload_offset))

    if header is None:
        raise FormatError("empty buffer: no MThd header chunk", 0)
    if len(tracks) != header.track_count:
        log.warning("header declares %d tracks but %d track chunks were found", header.track_count, len(tracks))
    log.debug("decoded SMF format=%d tracks=%d tpq=%d", header.format, len(tracks), header.ticks_per_quarter)
    return MidiFile(header=header, tracks=tracks)


def decode_midi_file(path: Union[str, Path]) -> MidiFile:
    with open(path, "rb") as f:
        return decode_midi(f.read())


def decode_many(buffers: Dict[str, bytes]) -> Dict[str, Union[MidiFile, FormatError]]:
    """Decode several buffers, isolating a FormatError to the item that raised it."""
    out: Dict[str, Union[MidiFile, FormatError]] = {}
    for key, data in buffers.items():
        try:
            out[key] = decode_midi(data)
        except FormatError as e:
            log.warning("skipping %s: %s", key, e)
            out[key] = e
    return out


def decode_track(payload: bytes, base: int = 0) -> MidiTrack:
    events = _decode_events(payload, base)
    return MidiTrack(events=events, notes=extract_notes(events), name=_first_track_name(events))


def extract_notes(events: Iterable[MidiEvent]) -> List[Note]:
    """Pair note-ons with note-offs per (note, channel).

    Repeated note-ons on the same key stack up; a note-off closes the oldest.
    Notes still open when the events run out are kept with zero duration.
    """
    notes: List[Note] = []
    open_notes: Dict[Tuple[int, int], Deque[NoteOn]] = {}
    for ev in events:
        if isinstance(ev, NoteOn):
            open_notes.setdefault((ev.note, ev.channel), deque()).append(ev)
        elif isinstance(ev, NoteOff):
            stack = open_notes.get((ev.note, ev.channel))
            if not stack:
                continue
            on = stack.popleft()
            notes.append(Note(note=on.note, velocity=on.velocity, start=on.tick, duration=ev.tick - on.tick, channel=on.channel))

    dangling = [on for stack in open_notes.values() for on in stack]
    dangling.sort(key=lambda on: on.tick)
    for on in dangling:
        notes.append(Note(note=on.note, velocity=on.velocity, start=on.tick, duration=0, channel=on.channel))
    return notes


# --- Internals ---


def _read_chunk(data: bytes, pos: int) -> Tuple[bytes, bytes, int]:
    if pos + 8 > len(data):
        raise FormatError("truncated chunk header", pos)
    chunk_id = data[pos:pos + 4]
    (length,) = struct.unpack(">I", data[pos + 4:pos + 8])
    start = pos + 8
    if start + length > len(data):
        raise FormatError(f"chunk {chunk_id!r} declares {length} bytes but only {len(data) - start} remain", pos)
    return chunk_id, data[start:start + length], start


def _decode_header(payload: bytes, offset: int) -> MidiHeader:
    if len(payload) < 6:
        raise FormatError(f"MThd payload must be 6 bytes, got {len(payload)}", offset)
    fmt, ntracks, division = struct.unpack(">HHH", payload[:6])
    if division & 0x8000:
        raise FormatError("SMPTE time division is not supported", offset + 4)
    if division == 0:
        raise FormatError("ticks per quarter note must be positive", offset + 4)
    return MidiHeader(format=fmt, track_count=ntracks, ticks_per_quarter=division)


def _decode_events(payload: bytes, base: int) -> List[MidiEvent]:
    r = _Reader(payload, base)
    events: List[MidiEvent] = []
    tick = 0
    running: Optional[int] = None

    while not r.at_end():
        delta = r.varlen()
        tick += delta
        status_offset = r.offset
        first = r.peek()
        if first & 0x80:
            status = r.u8()
        elif running is not None:
            status = running
        else:
            raise FormatError(f"data byte 0x{first:02x} with no running status", status_offset)

        if status == META:
            running = None
            ev = _decode_meta(r, delta, tick)
            events.append(ev)
            if isinstance(ev, EndOfTrack):
                if not r.at_end():
                    log.debug("ignoring %d bytes after end-of-track", len(r.data) - r.pos)
                break
            continue
        if status in (SYSEX, SYSEX_ESCAPE):
            running = None
            length = r.varlen()
            events.append(SysEx(delta=delta, tick=tick, status=status, data=r.read(length)))
            continue
        if status >= 0xF0:
            raise FormatError(f"unrecognized status byte 0x{status:02x}", status_offset)

        running = status
        events.append(_decode_channel(r, status, delta, tick))

    return events


def _data_byte(r: _Reader) -> int:
    offset = r.offset
    value = r.u8()
    if value & 0x80:
        raise FormatError(f"expected data byte, got status 0x{value:02x}", offset)
    return value


def _decode_channel(r: _Reader, status: int, delta: int, tick: int) -> MidiEvent:
    kind = status & 0xF0
    ch = status & 0x0F
    if kind == 0x80:
        return NoteOff(delta=delta, tick=tick, channel=ch, note=_data_byte(r), velocity=_data_byte(r))
    if kind == 0x90:
        note, velocity = _data_byte(r), _data_byte(r)
        if velocity == 0:
            return NoteOff(delta=delta, tick=tick, channel=ch, note=note, velocity=0)
        return NoteOn(delta=delta, tick=tick, channel=ch, note=note, velocity=velocity)
    if kind == 0xA0:
        return PolyAftertouch(delta=delta, tick=tick, channel=ch, note=_data_byte(r), pressure=_data_byte(r))
    if kind == 0xB0:
        return ControlChange(delta=delta, tick=tick, channel=ch, control=_data_byte(r), value=_data_byte(r))
    if kind == 0xC0:
        return ProgramChange(delta=delta, tick=tick, channel=ch, program=_data_byte(r))
    if kind == 0xD0:
        return ChannelAftertouch(delta=delta, tick=tick, channel=ch, pressure=_data_byte(r))
    # 0xE0: pitch bend, LSB first
    lsb, msb = _data_byte(r), _data_byte(r)
    return PitchBend(delta=delta, tick=tick, channel=ch, value=(msb << 7) | lsb)


def _decode_meta(r: _Reader, delta: int, tick: int) -> MidiEvent:
    meta_type = r.u8()
    length = r.varlen()
    offset = r.offset
    data = r.read(length)

    if meta_type == META_TEXT:
        return Text(delta=delta, tick=tick, text=_decode_text(data))
    if meta_type == META_TRACK_NAME:
        return TrackName(delta=delta, tick=tick, text=_decode_text(data))
    if meta_type == META_TEMPO:
        if length != 3:
            raise FormatError(f"tempo meta event must carry 3 bytes, got {length}", offset)
        mpqn = (data[0] << 16) | (data[1] << 8) | data[2]
        if mpqn == 0:
            raise FormatError("tempo of 0 microseconds per quarter note", offset)
        return Tempo(delta=delta, tick=tick, microseconds_per_quarter=mpqn)
    if meta_type == META_TIME_SIGNATURE:
        if length < 2:
            raise FormatError(f"time signature meta event too short ({length} bytes)", offset)
        clocks = data[2] if length > 2 else 24
        n32 = data[3] if length > 3 else 8
        return TimeSignature(delta=delta, tick=tick, numerator=data[0], denominator=2 ** data[1], clocks_per_click=clocks, notated_32nds=n32)
    if meta_type == META_KEY_SIGNATURE:
        if length < 2:
            raise FormatError(f"key signature meta event too short ({length} bytes)", offset)
        (key,) = struct.unpack(">b", data[:1])
        return KeySignature(delta=delta, tick=tick, key=key, scale=data[1])
    if meta_type == META_END_OF_TRACK:
        return EndOfTrack(delta=delta, tick=tick)
    return UnknownMeta(delta=delta, tick=tick, meta_type=meta_type, data=data)


def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def _first_track_name(events: Iterable[MidiEvent]) -> Optional[str]:
    for ev in events:
        if isinstance(ev, TrackName) and ev.text:
            return ev.text
    return None
