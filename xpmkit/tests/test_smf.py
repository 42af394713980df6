import io
import struct
import unittest

import mido

from xpmkit.errors import FormatError
from xpmkit.smf import (
    ControlChange,
    EndOfTrack,
    KeySignature,
    Note,
    NoteOff,
    NoteOn,
    PitchBend,
    ProgramChange,
    SysEx,
    Tempo,
    TimeSignature,
    TrackName,
    decode_many,
    decode_midi,
    extract_notes,
)


def chunk(cid: bytes, payload: bytes) -> bytes:
    return cid + struct.pack(">I", len(payload)) + payload


def smf(*tracks: bytes, fmt: int = 1, tpq: int = 480, ntracks=None) -> bytes:
    count = len(tracks) if ntracks is None else ntracks
    return chunk(b"MThd", struct.pack(">HHH", fmt, count, tpq)) + b"".join(chunk(b"MTrk", t) for t in tracks)


EOT = b"\x00\xff\x2f\x00"


def mido_bytes(*messages, ticks_per_beat: int = 480) -> bytes:
    mid = mido.MidiFile(ticks_per_beat=ticks_per_beat)
    track = mido.MidiTrack()
    mid.tracks.append(track)
    for m in messages:
        track.append(m)
    buf = io.BytesIO()
    mid.save(file=buf)
    return buf.getvalue()


class TestDecodeWithMido(unittest.TestCase):
    def test_single_note(self):
        data = mido_bytes(
            mido.Message("note_on", note=60, velocity=100, time=0),
            mido.Message("note_off", note=60, velocity=0, time=480),
        )
        midi = decode_midi(data)
        self.assertEqual(midi.header.ticks_per_quarter, 480)
        self.assertEqual(len(midi.tracks), 1)
        self.assertEqual(midi.tracks[0].notes, [Note(note=60, velocity=100, start=0, duration=480, channel=0)])

    def test_meta_and_channel_events(self):
        data = mido_bytes(
            mido.MetaMessage("track_name", name="Lead", time=0),
            mido.MetaMessage("set_tempo", tempo=500000, time=0),
            mido.MetaMessage("time_signature", numerator=3, denominator=4, time=0),
            mido.MetaMessage("key_signature", key="A", time=0),
            mido.Message("program_change", channel=2, program=5, time=0),
            mido.Message("control_change", channel=2, control=7, value=90, time=10),
            mido.Message("pitchwheel", channel=2, pitch=0, time=10),
        )
        events = decode_midi(data).tracks[0].events
        kinds = [type(e) for e in events]
        self.assertEqual(
            kinds,
            [TrackName, Tempo, TimeSignature, KeySignature, ProgramChange, ControlChange, PitchBend, EndOfTrack],
        )
        self.assertEqual(events[0].text, "Lead")
        self.assertEqual(events[1].bpm, 120.0)
        self.assertEqual((events[2].numerator, events[2].denominator), (3, 4))
        self.assertEqual(events[3].key, 3)
        self.assertEqual(events[4].program, 5)
        self.assertEqual((events[5].control, events[5].value, events[5].tick), (7, 90, 10))
        self.assertEqual((events[6].value, events[6].tick), (8192, 20))

    def test_track_name_on_track(self):
        data = mido_bytes(mido.MetaMessage("track_name", name="Drums", time=0))
        self.assertEqual(decode_midi(data).tracks[0].name, "Drums")


class TestDecodeBytes(unittest.TestCase):
    def test_running_status_and_zero_velocity_note_off(self):
        track = b"\x00\x90\x3c\x64" + b"\x60\x3c\x00" + EOT
        midi = decode_midi(smf(track))
        events = midi.tracks[0].events
        self.assertIsInstance(events[0], NoteOn)
        self.assertIsInstance(events[1], NoteOff)
        self.assertEqual(events[1].tick, 96)
        self.assertEqual(midi.tracks[0].notes, [Note(60, 100, 0, 96, 0)])

    def test_meta_event_cancels_running_status(self):
        track = b"\x00\x90\x3c\x64" + b"\x00\xff\x01\x00" + b"\x10\x3c\x00" + EOT
        with self.assertRaises(FormatError):
            decode_midi(smf(track))

    def test_sysex_cancels_running_status(self):
        track = b"\x00\x90\x3c\x64" + b"\x00\xf0\x02\x7e\xf7" + b"\x10\x3c\x00" + EOT
        with self.assertRaises(FormatError):
            decode_midi(smf(track))

    def test_sysex_is_kept_opaque(self):
        track = b"\x00\xf0\x03\x7e\x00\xf7" + EOT
        ev = decode_midi(smf(track)).tracks[0].events[0]
        self.assertIsInstance(ev, SysEx)
        self.assertEqual(ev.data, b"\x7e\x00\xf7")

    def test_unknown_status_byte_is_an_error(self):
        track = b"\x00\xf4\x00" + EOT
        with self.assertRaises(FormatError) as ctx:
            decode_midi(smf(track))
        self.assertEqual(ctx.exception.offset, 14 + 8 + 1)

    def test_multi_byte_delta(self):
        # 0x81 0x00 = 128 ticks
        track = b"\x00\x90\x40\x50" + b"\x81\x00\x80\x40\x00" + EOT
        notes = decode_midi(smf(track)).tracks[0].notes
        self.assertEqual(notes, [Note(64, 80, 0, 128, 0)])

    def test_overlong_varlen(self):
        track = b"\xff\xff\xff\xff\x7f\x90\x3c\x64"
        with self.assertRaises(FormatError):
            decode_midi(smf(track))

    def test_empty_buffer(self):
        with self.assertRaises(FormatError):
            decode_midi(b"")

    def test_missing_header(self):
        with self.assertRaises(FormatError):
            decode_midi(chunk(b"MTrk", EOT))

    def test_truncated_chunk(self):
        data = smf(b"\x00\x90\x3c\x64" + EOT)
        with self.assertRaises(FormatError):
            decode_midi(data[:-3])

    def test_truncated_event(self):
        with self.assertRaises(FormatError):
            decode_midi(smf(b"\x00\x90\x3c"))

    def test_foreign_chunk_after_header(self):
        data = smf() + chunk(b"XFIH", b"\x00\x00")
        with self.assertRaises(FormatError):
            decode_midi(data)

    def test_smpte_division_rejected(self):
        data = chunk(b"MThd", struct.pack(">HHH", 0, 0, 0xE728))
        with self.assertRaises(FormatError):
            decode_midi(data)

    def test_bad_tempo_length(self):
        with self.assertRaises(FormatError):
            decode_midi(smf(b"\x00\xff\x51\x02\x07\xa1" + EOT))

    def test_bytes_after_end_of_track_ignored(self):
        track = EOT + b"\x00\x90\x3c\x64"
        events = decode_midi(smf(track)).tracks[0].events
        self.assertEqual(len(events), 1)

    def test_track_count_mismatch_warns(self):
        with self.assertLogs("xpmkit.smf", level="WARNING"):
            midi = decode_midi(smf(EOT, ntracks=2))
        self.assertEqual(len(midi.tracks), 1)

    def test_decode_many_isolates_failures(self):
        good = smf(b"\x00\x90\x3c\x64\x10\x80\x3c\x00" + EOT)
        out = decode_many({"good": good, "bad": b"nope"})
        self.assertEqual(len(out["good"].tracks[0].notes), 1)
        self.assertIsInstance(out["bad"], FormatError)

    def test_time_signature_denominator_is_power_of_two(self):
        track = b"\x00\xff\x58\x04\x06\x03\x18\x08" + EOT
        ev = decode_midi(smf(track)).tracks[0].events[0]
        self.assertEqual((ev.numerator, ev.denominator), (6, 8))


class TestExtractNotes(unittest.TestCase):
    def test_repeated_note_on_closes_oldest_first(self):
        events = [
            NoteOn(delta=0, tick=0, channel=0, note=60, velocity=90),
            NoteOn(delta=10, tick=10, channel=0, note=60, velocity=50),
            NoteOff(delta=10, tick=20, channel=0, note=60, velocity=0),
            NoteOff(delta=10, tick=30, channel=0, note=60, velocity=0),
        ]
        notes = extract_notes(events)
        self.assertEqual(notes, [Note(60, 90, 0, 20, 0), Note(60, 50, 10, 20, 0)])

    def test_channels_are_independent(self):
        events = [
            NoteOn(delta=0, tick=0, channel=0, note=60, velocity=90),
            NoteOn(delta=0, tick=0, channel=1, note=60, velocity=70),
            NoteOff(delta=5, tick=5, channel=1, note=60, velocity=0),
        ]
        notes = extract_notes(events)
        self.assertEqual(notes[0], Note(60, 70, 0, 5, 1))
        self.assertEqual(notes[1], Note(60, 90, 0, 0, 0))

    def test_unmatched_note_off_ignored(self):
        events = [NoteOff(delta=0, tick=0, channel=0, note=60, velocity=0)]
        self.assertEqual(extract_notes(events), [])

    def test_dangling_notes_sorted_by_start(self):
        events = [
            NoteOn(delta=0, tick=5, channel=0, note=64, velocity=90),
            NoteOn(delta=0, tick=1, channel=0, note=62, velocity=90),
        ]
        notes = extract_notes(events)
        self.assertEqual([n.start for n in notes], [1, 5])
        self.assertTrue(all(n.duration == 0 for n in notes))


if __name__ == "__main__":
    unittest.main()
