import io
import json
import os
import tempfile
import unittest

import mido

from xpmkit.patterns import (
    DEFAULT_PATTERN_NAME,
    load_pad_map,
    to_pad_pattern,
    to_progression,
    write_projection,
)
from xpmkit.smf import decode_midi


def build_midi(tracks, ticks_per_beat: int = 480):
    mid = mido.MidiFile(ticks_per_beat=ticks_per_beat)
    for messages in tracks:
        track = mido.MidiTrack()
        track.extend(messages)
        mid.tracks.append(track)
    buf = io.BytesIO()
    mid.save(file=buf)
    return decode_midi(buf.getvalue())


def note(n, start_delta, length, channel=0, velocity=100):
    return [
        mido.Message("note_on", note=n, velocity=velocity, channel=channel, time=start_delta),
        mido.Message("note_off", note=n, velocity=0, channel=channel, time=length),
    ]


class TestProgression(unittest.TestCase):
    def test_meta_from_first_events(self):
        midi = build_midi(
            [
                [
                    mido.MetaMessage("track_name", name="Verse", time=0),
                    mido.MetaMessage("set_tempo", tempo=500000, time=0),
                    mido.MetaMessage("time_signature", numerator=3, denominator=4, time=0),
                    mido.MetaMessage("set_tempo", tempo=600000, time=960),
                ],
                note(60, 0, 480),
            ]
        )
        prog = to_progression(midi)
        self.assertEqual(prog.meta.bpm, 120.0)
        self.assertEqual((prog.meta.numerator, prog.meta.denominator), (3, 4))
        self.assertEqual(prog.meta.name, "Verse")
        self.assertEqual(prog.meta.source, "midi")

    def test_bpm_not_rounded(self):
        midi = build_midi([[mido.MetaMessage("set_tempo", tempo=545455, time=0)]])
        self.assertAlmostEqual(to_progression(midi).meta.bpm, 60e6 / 545455)

    def test_defaults_without_meta(self):
        prog = to_progression(build_midi([note(60, 0, 10)]))
        self.assertEqual(prog.meta.bpm, 120.0)
        self.assertEqual((prog.meta.numerator, prog.meta.denominator), (4, 4))
        self.assertIsNone(prog.meta.name)
        self.assertNotIn("name", prog.to_dict()["meta"])

    def test_notes_merged_across_tracks_by_start(self):
        midi = build_midi([note(60, 100, 10), note(64, 0, 10) + note(67, 200, 10)])
        starts = [n.start for n in to_progression(midi).notes]
        self.assertEqual(starts, sorted(starts))
        self.assertEqual(len(starts), 3)

    def test_to_dict(self):
        doc = to_progression(build_midi([note(60, 0, 480)])).to_dict()
        self.assertEqual(doc["notes"], [{"note": 60, "velocity": 100, "time": 0, "duration": 480, "channel": 0}])
        self.assertEqual(doc["meta"]["timeSignature"], {"numerator": 4, "denominator": 4})


class TestPadPattern(unittest.TestCase):
    def test_groups_by_channel_without_map(self):
        midi = build_midi([note(36, 0, 120, channel=9) + note(60, 0, 120, channel=0)])
        pattern = to_pad_pattern(midi)
        self.assertEqual(sorted(t.pad_id for t in pattern.tracks), [0, 9])
        self.assertEqual(pattern.name, DEFAULT_PATTERN_NAME)

    def test_pad_map_with_fallback_to_note_number(self):
        midi = build_midi([note(36, 0, 10) + note(38, 0, 10) + note(42, 0, 10)])
        pattern = to_pad_pattern(midi, {36: 0, 38: 1})
        self.assertEqual(sorted(t.pad_id for t in pattern.tracks), [0, 1, 42])
        track = next(t for t in pattern.tracks if t.pad_id == 1)
        self.assertEqual((track.id, track.name), ("track_1", "Track 1"))
        self.assertEqual(track.events[0].probability, 1.0)

    def test_bar_count(self):
        exact = build_midi([note(60, 0, 1920)])
        self.assertEqual(to_pad_pattern(exact).bars, 1)
        over = build_midi([note(60, 0, 1921)])
        self.assertEqual(to_pad_pattern(over).bars, 2)
        waltz = build_midi([[mido.MetaMessage("time_signature", numerator=3, denominator=4, time=0)] + note(60, 0, 1920)])
        self.assertEqual(to_pad_pattern(waltz).bars, 2)

    def test_empty_pattern_has_zero_bars(self):
        pattern = to_pad_pattern(build_midi([[]]))
        self.assertEqual(pattern.bars, 0)
        self.assertEqual(pattern.tracks, [])

    def test_to_dict_keys(self):
        doc = to_pad_pattern(build_midi([note(36, 0, 10)]), {36: 3}).to_dict()
        self.assertEqual(set(doc), {"name", "bpm", "swing", "bars", "timeSig", "tracks"})
        self.assertEqual(doc["tracks"][0]["padId"], 3)
        self.assertEqual(doc["swing"], 0)


class TestProjectionFiles(unittest.TestCase):
    def test_write_projection_and_load_pad_map(self):
        with tempfile.TemporaryDirectory() as tmp:
            map_path = os.path.join(tmp, "map.json")
            with open(map_path, "w", encoding="utf-8") as f:
                json.dump({"36": 0, "38": 1}, f)
            self.assertEqual(load_pad_map(map_path), {36: 0, 38: 1})

            out = os.path.join(tmp, "pattern.json")
            pattern = to_pad_pattern(build_midi([note(36, 0, 10)]), load_pad_map(map_path))
            write_projection(out, pattern)
            with open(out, "r", encoding="utf-8") as f:
                self.assertEqual(json.load(f), pattern.to_dict())

    def test_pad_map_must_be_object(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "map.json")
            with open(path, "w", encoding="utf-8") as f:
                json.dump([1, 2], f)
            with self.assertRaises(ValueError):
                load_pad_map(path)


if __name__ == "__main__":
    unittest.main()
