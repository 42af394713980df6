import contextlib
import io
import json
import os
import tempfile
import unittest

import mido
import numpy as np
import soundfile as sf

from xpmkit.cli import main


def write_tone(path, freq, frames=4096, sr=44100):
    sf.write(path, 0.6 * np.sin(2 * np.pi * freq * np.arange(frames) / sr), sr, subtype="PCM_16")


def run(*argv):
    out = io.StringIO()
    err = io.StringIO()
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
        code = main(list(argv))
    return code, out.getvalue(), err.getvalue()


class TestCli(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name
        self.samples = os.path.join(self.tmp, "samples")
        os.mkdir(self.samples)
        write_tone(os.path.join(self.samples, "Piano_C3.wav"), 130.81)
        write_tone(os.path.join(self.samples, "Piano_C4.wav"), 261.63)

    def tearDown(self):
        self._tmp.cleanup()

    def test_automap_then_validate_and_inspect(self):
        xpm = os.path.join(self.tmp, "piano.xpm")
        code, out, _ = run("automap", self.samples, "-o", xpm, "--name", "Piano")
        self.assertEqual(code, 0, out)
        self.assertIn("wrote 2 keygroups", out)
        self.assertTrue(os.path.exists(xpm))

        code, out, _ = run("validate", xpm, "--samples", self.samples)
        self.assertEqual(code, 0, out)
        self.assertIn("ok: valid instrument", out)

        code, out, _ = run("inspect", xpm)
        self.assertEqual(code, 0)
        self.assertIn("instrument 'Piano'", out)
        self.assertIn("keygroup_1: G3..G9 root C4", out)

    def test_validate_without_samples_reports_issues(self):
        xpm = os.path.join(self.tmp, "piano.xpm")
        run("automap", self.samples, "-o", xpm)
        code, out, _ = run("validate", xpm, "--json")
        self.assertEqual(code, 1)
        doc = json.loads(out)
        self.assertEqual(doc["status"], "invalid")
        self.assertEqual({i["kind"] for i in doc["issues"]}, {"missing_sample"})

    def test_unreadable_input(self):
        code, _, err = run("validate", os.path.join(self.tmp, "nope.xpm"))
        self.assertEqual(code, 2)
        self.assertIn("error:", err)

    def test_repair_in_place(self):
        path = os.path.join(self.tmp, "broken.xpm")
        with open(path, "w", encoding="utf-8") as f:
            f.write('<KeygroupProgram name="b"><Keygroups><Keygroup index="0"><Zone><Sample name="a.wav"/>')
        code, out, _ = run("repair", path, "--write")
        self.assertEqual(code, 0)
        self.assertIn("added XML declaration", out)
        code, out, _ = run("repair", path)
        self.assertEqual(out.strip(), "ok: nothing to repair")

    def test_midi_projection(self):
        mid = mido.MidiFile(ticks_per_beat=96)
        track = mido.MidiTrack()
        track.append(mido.MetaMessage("set_tempo", tempo=500000, time=0))
        track.append(mido.Message("note_on", note=36, velocity=110, channel=9, time=0))
        track.append(mido.Message("note_off", note=36, velocity=0, channel=9, time=24))
        mid.tracks.append(track)
        path = os.path.join(self.tmp, "beat.mid")
        mid.save(path)

        code, out, _ = run("midi", path)
        self.assertEqual(code, 0)
        doc = json.loads(out)
        self.assertEqual(doc["meta"]["bpm"], 120.0)
        self.assertEqual(doc["notes"][0]["note"], 36)

        target = os.path.join(self.tmp, "beat.json")
        code, _, _ = run("midi", path, "--pads", "-o", target)
        self.assertEqual(code, 0)
        with open(target, "r", encoding="utf-8") as f:
            pattern = json.load(f)
        self.assertEqual(pattern["bars"], 1)
        self.assertEqual(pattern["tracks"][0]["padId"], 9)

    def test_render_round_trip(self):
        source = os.path.join(self.tmp, "prog.json")
        with open(source, "w", encoding="utf-8") as f:
            json.dump({"notes": [{"note": 60, "velocity": 100, "time": 0, "duration": 96, "channel": 0}], "meta": {"bpm": 120}}, f)
        target = os.path.join(self.tmp, "prog.mid")
        code, out, _ = run("render", source, "-o", target, "--tpq", "96")
        self.assertEqual(code, 0, out)
        code, out, _ = run("midi", target)
        self.assertEqual(json.loads(out)["notes"], [{"note": 60, "velocity": 100, "time": 0, "duration": 96, "channel": 0}])

    def test_analyze(self):
        code, out, _ = run("analyze", self.samples)
        self.assertEqual(code, 0, out)
        self.assertIn("Piano_C3.wav: 1ch 44100Hz", out)

        code, out, _ = run("analyze", self.samples, "--json")
        doc = json.loads(out)
        self.assertEqual([s["name"] for s in doc["samples"]], ["Piano_C3.wav", "Piano_C4.wav"])
        self.assertEqual(doc["issues"], [])

    def test_edit_writes_normalized_copies(self):
        target = os.path.join(self.tmp, "edited")
        code, out, _ = run("edit", self.samples, "-o", target, "--normalize", "--fade-out", "5")
        self.assertEqual(code, 0, out)
        self.assertEqual(sorted(os.listdir(target)), ["Piano_C3.wav", "Piano_C4.wav"])
        data, sr = sf.read(os.path.join(target, "Piano_C4.wav"))
        self.assertEqual(sr, 44100)
        self.assertAlmostEqual(float(np.max(np.abs(data))), 1.0, places=3)
        self.assertEqual(data[-1], 0.0)

    def test_midi_garbage(self):
        path = os.path.join(self.tmp, "junk.mid")
        with open(path, "wb") as f:
            f.write(b"MThd")
        code, _, err = run("midi", path)
        self.assertEqual(code, 2)
        self.assertIn("failed to read", err)


if __name__ == "__main__":
    unittest.main()
