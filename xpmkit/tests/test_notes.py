import unittest

from xpmkit.notes import clamp_midi, midi_to_note_name, note_from_name, note_name_to_midi


class TestNoteNames(unittest.TestCase):
    def test_midi_to_name(self):
        self.assertEqual(midi_to_note_name(60), "C4")
        self.assertEqual(midi_to_note_name(61), "C#4")
        self.assertEqual(midi_to_note_name(0), "C-1")
        self.assertEqual(midi_to_note_name(127), "G9")

    def test_name_to_midi(self):
        self.assertEqual(note_name_to_midi("C4"), 60)
        self.assertEqual(note_name_to_midi("Eb2"), 39)
        self.assertEqual(note_name_to_midi("c-1"), 0)
        self.assertEqual(note_name_to_midi("G9"), 127)
        self.assertIsNone(note_name_to_midi("G#9"))  # 128
        self.assertIsNone(note_name_to_midi("Cb-1"))  # -1
        self.assertIsNone(note_name_to_midi("H2"))

    def test_note_in_sample_name(self):
        self.assertEqual(note_from_name("Piano_C#3_soft.wav"), 49)
        self.assertEqual(note_from_name("Bass A2 hard.wav"), 45)
        self.assertEqual(note_from_name("strings-f4.wav"), 65)
        self.assertIsNone(note_from_name("Kick.wav"))
        # lower-case note letters inside words are not note tokens
        self.assertIsNone(note_from_name("Deep808.wav"))
        self.assertIsNone(note_from_name("Pad1.wav"))
        self.assertIsNone(note_from_name("Take12.wav"))

    def test_note_token_next_to_letters(self):
        self.assertEqual(note_from_name("Piano_C4soft.wav"), 60)
        self.assertEqual(note_from_name("PianoC4.wav"), 60)
        self.assertEqual(note_from_name("Piano_C4v100.wav"), 60)
        self.assertEqual(note_from_name("StringsEb2_long.wav"), 39)
        self.assertIsNone(note_from_name("Piano_C45.wav"))

    def test_first_valid_token_wins(self):
        self.assertEqual(note_from_name("G#9_then_C3.wav"), 48)

    def test_clamp(self):
        self.assertEqual(clamp_midi(-4), 0)
        self.assertEqual(clamp_midi(140), 127)
        self.assertEqual(clamp_midi(64), 64)


if __name__ == "__main__":
    unittest.main()
