#!/usr/bin/env python3
import os
import tempfile
import unittest

import yaml

from ear_trainer import preferences as prefs
from ear_trainer.preferences import AdvanceMode, DifficultyMode, PreferenceStore


class TestPreferenceStore(unittest.TestCase):
    def test_memory_store(self):
        store = PreferenceStore()
        self.assertEqual(store.get('missing', 7), 7)
        self.assertTrue(store.set('pause_ms', 300))
        self.assertEqual(store.get('pause_ms'), 300)

    def test_file_roundtrip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'prefs.yaml')
            self.assertTrue(PreferenceStore(path).set('sound_profile', 'piano'))
            with open(path) as f:
                self.assertEqual(yaml.safe_load(f), {'sound_profile': 'piano'})
            self.assertEqual(PreferenceStore(path).get('sound_profile'), 'piano')

    def test_corrupt_file_falls_back_to_defaults(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'prefs.yaml')
            with open(path, 'w') as f:
                f.write('pause_ms: [unclosed\n')
            store = PreferenceStore(path)
            with self.assertLogs('ear_trainer.preferences', level='WARNING'):
                self.assertEqual(store.get('pause_ms', 100), 100)

    def test_non_mapping_file_ignored(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'prefs.yaml')
            with open(path, 'w') as f:
                f.write('- just\n- a list\n')
            with self.assertLogs('ear_trainer.preferences', level='WARNING'):
                self.assertIsNone(PreferenceStore(path).get('pause_ms'))

    def test_write_failure_keeps_value_in_memory(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = PreferenceStore(os.path.join(tmpdir, 'no', 'such', 'dir', 'prefs.yaml'))
            with self.assertLogs('ear_trainer.preferences', level='WARNING'):
                self.assertFalse(store.set('advance_mode', 'slow'))
            self.assertEqual(store.get('advance_mode'), 'slow')


class TestLoadPreferences(unittest.TestCase):
    def test_defaults(self):
        p = prefs.load_preferences(PreferenceStore())
        self.assertEqual(p.sound_profile, 'default')
        self.assertIs(p.difficulty_mode, DifficultyMode.HARD)
        self.assertEqual(p.pause_ms, 100)
        self.assertAlmostEqual(p.pause_seconds, 0.1)
        self.assertIs(p.advance_mode, AdvanceMode.FAST)

    def test_stored_values(self):
        store = PreferenceStore()
        store.set('sound_profile', 'guitar')
        store.set('difficulty_mode', 'easy')
        store.set('pause_ms', 400)
        store.set('advance_mode', 'slow')
        p = prefs.load_preferences(store, profiles={'default', 'guitar'})
        self.assertEqual(p.sound_profile, 'guitar')
        self.assertIs(p.difficulty_mode, DifficultyMode.EASY)
        self.assertEqual(p.pause_ms, 400)
        self.assertIs(p.advance_mode, AdvanceMode.SLOW)

    def test_invalid_values_use_defaults(self):
        store = PreferenceStore()
        store.set('sound_profile', 'theremin')
        store.set('difficulty_mode', 'nightmare')
        store.set('pause_ms', 'soon')
        store.set('advance_mode', 7)
        with self.assertLogs('ear_trainer.preferences', level='WARNING'):
            p = prefs.load_preferences(store, profiles={'default'})
        self.assertEqual(p, prefs.Preferences())

    def test_unhashable_profile_keeps_other_values(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'prefs.yaml')
            with open(path, 'w') as f:
                f.write("sound_profile: [piano]\nadvance_mode: slow\n")
            store = PreferenceStore(path)
            with self.assertLogs('ear_trainer.preferences', level='WARNING'):
                p = prefs.load_preferences(store, profiles={'default', 'piano'})
        self.assertEqual(p.sound_profile, 'default')
        self.assertIs(p.advance_mode, AdvanceMode.SLOW)

    def test_mapping_profile_without_profile_table(self):
        store = PreferenceStore()
        store.set('sound_profile', {'a': 1})
        with self.assertLogs('ear_trainer.preferences', level='WARNING'):
            p = prefs.load_preferences(store)
        self.assertEqual(p.sound_profile, 'default')

    def test_snap_pause(self):
        self.assertEqual(prefs.snap_pause_ms(140), 100)
        self.assertEqual(prefs.snap_pause_ms(160), 200)
        self.assertEqual(prefs.snap_pause_ms(-300), 0)
        self.assertEqual(prefs.snap_pause_ms(5000), 1000)
        self.assertEqual(prefs.snap_pause_ms('300'), 300)


class TestHighScores(unittest.TestCase):
    def test_monotonic_max(self):
        store = PreferenceStore()
        self.assertTrue(prefs.save_high_score(store, 1, 5))
        self.assertFalse(prefs.save_high_score(store, 1, 3))
        self.assertFalse(prefs.save_high_score(store, 1, 5))
        self.assertTrue(prefs.save_high_score(store, 1, 8))
        self.assertEqual(prefs.get_high_score(store, 1), 8)

    def test_per_variant(self):
        store = PreferenceStore()
        prefs.save_high_score(store, 2, 4)
        self.assertEqual(prefs.get_high_scores(store, [1, 2]), {1: 0, 2: 4})
        self.assertEqual(store.get('high_score_game2'), 4)

    def test_garbage_score_reads_as_zero(self):
        store = PreferenceStore()
        store.set('high_score_game3', 'lots')
        self.assertEqual(prefs.get_high_score(store, 3), 0)


if __name__ == '__main__':
    unittest.main()
