#!/usr/bin/env python3
import asyncio
import contextlib
import io
import os
import random
import tempfile
import threading
import unittest

import yaml

from ear_trainer import cli, rounds
from ear_trainer.frequency import Direction
from ear_trainer.preferences import PreferenceStore
from ear_trainer.rounds import Answer
from ear_trainer.session import GameSession


class SilentEngine:
    def __init__(self):
        self.stop_all_calls = 0

    async def play_tone(self, freq, duration, profile=None):
        await asyncio.sleep(0)

    def start_drone(self, freq, profile=None):
        return None

    def stop_all(self):
        self.stop_all_calls += 1


def run_main(argv):
    out = io.StringIO()
    with contextlib.redirect_stdout(out):
        code = cli.main(argv)
    return code, out.getvalue()


class TestParseCommand(unittest.TestCase):
    def test_directions(self):
        self.assertEqual(cli.parse_command('u'), ('direction', Direction.UP))
        self.assertEqual(cli.parse_command(' Lower '), ('direction', Direction.DOWN))
        self.assertEqual(cli.parse_command('+'), ('direction', Direction.UP))

    def test_commands(self):
        self.assertEqual(cli.parse_command('q'), ('quit', None))
        self.assertEqual(cli.parse_command('r'), ('replay', None))
        self.assertEqual(cli.parse_command(''), ('next', None))
        self.assertEqual(cli.parse_command('restart'), ('restart', None))

    def test_scale_degree_answers(self):
        self.assertEqual(cli.parse_command('4u'), ('answer', Answer(Direction.UP, 3)))
        self.assertEqual(cli.parse_command('8 down'), ('answer', Answer(Direction.DOWN, 7)))
        self.assertEqual(cli.parse_command('3'), ('index', 2))

    def test_garbage(self):
        self.assertIsNone(cli.parse_command('banana'))
        self.assertIsNone(cli.parse_command('3x'))


class TestCommands(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.config = os.path.join(self.tmpdir.name, 'prefs.yaml')

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_settings_roundtrip(self):
        code, _ = run_main(['--config', self.config, 'settings', 'pause_ms', '340'])
        self.assertEqual(code, 0)
        with open(self.config) as f:
            self.assertEqual(yaml.safe_load(f), {'pause_ms': 300})
        code, out = run_main(['--config', self.config, 'settings'])
        self.assertEqual(code, 0)
        self.assertIn('pause_ms: 300', out)

    def test_settings_with_malformed_profile(self):
        with open(self.config, 'w') as f:
            f.write("sound_profile: {a: 1}\nadvance_mode: slow\n")
        with self.assertLogs('ear_trainer.preferences', level='WARNING'):
            code, out = run_main(['--config', self.config, 'settings'])
        self.assertEqual(code, 0)
        self.assertIn('sound_profile: default', out)
        self.assertIn('advance_mode: slow', out)

    def test_settings_rejects_bad_values(self):
        code, _ = run_main(['--config', self.config, 'settings', 'sound_profile', 'kazoo'])
        self.assertEqual(code, 2)
        code, _ = run_main(['--config', self.config, 'settings', 'volume', '11'])
        self.assertEqual(code, 2)
        self.assertFalse(os.path.exists(self.config))

    def test_scores(self):
        PreferenceStore(self.config).set('high_score_game4', 12)
        code, out = run_main(['--config', self.config, 'scores'])
        self.assertEqual(code, 0)
        self.assertIn('Cadence Mode', out)
        self.assertIn('best level 12', out)
        self.assertEqual(len(out.strip().splitlines()), 5)

    def test_export_dry_run(self):
        outdir = os.path.join(self.tmpdir.name, 'out')
        code, _ = run_main(['--config', self.config, 'export', '2', '--rounds', '4',
                            '--seed', '7', '--output-dir', outdir, '--dry-run'])
        self.assertEqual(code, 0)
        files = os.listdir(outdir)
        self.assertEqual(len(files), 1)
        self.assertTrue(files[0].endswith('.txt'))

    def test_export_all_formats(self):
        outdir = os.path.join(self.tmpdir.name, 'out')
        code, _ = run_main(['--config', self.config, 'export', '1', '--rounds', '2', '--output-dir', outdir])
        self.assertEqual(code, 0)
        exts = sorted(os.path.splitext(f)[1] for f in os.listdir(outdir))
        self.assertEqual(exts, ['.mid', '.txt', '.wav'])

    def test_unknown_variant(self):
        code, _ = run_main(['--config', self.config, 'export', '9'])
        self.assertEqual(code, 2)

    def test_generate_rounds_chains(self):
        policy = rounds.make_policy(2, rng=random.Random(0))
        rnds = cli.generate_rounds(policy, 5, start_level=3)
        self.assertEqual([r.level for r in rnds], [3, 4, 5, 6, 7])
        for prev, cur in zip(rnds, rnds[1:]):
            self.assertEqual(cur.reference, prev.target)


class TestPlayLoop(unittest.IsolatedAsyncioTestCase):
    def _session(self):
        self.engine = SilentEngine()
        store = PreferenceStore()
        store.set('pause_ms', 0)
        policy = rounds.make_policy(1, rng=random.Random(3))
        return GameSession(policy, self.engine, store)

    async def test_quit(self):
        session = self._session()
        lines = iter(['q'])
        await cli.play(session, lambda: next(lines), print_fn=lambda *_: None)
        self.assertEqual(self.engine.stop_all_calls, 1)
        self.assertFalse(session.state.input_enabled)

    async def test_end_of_input_exits(self):
        session = self._session()

        def read_line():
            raise EOFError

        await cli.play(session, read_line, print_fn=lambda *_: None)
        self.assertEqual(self.engine.stop_all_calls, 1)

    async def test_cancel_does_not_wait_for_blocked_input(self):
        session = self._session()
        release = threading.Event()

        def read_line():
            release.wait()
            raise EOFError

        task = asyncio.ensure_future(cli.play(session, read_line, print_fn=lambda *_: None))
        try:
            await asyncio.sleep(0.05)
            readers = [t for t in threading.enumerate() if t.name == cli.INPUT_THREAD_NAME]
            self.assertTrue(readers)
            self.assertTrue(all(t.daemon for t in readers))
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await asyncio.wait_for(task, timeout=1.0)
        finally:
            release.set()

    async def test_read_line_async_returns_line(self):
        self.assertEqual(await cli.read_line_async(lambda: '4u'), '4u')


class TestStatePrinter(unittest.IsolatedAsyncioTestCase):
    async def test_prints_prompt_and_verdict(self):
        lines = []
        store = PreferenceStore()
        store.set('pause_ms', 0)
        store.set('advance_mode', 'slow')
        policy = rounds.make_policy(1, rng=random.Random(3))

        async def instant(_):
            await asyncio.sleep(0)

        session = GameSession(policy, SilentEngine(), store, sleep=instant,
                              on_change=cli.StatePrinter(policy, lines.append))
        await session.start()
        truth = session.state.round.answer
        await session.submit_answer(Answer(truth.direction))
        text = '\n'.join(lines)
        self.assertIn('Level 1', text)
        self.assertIn(cli.PROMPTS[1], text)
        self.assertIn('Correct!', text)
        self.assertIn('Press enter', text)


if __name__ == '__main__':
    unittest.main()
