"""
Ear Trainer – pitch comparison games in the terminal (CLI)

Usage:
  python -m ear_trainer play 1
  python -m ear_trainer scores
  python -m ear_trainer settings pause_ms 300
  python -m ear_trainer export 5 --rounds 10 --output-dir out/

Games:
  1 Basic       which of two notes is higher
  2 Consecutive each new note is compared with the previous one
  3 Drone       a probe note against a sustained reference
  4 Cadence     is the resolving note sharp or flat
  5 Scale       which degree of a major scale is out of tune, and which way

Dependencies: numpy, sounddevice, mido, pyyaml
"""
import argparse
import asyncio
import logging
import os
import random
import sys
import threading
from datetime import datetime

from .export import render_wav, write_midi, write_text_log
from .frequency import Direction, describe_frequency
from .preferences import (
    ADVANCE_MODE_KEY,
    DEFAULT_PATH,
    DIFFICULTY_MODE_KEY,
    PAUSE_KEY,
    SOUND_PROFILE_KEY,
    AdvanceMode,
    DifficultyMode,
    PreferenceStore,
    get_high_scores,
    load_preferences,
    snap_pause_ms,
)
from .rounds import POLICIES, Answer, make_policy
from .session import GameSession, Phase, Stage
from .tones import SOUND_PROFILES, ToneEngine

logger = logging.getLogger(__name__)

DIRECTION_WORDS = {
    'u': Direction.UP, 'up': Direction.UP, '+': Direction.UP, 'h': Direction.UP, 'higher': Direction.UP,
    'd': Direction.DOWN, 'down': Direction.DOWN, '-': Direction.DOWN, 'l': Direction.DOWN, 'lower': Direction.DOWN,
}

COMMAND_WORDS = {
    'q': 'quit', 'quit': 'quit', 'exit': 'quit',
    'r': 'replay', 'replay': 'replay',
    'n': 'next', 'next': 'next', '': 'next',
    's': 'restart', 'restart': 'restart',
}

PROMPTS = {
    1: "Was the second note higher (u) or lower (d)?",
    2: "Was the new note higher (u) or lower (d) than the one before?",
    3: "Is the note above (u) or below (d) the drone?",
    4: "Is the resolution sharp (u) or flat (d)?",
    5: "Which degree (2-8) was off, and which way? e.g. '4u', or one part at a time",
}


def print_red(text):
    """Print text in red color using ANSI escape codes."""
    RED = '\033[91m'
    RESET = '\033[0m'
    print(f"{RED}{text}{RESET}")


def parse_command(text):
    """Turn a line of player input into ``(kind, value)``, or None.

    Kinds: ``answer`` (an ``Answer``), ``index`` (0-based scale degree),
    ``direction`` and the plain commands quit/replay/next/restart.
    """
    text = text.strip().lower()
    if text in COMMAND_WORDS:
        return COMMAND_WORDS[text], None
    if text in DIRECTION_WORDS:
        return 'direction', DIRECTION_WORDS[text]
    digits = ''
    while text and text[0].isdigit():
        digits, text = digits + text[0], text[1:]
    if not digits:
        return None
    # players count scale degrees from 1
    index = int(digits) - 1
    rest = text.strip()
    if not rest:
        return 'index', index
    if rest in DIRECTION_WORDS:
        return 'answer', Answer(DIRECTION_WORDS[rest], index)
    return None


class StatePrinter:
    """Prints the interesting session transitions for a terminal player."""

    def __init__(self, policy, print_fn=print):
        self.policy = policy
        self.print_fn = print_fn
        self._last = None

    def __call__(self, state):
        last, self._last = self._last, state
        if last is not None and (last.stage, last.phase, last.level) == (state.stage, state.phase, state.level) \
                and last.input_enabled == state.input_enabled:
            return
        if state.stage is Stage.PRESENTING and state.is_audio_playing:
            self.print_fn(f"\nLevel {state.level}  lives {'*' * state.lives}  ...listen")
        elif state.stage is Stage.AWAITING_INPUT and state.input_enabled:
            self.print_fn(PROMPTS.get(self.policy.variant, "Higher (u) or lower (d)?"))
        elif state.last_answer_correct is not None and state.stage in (Stage.EVALUATING, Stage.IDLE):
            self._reveal(state)
        elif state.stage is Stage.WAITING_ADVANCE:
            self.print_fn("Press enter for the next round, r to hear it again.")
        if state.phase is Phase.GAME_OVER and (last is None or last.phase is not Phase.GAME_OVER):
            self.print_fn(f"Game over at level {state.level}. s to play again, q to quit.")

    def _reveal(self, state):
        rnd = state.round
        verdict = 'Correct!' if state.last_answer_correct else 'Wrong.'
        answer = rnd.answer.direction.value
        if rnd.answer.index is not None:
            answer = f"degree {rnd.answer.index + 1} was {'sharp' if answer == 'up' else 'flat'}"
        self.print_fn(f"{verdict} {answer}: {describe_frequency(rnd.reference)} -> {describe_frequency(rnd.target)}")


INPUT_THREAD_NAME = 'ear-trainer-input'


async def read_line_async(read_line):
    """Call the blocking ``read_line`` on a daemon thread and await its result.

    A daemon thread is never joined, so cancelling the caller (Ctrl-C) does
    not wait for the player to press enter.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def settle(outcome, value):
        if future.done():
            return
        if outcome == 'error':
            future.set_exception(value)
        else:
            future.set_result(value)

    def deliver(outcome, value):
        try:
            loop.call_soon_threadsafe(settle, outcome, value)
        except RuntimeError:
            # the loop closed while we were blocked
            pass

    def run():
        try:
            line = read_line()
        except Exception as e:
            deliver('error', e)
        else:
            deliver('line', line)

    threading.Thread(target=run, name=INPUT_THREAD_NAME, daemon=True).start()
    return await future


async def play(session, read_line, print_fn=print):
    """Feed player input into ``session`` until the player quits."""
    done = asyncio.Event()
    session.on_exit = done.set
    tasks = set()

    def spawn(coro):
        task = asyncio.ensure_future(coro)
        tasks.add(task)
        task.add_done_callback(_finished)

    def _finished(task):
        tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Session task failed", exc_info=task.exception())

    spawn(session.start())
    try:
        while not done.is_set():
            try:
                line = await read_line_async(read_line)
            except EOFError:
                session.exit()
                break
            cmd = parse_command(line)
            if cmd is None:
                print_fn("?")
                continue
            kind, value = cmd
            if kind == 'quit':
                session.exit()
            elif kind == 'restart':
                if session.state.phase is Phase.GAME_OVER:
                    spawn(session.start())
            elif kind == 'replay':
                spawn(session.replay_stimulus())
            elif kind == 'next':
                spawn(session.advance_next())
            elif kind == 'answer':
                spawn(session.submit_answer(value))
            elif kind == 'index':
                spawn(session.choose_index(value))
            elif kind == 'direction':
                spawn(session.choose_direction(value))
    finally:
        for task in list(tasks):
            task.cancel()
    await session.wait_for_saves()


# ------------------------- Commands -----------------------------------
def cmd_play(args, store):
    try:
        policy = make_policy(args.variant)
    except ValueError as e:
        print_red(str(e))
        return 2
    prefs = load_preferences(store, SOUND_PROFILES)
    engine = ToneEngine(profile=prefs.sound_profile)
    if not engine.open():
        print_red("No audio output available; the game will run silently.")
    print(f"{policy.title}: {policy.description}  (q to quit)")
    session = GameSession(policy, engine, store, on_change=StatePrinter(policy))
    try:
        asyncio.run(play(session, input))
    except KeyboardInterrupt:
        session.exit()
    finally:
        session.close()
        engine.close()
    best = get_high_scores(store, [policy.variant])[policy.variant]
    print(f"Best level for {policy.title}: {best}")
    return 0


def cmd_scores(args, store):
    scores = get_high_scores(store, sorted(POLICIES))
    for variant, cls in sorted(POLICIES.items()):
        print(f"{variant}. {cls.title:<18} best level {scores[variant]}")
    return 0


SETTINGS = {
    SOUND_PROFILE_KEY: lambda v: v if v in SOUND_PROFILES else None,
    DIFFICULTY_MODE_KEY: lambda v: v if v in {m.value for m in DifficultyMode} else None,
    ADVANCE_MODE_KEY: lambda v: v if v in {m.value for m in AdvanceMode} else None,
    PAUSE_KEY: lambda v: snap_pause_ms(v) if v.lstrip('-').isdigit() else None,
}


def cmd_settings(args, store):
    if args.key is None:
        prefs = load_preferences(store, SOUND_PROFILES)
        print(f"{SOUND_PROFILE_KEY}: {prefs.sound_profile}  (choices: {', '.join(SOUND_PROFILES)})")
        print(f"{DIFFICULTY_MODE_KEY}: {prefs.difficulty_mode.value}  (easy allows replays)")
        print(f"{PAUSE_KEY}: {prefs.pause_ms}  (0-1000, steps of 100)")
        print(f"{ADVANCE_MODE_KEY}: {prefs.advance_mode.value}  (fast or slow)")
        return 0
    if args.key not in SETTINGS:
        print_red(f"Unknown setting {args.key!r}; choose from {', '.join(SETTINGS)}")
        return 2
    if args.value is None:
        print_red(f"Missing value for {args.key}")
        return 2
    value = SETTINGS[args.key](args.value)
    if value is None:
        print_red(f"Invalid value for {args.key}: {args.value!r}")
        return 2
    if not store.set(args.key, value):
        print_red("Could not write the preferences file; the change only lasts for this run.")
    print(f"{args.key} = {value}")
    return 0


def generate_rounds(policy, count, start_level=1):
    rounds = []
    previous = None
    for level in range(start_level, start_level + count):
        previous = policy.generate(level, previous)
        rounds.append(previous)
    return rounds


def cmd_export(args, store):
    try:
        policy = make_policy(args.variant, rng=random.Random(args.seed))
    except ValueError as e:
        print_red(str(e))
        return 2
    if args.level < 1 or args.rounds < 1:
        print_red("--level and --rounds must be at least 1")
        return 2
    prefs = load_preferences(store, SOUND_PROFILES)
    rounds = generate_rounds(policy, args.rounds, args.level)

    os.makedirs(args.output_dir, exist_ok=True)
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    base = os.path.join(args.output_dir, f"{policy.title.replace(' ', '_')}_{timestamp}")
    write_text_log(base + '.txt', rounds, policy.title)
    print(f"Wrote {base}.txt")
    if args.dry_run:
        return 0
    write_midi(rounds, policy, base + '.mid', prefs.pause_seconds)
    render_wav(rounds, policy, base + '.wav', prefs.sound_profile, prefs.pause_seconds)
    print(f"Wrote {base}.mid and {base}.wav")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog='ear_trainer', description='Relative pitch ear-training games')
    parser.add_argument('--config', default=DEFAULT_PATH, help=f'Preferences file (default {DEFAULT_PATH})')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('play', help='Play a game')
    p.add_argument('variant', type=int, help='Game number 1-5')
    p.set_defaults(func=cmd_play)

    p = sub.add_parser('scores', help='Show best levels')
    p.set_defaults(func=cmd_scores)

    p = sub.add_parser('settings', help='Show or change a preference')
    p.add_argument('key', nargs='?')
    p.add_argument('value', nargs='?')
    p.set_defaults(func=cmd_settings)

    p = sub.add_parser('export', help='Write generated rounds to text, MIDI and WAV')
    p.add_argument('variant', type=int, help='Game number 1-5')
    p.add_argument('--rounds', type=int, default=10)
    p.add_argument('--level', type=int, default=1, help='Level of the first round')
    p.add_argument('--seed', type=int, default=None)
    p.add_argument('--output-dir', '-o', default='.')
    p.add_argument('--dry-run', action='store_true', help='Only write the text log')
    p.set_defaults(func=cmd_export)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
    )
    store = PreferenceStore(args.config)
    return args.func(args, store)


if __name__ == '__main__':
    sys.exit(main())
