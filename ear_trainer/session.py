"""Game session state machine shared by all variants.

One ``GameSession`` runs one game: it asks its round policy for rounds,
plays them through the tone engine, gates input, scores answers and keeps
level/lives.  Everything is driven from a single asyncio loop.

Every multi-step sequence (a round's playback, the delay before the next
round) captures the session's sequence token before it starts and checks it
after each ``await``.  Anything that supersedes the sequence (a replay, an
answer, ``exit``) bumps the token, and the stale continuation quietly stops.
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from .preferences import (
    AdvanceMode,
    DifficultyMode,
    PreferenceStore,
    Preferences,
    load_preferences,
    save_high_score,
)
from .rounds import OPEN_INPUT, Answer, Drone, Pause, Round, Tone
from .tones import SOUND_PROFILES

logger = logging.getLogger(__name__)

START_LIVES = 3
ADVANCE_DELAY = 0.8


class Phase(Enum):
    PLAYING = 'playing'
    GAME_OVER = 'game_over'


class Stage(Enum):
    IDLE = 'idle'
    GENERATING = 'generating'
    PRESENTING = 'presenting'
    AWAITING_INPUT = 'awaiting_input'
    EVALUATING = 'evaluating'
    WAITING_ADVANCE = 'waiting_advance'


@dataclass(frozen=True)
class SessionState:
    phase: Phase
    stage: Stage
    level: int
    lives: int
    round: Optional[Round]
    is_audio_playing: bool
    input_enabled: bool
    last_answer_correct: Optional[bool]
    advance_mode: AdvanceMode
    pending: Answer


class GameSession:
    def __init__(self, policy, engine, store=None, advance_delay=ADVANCE_DELAY,
                 sleep=None, on_change=None, on_exit=None):
        self.policy = policy
        self.engine = engine
        self.store = store if store is not None else PreferenceStore()
        self.advance_delay = advance_delay
        self.on_change = on_change
        self.on_exit = on_exit
        self.preferences = Preferences()
        self._sleep = sleep or asyncio.sleep
        self._token = 0
        self._phase = Phase.PLAYING
        self._stage = Stage.IDLE
        self._level = 1
        self._lives = START_LIVES
        self._round = None
        self._audio_playing = False
        self._input_enabled = False
        self._last_correct = None
        self._pending = Answer()
        self._drone = None
        # one worker keeps high-score writes ordered
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix='ear-trainer-store')
        self._saves = set()

    # ------------------------- Introspection --------------------------
    @property
    def state(self) -> SessionState:
        return SessionState(
            phase=self._phase,
            stage=self._stage,
            level=self._level,
            lives=self._lives,
            round=self._round,
            is_audio_playing=self._audio_playing,
            input_enabled=self._input_enabled,
            last_answer_correct=self._last_correct,
            advance_mode=self.preferences.advance_mode,
            pending=self._pending,
        )

    def can_replay(self) -> bool:
        if self._phase is not Phase.PLAYING or self._round is None:
            return False
        if self._stage is Stage.WAITING_ADVANCE:
            return self.preferences.advance_mode is AdvanceMode.SLOW
        if self._stage in (Stage.PRESENTING, Stage.AWAITING_INPUT):
            return self.preferences.difficulty_mode is DifficultyMode.EASY
        return False

    def _notify(self):
        if self.on_change is not None:
            self.on_change(self.state)

    def _next_token(self) -> int:
        self._token += 1
        return self._token

    def _stale(self, token) -> bool:
        return token != self._token

    # ------------------------- Transitions ----------------------------
    async def start(self) -> bool:
        """Begin a new game at level 1 with full lives and play round 1."""
        token = self._next_token()
        self._stop_drone()
        self.preferences = self._load_preferences()
        self._phase = Phase.PLAYING
        self._level = 1
        self._lives = START_LIVES
        self._new_round(None)
        return await self._present(token, open_gate=True)

    async def submit_answer(self, answer: Answer) -> Optional[bool]:
        """Score ``answer`` against the current round.

        Returns None when the answer is not accepted (gate closed or the
        answer is incomplete), otherwise whether it was correct.
        """
        if not self._input_enabled or self._round is None:
            return None
        if not self.policy.answer_complete(answer):
            return None
        token = self._next_token()
        self._input_enabled = False
        self._audio_playing = False
        self._pending = Answer()
        self._stage = Stage.EVALUATING
        correct = self.policy.is_correct(self._round, answer)
        self._last_correct = correct
        self._record(correct)
        self._notify()
        if self._phase is Phase.GAME_OVER:
            return correct
        if self.preferences.advance_mode is AdvanceMode.SLOW:
            self._stage = Stage.WAITING_ADVANCE
            self._notify()
            return correct
        await self._sleep(self.advance_delay)
        if not self._stale(token):
            await self._advance(token)
        return correct

    async def choose_index(self, index) -> Optional[bool]:
        if not self._input_enabled or not self.policy.valid_index(index):
            return None
        self._pending = replace(self._pending, index=index)
        return await self._submit_if_complete()

    async def choose_direction(self, direction) -> Optional[bool]:
        if not self._input_enabled:
            return None
        self._pending = replace(self._pending, direction=direction)
        return await self._submit_if_complete()

    async def _submit_if_complete(self):
        if self.policy.answer_complete(self._pending):
            return await self.submit_answer(self._pending)
        self._notify()
        return None

    async def advance_next(self) -> bool:
        """Move on to the next round after an answer in slow mode."""
        if self._phase is not Phase.PLAYING or self._stage is not Stage.WAITING_ADVANCE:
            return False
        if self.preferences.advance_mode is not AdvanceMode.SLOW:
            return False
        token = self._next_token()
        return await self._advance(token)

    async def replay_stimulus(self) -> bool:
        """Play the current round again.

        Returns True only if this replay ran to the end; a replay that is
        superseded by another one (or by an answer or exit) returns False.
        """
        if not self.can_replay():
            return False
        token = self._next_token()
        return await self._present(token, open_gate=self._stage is Stage.PRESENTING)

    def exit(self):
        """Abandon the session from any state and silence all audio."""
        self._next_token()
        self._input_enabled = False
        self._audio_playing = False
        self._pending = Answer()
        self._stage = Stage.IDLE
        self._drone = None
        try:
            self.engine.stop_all()
        except Exception as e:
            logger.warning(f"Failed to stop audio on exit: {e}")
        self._notify()
        if self.on_exit is not None:
            self.on_exit()

    # ------------------------- Internals ------------------------------
    def _record(self, correct):
        if correct:
            self._level += 1
            self._save_high_score()
            return
        self._lives = max(0, self._lives - 1)
        if self._lives == 0:
            self._phase = Phase.GAME_OVER
            self._stage = Stage.IDLE
            self._stop_drone()
            self._save_high_score()
            logger.info(f"Game {self.policy.variant} over at level {self._level}")
            return
        # a miss still moves on to the next difficulty tier
        self._level += 1
        self._save_high_score()

    def _load_preferences(self):
        try:
            return load_preferences(self.store, SOUND_PROFILES)
        except Exception as e:
            logger.warning(f"Failed to read preferences, using defaults: {e}")
            return Preferences()

    def _save_high_score(self):
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._writer, self._write_high_score, self._level)
        self._saves.add(future)
        future.add_done_callback(self._saves.discard)

    def _write_high_score(self, level):
        try:
            save_high_score(self.store, self.policy.variant, level)
        except Exception as e:
            logger.warning(f"Failed to save high score: {e}")

    async def wait_for_saves(self):
        """Wait until every queued high-score write has reached the store."""
        if self._saves:
            await asyncio.gather(*list(self._saves))

    def close(self):
        """Finish pending high-score writes and release the writer thread."""
        self._writer.shutdown(wait=True)

    def _new_round(self, previous):
        self._stage = Stage.GENERATING
        self._input_enabled = False
        self._pending = Answer()
        self._last_correct = None
        self._round = self.policy.generate(self._level, previous)
        logger.debug(f"Level {self._level}: {self._round}")
        self._notify()

    async def _advance(self, token):
        self._new_round(self._round)
        return await self._present(token, open_gate=True)

    async def _present(self, token, open_gate) -> bool:
        self._audio_playing = True
        if open_gate:
            self._stage = Stage.PRESENTING
            self._input_enabled = False
        self._notify()
        for step in self.policy.playback(self._round):
            if step == OPEN_INPUT:
                if open_gate:
                    self._open_input()
                continue
            if isinstance(step, Drone):
                self._ensure_drone(step.frequency)
                continue
            if isinstance(step, Tone):
                await self._play(step)
            elif isinstance(step, Pause):
                seconds = self.preferences.pause_seconds if step.seconds is None else step.seconds
                await self._sleep(seconds)
            if self._stale(token):
                return False
        self._audio_playing = False
        if open_gate and self._stage is Stage.PRESENTING:
            self._open_input()
        else:
            self._notify()
        return True

    def _open_input(self):
        self._stage = Stage.AWAITING_INPUT
        self._input_enabled = True
        self._notify()

    async def _play(self, tone):
        try:
            await self.engine.play_tone(tone.frequency, tone.duration, self.preferences.sound_profile)
        except Exception as e:
            logger.warning(f"Tone at {tone.frequency:.2f} Hz failed: {e}")
            await self._sleep(tone.duration)

    def _ensure_drone(self, freq):
        if self._drone is not None and not self._drone.stopped and self._drone.frequency == freq:
            return
        try:
            self._drone = self.engine.start_drone(freq, self.preferences.sound_profile)
        except Exception as e:
            logger.warning(f"Drone at {freq:.2f} Hz failed: {e}")
            self._drone = None

    def _stop_drone(self):
        if self._drone is None:
            return
        drone, self._drone = self._drone, None
        try:
            drone.stop()
        except Exception as e:
            logger.warning(f"Failed to stop drone: {e}")
