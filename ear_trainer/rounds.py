"""Round generators, one policy object per game variant.

A policy knows three things about its variant: how to build the next
``Round`` from the current level, how that round is played back, and how a
player's ``Answer`` is judged.  The session drives all of them the same way.
"""
import random
from collections import namedtuple
from dataclasses import dataclass
from typing import Optional, Tuple

from .frequency import (
    MAJOR_SCALE_SEMITONES,
    MAX_FREQ,
    MIN_FREQ,
    Curve,
    Direction,
    apply_interval,
    clamp_direction_to_band,
    direction_between,
    random_root_frequency,
    ratio_for_semitones,
)


@dataclass(frozen=True)
class Answer:
    direction: Optional[Direction] = None
    index: Optional[int] = None


@dataclass(frozen=True)
class Round:
    variant: int
    level: int
    interval: float
    stimulus: Tuple[float, ...]
    reference: float
    target: float
    answer: Answer


# Playback plan steps.  Pause(None) means the session's inter-note pause.
Tone = namedtuple('Tone', 'frequency duration')
Pause = namedtuple('Pause', 'seconds')
Drone = namedtuple('Drone', 'frequency')
OPEN_INPUT = 'open_input'


class RoundPolicy:
    """Base for the variant policies."""

    variant = 0
    title = ''
    description = ''
    curve = Curve(4.0, 0.1, 0.2)
    safe_band = (MIN_FREQ * 1.1, MAX_FREQ / 1.1)
    note_duration = 0.8

    def __init__(self, curve=None, rng=None):
        if curve is not None:
            self.curve = Curve(*curve)
        self.rng = rng or random.Random()

    def generate(self, level: int, previous: Optional[Round] = None) -> Round:
        raise NotImplementedError

    def playback(self, rnd: Round):
        raise NotImplementedError

    def valid_index(self, index) -> bool:
        return False

    def answer_complete(self, answer: Answer) -> bool:
        return answer.direction is not None

    def is_correct(self, rnd: Round, answer: Answer) -> bool:
        return answer.direction is rnd.answer.direction

    def _pair(self, level, f1):
        semitones = self.curve.semitones(level)
        ratio = ratio_for_semitones(semitones)
        direction = clamp_direction_to_band(f1, ratio, MIN_FREQ, MAX_FREQ, rng=self.rng)
        f2 = apply_interval(f1, ratio, direction)
        return Round(
            variant=self.variant,
            level=level,
            interval=semitones,
            stimulus=(f1, f2),
            reference=f1,
            target=f2,
            answer=Answer(direction_between(f1, f2)),
        )

    def _fresh_root(self):
        return random_root_frequency(*self.safe_band, rng=self.rng)


class BasicComparison(RoundPolicy):
    variant = 1
    title = 'Basic Mode'
    description = 'Simple comparison'

    def generate(self, level, previous=None):
        return self._pair(level, self._fresh_root())

    def playback(self, rnd):
        first, second = rnd.stimulus
        return [Tone(first, self.note_duration), Pause(None), Tone(second, self.note_duration)]


class ConsecutiveComparison(RoundPolicy):
    variant = 2
    title = 'Consecutive Mode'
    description = 'Each note becomes the next reference.'

    def generate(self, level, previous=None):
        f1 = previous.target if previous is not None else self._fresh_root()
        return self._pair(level, f1)

    def playback(self, rnd):
        first, second = rnd.stimulus
        if rnd.level == 1:
            return [Tone(first, self.note_duration), Pause(None), Tone(second, self.note_duration)]
        # the reference is the note the player heard last round
        return [Tone(second, self.note_duration)]


class DroneReference(RoundPolicy):
    variant = 3
    title = 'Drone Mode'
    description = 'A constant reference tone plays non-stop.'
    lead_in = 1.0

    def generate(self, level, previous=None):
        f1 = previous.reference if previous is not None else self._fresh_root()
        return self._pair(level, f1)

    def playback(self, rnd):
        steps = [Drone(rnd.reference)]
        if rnd.level == 1:
            steps.append(Pause(self.lead_in))
        steps.append(Tone(rnd.target, self.note_duration))
        return steps


class CadenceResolution(RoundPolicy):
    variant = 4
    title = 'Cadence Mode'
    description = '6-7-1 sequence detection.'
    curve = Curve(0.8, 0.05, 0.15)
    safe_band = (MIN_FREQ * 1.1, MAX_FREQ / 1.5)
    cadence_duration = 0.6

    def generate(self, level, previous=None):
        root = self._fresh_root()
        supertonic = root * ratio_for_semitones(2)
        ideal = supertonic * ratio_for_semitones(1)
        semitones = self.curve.semitones(level)
        direction = Direction.UP if self.rng.random() > 0.5 else Direction.DOWN
        actual = apply_interval(ideal, ratio_for_semitones(semitones), direction)
        return Round(
            variant=self.variant,
            level=level,
            interval=semitones,
            stimulus=(root, supertonic, actual),
            reference=ideal,
            target=actual,
            answer=Answer(direction_between(ideal, actual)),
        )

    def playback(self, rnd):
        root, supertonic, actual = rnd.stimulus
        return [
            Tone(root, self.cadence_duration),
            Pause(None),
            Tone(supertonic, self.cadence_duration),
            Pause(None),
            OPEN_INPUT,
            Tone(actual, self.note_duration),
        ]


class ScaleMistuning(RoundPolicy):
    """Eight-note major scale with one degree out of tune.

    The player names both the degree and which way it was off; index 0 is
    the tonic and is never mistuned since it defines the root.
    """

    variant = 5
    title = 'Scale Mode'
    description = 'Find the out-of-tune note in a major scale.'
    curve = Curve(0.8, 0.05, 0.12)
    safe_band = (MIN_FREQ * 1.1, MAX_FREQ / 2.5)
    note_duration = 0.5

    def generate(self, level, previous=None):
        root = self._fresh_root()
        error_index = self.rng.randint(1, len(MAJOR_SCALE_SEMITONES) - 1)
        semitones = self.curve.semitones(level)
        direction = Direction.UP if self.rng.random() > 0.5 else Direction.DOWN
        notes = [root * ratio_for_semitones(s) for s in MAJOR_SCALE_SEMITONES]
        ideal = notes[error_index]
        notes[error_index] = apply_interval(ideal, ratio_for_semitones(semitones), direction)
        return Round(
            variant=self.variant,
            level=level,
            interval=semitones,
            stimulus=tuple(notes),
            reference=ideal,
            target=notes[error_index],
            answer=Answer(direction_between(ideal, notes[error_index]), error_index),
        )

    def playback(self, rnd):
        steps = []
        for i, freq in enumerate(rnd.stimulus):
            if i:
                steps.append(Pause(None))
            steps.append(Tone(freq, self.note_duration))
        return steps

    def valid_index(self, index) -> bool:
        return isinstance(index, int) and 1 <= index < len(MAJOR_SCALE_SEMITONES)

    def answer_complete(self, answer):
        return answer.direction is not None and self.valid_index(answer.index)

    def is_correct(self, rnd, answer):
        same_index = answer.index == rnd.answer.index
        same_direction = answer.direction is rnd.answer.direction
        return same_index and same_direction


POLICIES = {
    cls.variant: cls
    for cls in (BasicComparison, ConsecutiveComparison, DroneReference,
                CadenceResolution, ScaleMistuning)
}


def make_policy(variant: int, **kwargs) -> RoundPolicy:
    try:
        cls = POLICIES[int(variant)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown game variant: {variant!r} (choose from {sorted(POLICIES)})") from None
    return cls(**kwargs)
