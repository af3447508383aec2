"""Frequency model and difficulty curve shared by every game variant."""
import math
import random
from collections import namedtuple
from enum import Enum


MIN_FREQ = 130.81   # C3
MAX_FREQ = 1046.50  # C6

NOTE_NAMES = ['C', 'C#', 'D', 'D#', 'E', 'F', 'F#', 'G', 'G#', 'A', 'A#', 'B']

MAJOR_STEPS = [2, 2, 1, 2, 2, 2, 1]


def _cumulative(steps):
    out = [0]
    for s in steps:
        out.append(out[-1] + s)
    return tuple(out)


# 1 2 3 4 5 6 7 8 of a major scale, in semitones above the tonic
MAJOR_SCALE_SEMITONES = _cumulative(MAJOR_STEPS)


class Direction(Enum):
    UP = 'up'
    DOWN = 'down'

    def opposite(self):
        return Direction.DOWN if self is Direction.UP else Direction.UP

    @property
    def sign(self) -> int:
        return 1 if self is Direction.UP else -1


# ------------------------- Ratios and bands ---------------------------
def ratio_for_semitones(semitones: float) -> float:
    return 2 ** (semitones / 12.0)


def random_root_frequency(safe_min: float, safe_max: float, rng=random) -> float:
    if safe_min > safe_max:
        raise ValueError(f"Empty frequency band: {safe_min} > {safe_max}")
    return rng.uniform(safe_min, safe_max)


def direction_between(a: float, b: float) -> Direction:
    """Direction of the step from ``a`` to ``b``.

    Equal pitches have no direction; asking for one is a generator bug.
    """
    if a == b:
        raise ValueError(f"No direction between equal frequencies ({a} Hz)")
    return Direction.UP if b > a else Direction.DOWN


def clamp_direction_to_band(freq: float, ratio: float, min_freq: float = MIN_FREQ,
                            max_freq: float = MAX_FREQ, rng=random) -> Direction:
    """Pick a direction for applying ``ratio`` to ``freq`` that stays inside the band.

    When one direction would leave the band the other one is forced,
    otherwise the choice is a coin flip.
    """
    if freq * ratio > max_freq:
        return Direction.DOWN
    if freq / ratio < min_freq:
        return Direction.UP
    return Direction.UP if rng.random() > 0.5 else Direction.DOWN


def apply_interval(freq: float, ratio: float, direction: Direction) -> float:
    return freq * ratio if direction is Direction.UP else freq / ratio


def in_band(freq: float, min_freq: float = MIN_FREQ, max_freq: float = MAX_FREQ) -> bool:
    return min_freq <= freq <= max_freq


# ------------------------- Difficulty curve ---------------------------
def interval_semitones(level: int, start: float, minimum: float, k: float) -> float:
    """Interval size in semitones for ``level``: ``start * e^(-k * level) + minimum``."""
    if level < 1:
        raise ValueError(f"Level must be >= 1, got {level}")
    return start * math.exp(-k * level) + minimum


class Curve(namedtuple('Curve', 'start minimum k')):
    __slots__ = ()

    def semitones(self, level: int) -> float:
        return interval_semitones(level, self.start, self.minimum, self.k)

    def ratio(self, level: int) -> float:
        return ratio_for_semitones(self.semitones(level))


# ------------------------- Note names ---------------------------------
def midi_to_freq(midi: float) -> float:
    return 440.0 * (2 ** ((midi - 69) / 12.0))


def freq_to_midi(freq: float) -> float:
    return 69 + 12 * math.log2(freq / 440.0)


def midi_to_note_name(midi: int) -> str:
    octave = (midi // 12) - 1
    return f"{NOTE_NAMES[midi % 12]}{octave}"


def describe_frequency(freq: float) -> str:
    """Nearest note name with the cents offset, e.g. ``A4 +12c``."""
    exact = freq_to_midi(freq)
    nearest = int(round(exact))
    cents = int(round((exact - nearest) * 100))
    return f"{midi_to_note_name(nearest)} {cents:+d}c"
