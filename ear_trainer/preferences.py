"""Key-value preference store and the per-session preference snapshot.

The store is a flat YAML mapping.  Storage errors never reach the game:
reads fall back to the default and writes keep the value in memory.
"""
import logging
import os
from dataclasses import dataclass
from enum import Enum

import yaml

logger = logging.getLogger(__name__)

DEFAULT_PATH = os.path.join(os.path.expanduser('~'), '.ear_trainer.yaml')

SOUND_PROFILE_KEY = 'sound_profile'
DIFFICULTY_MODE_KEY = 'difficulty_mode'
PAUSE_KEY = 'pause_ms'
ADVANCE_MODE_KEY = 'advance_mode'

PAUSE_DEFAULT_MS = 100
PAUSE_MIN_MS = 0
PAUSE_MAX_MS = 1000
PAUSE_STEP_MS = 100


class DifficultyMode(Enum):
    EASY = 'easy'
    HARD = 'hard'


class AdvanceMode(Enum):
    FAST = 'fast'
    SLOW = 'slow'


class PreferenceStore:
    def __init__(self, path=None):
        self.path = path
        self._data = None

    def _load(self) -> dict:
        if self._data is not None:
            return self._data
        self._data = {}
        if self.path is None or not os.path.exists(self.path):
            return self._data
        try:
            with open(self.path, 'r', encoding='utf8') as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load preferences from {self.path}: {e}")
            return self._data
        if not isinstance(loaded, dict):
            logger.warning(f"Ignoring preferences file {self.path}: not a mapping")
            return self._data
        self._data = loaded
        return self._data

    def get(self, key, default=None):
        return self._load().get(key, default)

    def set(self, key, value) -> bool:
        data = self._load()
        data[key] = value
        if self.path is None:
            return True
        try:
            with open(self.path, 'w', encoding='utf8') as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to save preference {key!r}: {e}")
            return False
        return True

    def items(self):
        return dict(self._load())


def snap_pause_ms(value) -> int:
    """Clamp to [0, 1000] ms and snap to the 100 ms grid."""
    ms = int(round(float(value) / PAUSE_STEP_MS)) * PAUSE_STEP_MS
    return max(PAUSE_MIN_MS, min(PAUSE_MAX_MS, ms))


@dataclass(frozen=True)
class Preferences:
    sound_profile: str = 'default'
    difficulty_mode: DifficultyMode = DifficultyMode.HARD
    pause_ms: int = PAUSE_DEFAULT_MS
    advance_mode: AdvanceMode = AdvanceMode.FAST

    @property
    def pause_seconds(self) -> float:
        return self.pause_ms / 1000.0


def _enum_or_default(enum_cls, raw, default):
    try:
        return enum_cls(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {enum_cls.__name__} preference: {raw!r}")
        return default


def load_preferences(store, profiles=None) -> Preferences:
    """Snapshot the store into a ``Preferences``; bad values fall back to defaults."""
    defaults = Preferences()
    profile = store.get(SOUND_PROFILE_KEY, defaults.sound_profile)
    if not isinstance(profile, str) or (profiles is not None and profile not in profiles):
        logger.warning(f"Ignoring unknown sound profile: {profile!r}")
        profile = defaults.sound_profile
    try:
        pause = snap_pause_ms(store.get(PAUSE_KEY, defaults.pause_ms))
    except (TypeError, ValueError):
        pause = defaults.pause_ms
    return Preferences(
        sound_profile=profile,
        difficulty_mode=_enum_or_default(
            DifficultyMode, store.get(DIFFICULTY_MODE_KEY, defaults.difficulty_mode.value),
            defaults.difficulty_mode),
        pause_ms=pause,
        advance_mode=_enum_or_default(
            AdvanceMode, store.get(ADVANCE_MODE_KEY, defaults.advance_mode.value),
            defaults.advance_mode),
    )


def high_score_key(variant: int) -> str:
    return f"high_score_game{variant}"


def get_high_score(store, variant: int) -> int:
    try:
        return int(store.get(high_score_key(variant), 0) or 0)
    except (TypeError, ValueError):
        return 0


def save_high_score(store, variant: int, level: int) -> bool:
    """Record ``level`` if it beats the stored best.  Returns True when it did."""
    if level <= get_high_score(store, variant):
        return False
    store.set(high_score_key(variant), int(level))
    return True


def get_high_scores(store, variants) -> dict:
    return {v: get_high_score(store, v) for v in variants}
