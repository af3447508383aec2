"""Tone engine: numpy synthesis mixed into a single sounddevice output stream.

Tones are rendered up front with an attack/decay envelope and handed to the
mixer; ``play_tone`` then just waits out the audible duration so callers can
sequence notes with ``await``.  The drone is the one open-ended voice.  If the
audio device cannot be opened the engine keeps its timing but plays nothing.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .frequency import MAX_FREQ, MIN_FREQ

logger = logging.getLogger(__name__)

SAMPLE_RATE = 44100
SILENCE = 0.001

TONE_BASE_GAIN = 0.15
TONE_BOOST_GAIN = 0.55
DRONE_BASE_GAIN = 0.08
DRONE_BOOST_GAIN = 0.2
DRONE_FADE_IN = 0.5
DRONE_FADE_OUT = 0.5


# ------------------------- Waveforms ----------------------------------
def _sine(freq, t):
    return np.sin(2 * np.pi * freq * t)


def _triangle(freq, t):
    return (2 / np.pi) * np.arcsin(np.sin(2 * np.pi * freq * t))


def _square(freq, t):
    return np.sign(np.sin(2 * np.pi * freq * t))


def _saw(freq, t):
    phase = freq * t
    return 2.0 * (phase - np.floor(phase + 0.5))


WAVEFORMS = {
    'sine': _sine,
    'triangle': _triangle,
    'square': _square,
    'saw': _saw,
}


@dataclass(frozen=True)
class SoundProfile:
    name: str
    waveform: str = 'auto'
    partials: Tuple[Tuple[int, float], ...] = ((1, 1.0),)
    attack: float = 0.1

    def base_waveform(self, freq):
        if self.waveform == 'auto':
            # low notes get a brighter wave so they stay audible on small speakers
            return WAVEFORMS['triangle' if freq < 300 else 'sine']
        return WAVEFORMS[self.waveform]

    def synthesize(self, freq, t):
        wave = self.base_waveform(freq)
        total = sum(amp for _, amp in self.partials)
        out = np.zeros_like(t)
        for harmonic, amp in self.partials:
            out += amp * wave(freq * harmonic, t)
        return out / total


SOUND_PROFILES = {
    'default': SoundProfile('default'),
    'piano': SoundProfile('piano', 'sine', ((1, 1.0), (2, 0.5), (3, 0.25), (4, 0.12)), attack=0.01),
    'guitar': SoundProfile('guitar', 'sine', ((1, 1.0), (2, 0.6), (3, 0.35), (4, 0.2), (5, 0.1)), attack=0.005),
    'synth': SoundProfile('synth', 'saw', ((1, 1.0), (2, 0.3)), attack=0.05),
}


def get_profile(profile) -> SoundProfile:
    if isinstance(profile, SoundProfile):
        return profile
    try:
        return SOUND_PROFILES[profile or 'default']
    except KeyError:
        raise ValueError(f"Unknown sound profile: {profile!r}") from None


def _boost(freq):
    """0..1, larger for low notes, which need more gain to sound as loud."""
    return max(0.0, 1.0 - (freq - MIN_FREQ) / (MAX_FREQ - MIN_FREQ))


def tone_gain(freq: float) -> float:
    return TONE_BASE_GAIN + _boost(freq) * TONE_BOOST_GAIN


def drone_gain(freq: float) -> float:
    return DRONE_BASE_GAIN + _boost(freq) * DRONE_BOOST_GAIN


def render_tone(freq, duration, profile='default', sample_rate=SAMPLE_RATE):
    """Render one tone as float32 samples.

    Linear ramp up to the peak over the profile's attack, then an
    exponential ramp down reaching ``SILENCE`` at ``duration``.
    """
    prof = get_profile(profile)
    n = int(sample_rate * duration)
    t = np.arange(n) / float(sample_rate)
    peak = tone_gain(freq)
    attack = min(prof.attack, duration / 2.0)
    env = np.empty(n)
    rising = t < attack
    env[rising] = peak * t[rising] / attack if attack > 0 else peak
    decay_len = max(duration - attack, 1e-9)
    falling = ~rising
    env[falling] = peak * (SILENCE / peak) ** ((t[falling] - attack) / decay_len)
    return (prof.synthesize(freq, t) * env).astype(np.float32)


# ------------------------- Voices and mixer ---------------------------
class _ToneVoice:
    def __init__(self, samples):
        self.samples = samples
        self.pos = 0

    @property
    def finished(self):
        return self.pos >= len(self.samples)

    def render(self, frames):
        chunk = self.samples[self.pos:self.pos + frames]
        self.pos += frames
        if len(chunk) < frames:
            chunk = np.concatenate([chunk, np.zeros(frames - len(chunk), dtype=np.float32)])
        return chunk


class _DroneVoice:
    def __init__(self, freq, profile, sample_rate=SAMPLE_RATE):
        self.freq = freq
        self.profile = profile
        self.sample_rate = sample_rate
        self.gain = drone_gain(freq)
        self.n = 0
        self.release_at = None

    @property
    def finished(self):
        if self.release_at is None:
            return False
        return self.n - self.release_at >= int(DRONE_FADE_OUT * self.sample_rate)

    def release(self):
        if self.release_at is None:
            self.release_at = self.n

    def render(self, frames):
        idx = self.n + np.arange(frames)
        t = idx / float(self.sample_rate)
        env = self.gain * np.minimum(1.0, t / DRONE_FADE_IN)
        if self.release_at is not None:
            since = (idx - self.release_at) / float(self.sample_rate)
            env = env * SILENCE ** np.clip(since / DRONE_FADE_OUT, 0.0, 1.0)
        self.n += frames
        return (self.profile.synthesize(self.freq, t) * env).astype(np.float32)


def render_drone(freq, duration, profile='default', sample_rate=SAMPLE_RATE):
    """Offline rendering of a drone held for ``duration``, faded at both ends."""
    voice = _DroneVoice(freq, get_profile(profile), sample_rate)
    n = int(sample_rate * duration)
    held = max(0, n - int(DRONE_FADE_OUT * sample_rate))
    head = voice.render(held)
    voice.release()
    return np.concatenate([head, voice.render(n - held)])


class Mixer:
    """Sums the active voices; called from the audio thread."""

    def __init__(self):
        self._voices = []
        self._lock = threading.Lock()

    def add(self, voice):
        with self._lock:
            self._voices.append(voice)

    def release(self, voice):
        with self._lock:
            if hasattr(voice, 'release'):
                voice.release()
            elif voice in self._voices:
                self._voices.remove(voice)

    def clear(self):
        with self._lock:
            self._voices = []

    @property
    def active(self):
        with self._lock:
            return len(self._voices)

    def mix(self, frames):
        out = np.zeros(frames, dtype=np.float32)
        with self._lock:
            for voice in self._voices:
                out += voice.render(frames)
            self._voices = [v for v in self._voices if not v.finished]
        return np.clip(out, -1.0, 1.0)


# ------------------------- Engine -------------------------------------
def _sounddevice_stream(samplerate, channels, callback):
    # PortAudio is loaded at import time; a missing library raises OSError here
    import sounddevice as sd
    return sd.OutputStream(samplerate=samplerate, channels=channels,
                           dtype='float32', callback=callback)


class DroneHandle:
    def __init__(self, engine, frequency, voice=None):
        self._engine = engine
        self.frequency = frequency
        self.voice = voice
        self.stopped = False

    def stop(self):
        """Fade the drone out and release it.  Safe to call twice."""
        if self.stopped:
            return
        self.stopped = True
        self._engine._drone_stopped(self)


class ToneEngine:
    def __init__(self, profile='default', sample_rate=SAMPLE_RATE, stream_factory=None):
        self.profile = get_profile(profile)
        self.sample_rate = sample_rate
        self.mixer = Mixer()
        self._stream_factory = stream_factory or _sounddevice_stream
        self._stream = None
        self._drone: Optional[DroneHandle] = None

    @property
    def available(self) -> bool:
        return self._stream is not None

    def open(self) -> bool:
        if self._stream is not None:
            return True
        try:
            stream = self._stream_factory(self.sample_rate, 1, self._callback)
            stream.start()
        except Exception as e:
            logger.warning(f"Audio output unavailable, continuing without sound: {e}")
            self._stream = None
            return False
        self._stream = stream
        logger.info("Audio engine initialized")
        return True

    def close(self):
        self.stop_all()
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning(f"Error closing audio stream: {e}")

    def _callback(self, outdata, frames, time_info, status):
        if status:
            logger.debug(f"Audio stream status: {status}")
        outdata[:, 0] = self.mixer.mix(frames)

    async def play_tone(self, freq, duration, profile=None):
        """Start a tone and resolve once its audible duration has elapsed.

        Overlapping calls are mixed together.  Failures to render or queue
        the tone are logged; the wait still happens so sequencing holds.
        """
        if self.available:
            try:
                samples = render_tone(freq, duration, profile or self.profile, self.sample_rate)
                self.mixer.add(_ToneVoice(samples))
            except Exception as e:
                logger.warning(f"Could not play {freq:.2f} Hz: {e}")
        await asyncio.sleep(duration)

    def start_drone(self, freq, profile=None) -> DroneHandle:
        if self._drone is not None:
            self._drone.stop()
        voice = None
        if self.available:
            try:
                voice = _DroneVoice(freq, get_profile(profile or self.profile), self.sample_rate)
                self.mixer.add(voice)
            except Exception as e:
                logger.warning(f"Could not start drone at {freq:.2f} Hz: {e}")
                voice = None
        self._drone = DroneHandle(self, freq, voice)
        return self._drone

    @property
    def drone(self) -> Optional[DroneHandle]:
        return self._drone

    def _drone_stopped(self, handle):
        if handle.voice is not None:
            self.mixer.release(handle.voice)
        if self._drone is handle:
            self._drone = None

    def stop_all(self):
        """Silence every tone and the drone right away."""
        self.mixer.clear()
        if self._drone is not None:
            self._drone.stopped = True
            self._drone = None
