"""Offline export of generated rounds: text log, MIDI and WAV."""
import logging
import wave

import numpy as np
import mido
from mido import Message, MidiFile, MidiTrack, bpm2tempo

from .frequency import describe_frequency, freq_to_midi
from .rounds import Drone, Pause, Tone
from .tones import SAMPLE_RATE, render_drone, render_tone

logger = logging.getLogger(__name__)

PITCH_BEND_RANGE = 2.0  # semitones, the General MIDI default
DRONE_CHANNEL = 1
TONE_CHANNEL = 0


def plan_timeline(plan, pause_seconds):
    """Lay a playback plan out in time.

    Returns ``(events, drone, total)`` where ``events`` is a list of
    ``(start, frequency, duration)`` tones, ``drone`` is ``(start, frequency)``
    or None, and ``total`` the length of the plan in seconds.
    """
    t = 0.0
    events = []
    drone = None
    for step in plan:
        if isinstance(step, Tone):
            events.append((t, step.frequency, step.duration))
            t += step.duration
        elif isinstance(step, Pause):
            t += pause_seconds if step.seconds is None else step.seconds
        elif isinstance(step, Drone):
            drone = (t, step.frequency)
    return events, drone, t


def round_summary(rnd) -> str:
    answer = rnd.answer.direction.value
    if rnd.answer.index is not None:
        answer = f"degree {rnd.answer.index + 1} {answer}"
    return answer


def write_text_log(path, rounds, title='session'):
    with open(path, 'w', encoding='utf8') as f:
        f.write(f"# {title}: {len(rounds)} rounds\n")
        for i, rnd in enumerate(rounds, 1):
            f.write(f"Round {i} (level {rnd.level}, interval {rnd.interval:.3f} semitones)\n")
            notes = ', '.join(f"{freq:.2f} Hz ({describe_frequency(freq)})" for freq in rnd.stimulus)
            f.write(f"  stimulus: {notes}\n")
            f.write(f"  reference: {rnd.reference:.2f} Hz, played: {rnd.target:.2f} Hz\n")
            f.write(f"  answer: {round_summary(rnd)}\n")


# ------------------------- MIDI ---------------------------------------
def midi_note_and_bend(freq):
    """Nearest MIDI note and the pitch-wheel value for the remaining offset."""
    exact = freq_to_midi(freq)
    note = int(round(exact))
    bend = int(round((exact - note) / PITCH_BEND_RANGE * 8191))
    return note, max(-8192, min(8191, bend))


def _note_messages(start, end, freq, channel, velocity):
    note, bend = midi_note_and_bend(freq)
    # sort key: note_off (0) before pitchwheel (1) before note_on (2) at equal times
    return [
        (start, 1, Message('pitchwheel', channel=channel, pitch=bend)),
        (start, 2, Message('note_on', channel=channel, note=note, velocity=velocity)),
        (end, 0, Message('note_off', channel=channel, note=note, velocity=0)),
    ]


def write_midi(rounds, policy, midi_path, pause_seconds=0.1, rest_between=1.0, tempo_bpm=120):
    mid = MidiFile()
    track = MidiTrack()
    mid.tracks.append(track)
    track.append(mido.MetaMessage('set_tempo', tempo=bpm2tempo(tempo_bpm)))
    ticks_per_second = mid.ticks_per_beat * tempo_bpm / 60.0

    timed = []
    offset = 0.0
    for rnd in rounds:
        events, drone, total = plan_timeline(policy.playback(rnd), pause_seconds)
        if drone is not None:
            start, freq = drone
            timed.extend(_note_messages(offset + start, offset + total, freq, DRONE_CHANNEL, 50))
        for start, freq, dur in events:
            timed.extend(_note_messages(offset + start, offset + start + dur, freq, TONE_CHANNEL, 90))
        offset += total + rest_between
    timed.sort(key=lambda e: (e[0], e[1]))

    last_tick = 0
    for when, _, msg in timed:
        tick = int(round(when * ticks_per_second))
        track.append(msg.copy(time=tick - last_tick))
        last_tick = tick
    mid.save(midi_path)
    return mid


# ------------------------- WAV ----------------------------------------
def make_silence(seconds, sr=SAMPLE_RATE):
    return np.zeros(int(sr * seconds), dtype=np.float32)


def normalize_int16(arr):
    """Scale to the int16 range, peak at 32767."""
    a = np.asarray(arr, dtype=np.float64)
    if a.size == 0:
        return a.astype(np.int16)
    mx = np.max(np.abs(a))
    if mx == 0:
        return a.astype(np.int16)
    return (a / mx * 32767.0).astype(np.int16)


def write_wav_mono(path, arr, sr=SAMPLE_RATE):
    a = np.asarray(arr)
    if a.dtype != np.int16:
        a = normalize_int16(a)
    with wave.open(path, 'w') as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sr))
        wf.writeframes(a.tobytes())


def render_round(rnd, policy, profile='default', pause_seconds=0.1, sr=SAMPLE_RATE):
    events, drone, total = plan_timeline(policy.playback(rnd), pause_seconds)
    buf = np.zeros(int(round(total * sr)), dtype=np.float32)
    if drone is not None:
        start, freq = drone
        n0 = int(start * sr)
        samples = render_drone(freq, total - start, profile, sr)[:len(buf) - n0]
        buf[n0:n0 + len(samples)] += samples
    for start, freq, dur in events:
        n0 = int(start * sr)
        samples = render_tone(freq, dur, profile, sr)[:len(buf) - n0]
        buf[n0:n0 + len(samples)] += samples
    return buf


def render_wav(rounds, policy, path, profile='default', pause_seconds=0.1, rest_between=1.0, sr=SAMPLE_RATE):
    chunks = []
    for rnd in rounds:
        chunks.append(render_round(rnd, policy, profile, pause_seconds, sr))
        chunks.append(make_silence(rest_between, sr))
    audio = np.concatenate(chunks) if chunks else np.zeros(0, dtype=np.float32)
    write_wav_mono(path, audio, sr)
    logger.info(f"Wrote {len(rounds)} rounds ({len(audio) / sr:.1f}s) to {path}")
    return audio
