"""Pitch conversions and interval math.

Frequencies are converted to MIDI-style pitch numbers against the A4
reference in :mod:`voicecoach.constants`.  Distances between pitches
are measured in cents (100 per semitone, 1200 per octave).
"""

from __future__ import annotations

import math
import re
from dataclasses import replace
import numpy as np

from .constants import A4_FREQ, A4_MIDI, NOTE_NAMES
from .models import PitchEstimate, PitchSample, ReferenceNote

# Flat spellings accepted by :func:`note_to_midi`.
_FLATS = {"Db": "C#", "Eb": "D#", "Gb": "F#", "Ab": "G#", "Bb": "A#"}
_NOTE_RE = re.compile(r"^([A-Ga-g])([#b]?)(-?\d+)?$")


def frequency_to_midi_float(freq: float) -> float:
    """Convert frequency to a continuous MIDI number using the A4 reference."""
    return 12.0 * float(np.log2(freq / A4_FREQ)) + A4_MIDI


def frequency_to_midi(freq: float) -> int:
    """Convert frequency to the nearest MIDI note number."""
    return int(round(frequency_to_midi_float(freq)))


def midi_to_freq(midi: float) -> float:
    """Convert MIDI number to frequency using A4 reference."""
    return A4_FREQ * 2 ** ((midi - A4_MIDI) / 12.0)


midi_to_frequency = midi_to_freq


def octave_of(midi: int) -> int:
    return midi // 12 - 1


def note_name_only(midi: int) -> str:
    """Return the pitch class name of ``midi``, e.g. ``"C#"``."""
    return NOTE_NAMES[int(midi) % 12]


def note_name(midi: int) -> str:
    """Return the note name with octave, e.g. ``"A4"`` for 69."""
    return f"{note_name_only(midi)}{octave_of(int(midi))}"


def note_to_midi(note: str, octave: int = 4) -> int:
    """Return the MIDI number for ``note``.

    ``note`` may carry its own octave (``"C#4"``, ``"Bb3"``), in which
    case ``octave`` is ignored, or be a bare integer string (``"60"``).
    """
    text = note.strip()
    if re.fullmatch(r"\d+", text):
        return int(text)
    match = _NOTE_RE.match(text)
    if match is None:
        raise ValueError(f"Bad pitch: {note!r}")
    letter, accidental, octave_str = match.groups()
    name = letter.upper() + accidental
    name = _FLATS.get(name, name)
    if name not in NOTE_NAMES:
        raise ValueError(f"Bad pitch: {note!r}")
    if octave_str is not None:
        octave = int(octave_str)
    return NOTE_NAMES.index(name) + (octave + 1) * 12


def to_pitch_sample(estimate: PitchEstimate) -> PitchSample:
    """Attach the rounded MIDI pitch and note names to ``estimate``."""
    midi = frequency_to_midi(estimate.frequency)
    return PitchSample(
        frequency=estimate.frequency,
        clarity=estimate.clarity,
        confidence=estimate.confidence,
        captured_at_ms=estimate.captured_at_ms,
        midi_pitch=midi,
        note_name=note_name(midi),
        note_name_only=note_name_only(midi),
    )


def transpose_note(note: ReferenceNote, semitones: int) -> ReferenceNote:
    """Return ``note`` shifted by ``semitones``; the id is preserved."""
    if semitones == 0:
        return note
    pitch = note.midi_pitch + semitones
    return replace(
        note,
        midi_pitch=pitch,
        frequency=midi_to_frequency(pitch),
        display_name=note_name_only(pitch),
    )


def cents_between(reference: float, freq: float) -> float:
    """Signed distance from ``reference`` to ``freq`` in cents."""
    return 1200.0 * math.log2(freq / reference)


def wrap_cents(cents: float) -> float:
    """Fold ``cents`` by whole octaves into ``[-600, 600]``."""
    while cents > 600.0:
        cents -= 1200.0
    while cents < -600.0:
        cents += 1200.0
    return cents


def cents_to_nearest_octave(target_hz: float, detected_hz: float) -> float:
    """Deviation of ``detected_hz`` from ``target_hz`` wrapped to the nearest octave.

    Returns ``0.0`` when either frequency is not a finite positive number.
    """
    if not (math.isfinite(target_hz) and math.isfinite(detected_hz)):
        return 0.0
    if target_hz <= 0 or detected_hz <= 0:
        return 0.0
    return wrap_cents(cents_between(target_hz, detected_hz))


def is_octave_equivalent(midi_a: int, midi_b: int) -> bool:
    """``True`` when both pitches share a pitch class."""
    return int(midi_a) % 12 == int(midi_b) % 12


def accuracy_from_cents(cents: float) -> float:
    """Linear score in ``[0, 1]``, reaching zero at a full octave of deviation."""
    return max(0.0, 1.0 - abs(cents) / 1200.0)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


__all__ = [
    "frequency_to_midi_float",
    "frequency_to_midi",
    "midi_to_freq",
    "midi_to_frequency",
    "octave_of",
    "note_name_only",
    "note_name",
    "note_to_midi",
    "to_pitch_sample",
    "transpose_note",
    "cents_between",
    "wrap_cents",
    "cents_to_nearest_octave",
    "is_octave_equivalent",
    "accuracy_from_cents",
    "clamp",
]
