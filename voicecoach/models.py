"""Core data models shared across the pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass
class SampleWindow:
    """One analysis window of mono samples in ``[-1, 1]``."""

    samples: np.ndarray
    sample_rate: int

    def __len__(self) -> int:
        return int(self.samples.size)


@dataclass(frozen=True)
class PitchEstimate:
    frequency: float  # Hz
    clarity: float  # 0-1, from the depth of the CMNDF minimum
    confidence: float  # 0-1, clarity blended with signal energy
    captured_at_ms: int


@dataclass(frozen=True)
class PitchSample:
    """A pitch estimate with its musical pitch and note names."""

    frequency: float
    clarity: float
    confidence: float
    captured_at_ms: int
    midi_pitch: int
    note_name: str  # with octave, e.g. "A4"
    note_name_only: str  # e.g. "A"


@dataclass(frozen=True)
class ReferenceNote:
    """A note of the reference melody.

    Notes are immutable.  Transposing a note produces a copy that keeps
    the original ``id`` so that hits stay attributed to the same note.
    """

    id: str
    start_time: float  # seconds from song start
    duration: float  # seconds
    midi_pitch: int
    frequency: float
    display_name: str
    lyric: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.start_time >= 0.0:
            raise ValueError(f"note {self.id!r}: start_time must be >= 0, got {self.start_time}")
        if not self.duration > 0.0:
            raise ValueError(f"note {self.id!r}: duration must be > 0, got {self.duration}")

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    def contains(self, t: float) -> bool:
        return self.start_time <= t <= self.end_time

    @classmethod
    def from_midi(
        cls,
        id: str,
        start_time: float,
        duration: float,
        midi_pitch: int,
        lyric: Optional[str] = None,
    ) -> "ReferenceNote":
        # Imported here to keep models free of an import cycle with music.
        from .music import midi_to_frequency, note_name_only

        return cls(
            id=id,
            start_time=float(start_time),
            duration=float(duration),
            midi_pitch=int(midi_pitch),
            frequency=midi_to_frequency(midi_pitch),
            display_name=note_name_only(midi_pitch),
            lyric=lyric,
        )


@dataclass(frozen=True)
class VoiceAnalysisSnapshot:
    current_pitch: Optional[PitchSample]
    target_note: Optional[ReferenceNote]
    accuracy: float = 0.0  # 0-1
    deviation_cents: float = 0.0  # wrapped to [-600, 600]
    is_on_pitch: bool = False
    octave_adjusted: bool = False

    @classmethod
    def empty(
        cls,
        current_pitch: Optional[PitchSample] = None,
        target_note: Optional[ReferenceNote] = None,
    ) -> "VoiceAnalysisSnapshot":
        """Neutral result: nothing to score this tick."""
        return cls(current_pitch=current_pitch, target_note=target_note)


@dataclass(frozen=True)
class HistoryPoint:
    time: float  # playback time in seconds
    midi_pitch: float
    is_on_pitch: bool


@dataclass(frozen=True)
class SongResults:
    total_notes: int
    correct_notes: int
    accuracy: float
    score_percentage: float
    completed_at_ms: int


__all__ = [
    "SampleWindow",
    "PitchEstimate",
    "PitchSample",
    "ReferenceNote",
    "VoiceAnalysisSnapshot",
    "HistoryPoint",
    "SongResults",
]
