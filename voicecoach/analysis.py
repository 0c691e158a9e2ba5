"""Deviation scoring, note-hit arbitration and session results."""

from __future__ import annotations

from typing import Iterable, Optional

from .constants import ON_PITCH_CENTS
from .models import (
    PitchSample,
    ReferenceNote,
    SongResults,
    VoiceAnalysisSnapshot,
)
from .music import accuracy_from_cents, cents_to_nearest_octave, is_octave_equivalent


def classify(
    sample: Optional[PitchSample],
    target: Optional[ReferenceNote],
    on_pitch_cents: float = ON_PITCH_CENTS,
) -> VoiceAnalysisSnapshot:
    """Score ``sample`` against ``target``.

    Without both a detected pitch and an active target the result is
    neutral: zero accuracy and deviation, not on pitch.  A pitch in the
    right pitch class but the wrong octave counts as on pitch, which
    forgives octave errors common with low voices.
    """
    if sample is None or target is None:
        return VoiceAnalysisSnapshot.empty(current_pitch=sample, target_note=target)

    deviation = cents_to_nearest_octave(target.frequency, sample.frequency)
    octave_adjusted = is_octave_equivalent(target.midi_pitch, sample.midi_pitch)
    return VoiceAnalysisSnapshot(
        current_pitch=sample,
        target_note=target,
        accuracy=accuracy_from_cents(deviation),
        deviation_cents=deviation,
        is_on_pitch=abs(deviation) <= on_pitch_cents or octave_adjusted,
        octave_adjusted=octave_adjusted,
    )


class NoteHitArbiter:
    """Emit one hit per note per continuous occupancy of that note.

    The guard holds the id of the last note hit.  It is cleared whenever
    no target is active, so a note can only be hit again after playback
    has left its interval and come back.
    """

    def __init__(self) -> None:
        self.last_hit_id: Optional[str] = None

    def observe(self, snapshot: VoiceAnalysisSnapshot) -> Optional[str]:
        """Return the id of a newly hit note, or ``None``."""
        target = snapshot.target_note
        if target is None:
            self.clear()
            return None
        if snapshot.is_on_pitch and target.id and target.id != self.last_hit_id:
            self.last_hit_id = target.id
            return target.id
        return None

    def clear(self) -> None:
        self.last_hit_id = None


class ScoreKeeper:
    """Collects hit note ids over a song and summarises them."""

    def __init__(self, total_notes: int = 0) -> None:
        self.total_notes = total_notes
        self._hits: set[str] = set()

    @classmethod
    def for_notes(cls, notes: Iterable[ReferenceNote]) -> "ScoreKeeper":
        return cls(total_notes=len({n.id for n in notes}))

    @property
    def correct_notes(self) -> int:
        return len(self._hits)

    def record_hit(self, note_id: str) -> None:
        self._hits.add(note_id)

    def reset(self, total_notes: Optional[int] = None) -> None:
        self._hits.clear()
        if total_notes is not None:
            self.total_notes = total_notes

    def results(self, completed_at_ms: int) -> SongResults:
        total = self.total_notes
        correct = min(self.correct_notes, total) if total else self.correct_notes
        accuracy = correct / total if total > 0 else 0.0
        return SongResults(
            total_notes=total,
            correct_notes=correct,
            accuracy=accuracy,
            score_percentage=accuracy * 100.0,
            completed_at_ms=completed_at_ms,
        )


__all__ = ["classify", "NoteHitArbiter", "ScoreKeeper"]
