"""Target note tracking: which reference note is due at a playback time."""

from __future__ import annotations

import math
from typing import Iterable, Optional, Sequence

from .constants import MAX_TRANSPOSITION
from .models import ReferenceNote
from .music import transpose_note


class TargetNoteTracker:
    """Moving cursor over a melody ordered by start time.

    Under forward playback the cursor only moves forward, so lookups
    are amortized O(1).  A backward seek walks the cursor back one note
    at a time, costing O(distance) for large jumps.
    """

    def __init__(
        self, notes: Iterable[ReferenceNote] = (), transposition: int = 0
    ) -> None:
        self._notes: list[ReferenceNote] = []
        self._cursor = 0
        self._transposition = 0
        self.transposition = transposition
        self.set_notes(notes)

    @property
    def notes(self) -> Sequence[ReferenceNote]:
        return tuple(self._notes)

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def candidate(self) -> Optional[ReferenceNote]:
        """Note under the cursor, whether or not it is sounding now."""
        if self._cursor < len(self._notes):
            return self._notes[self._cursor]
        return None

    @property
    def transposition(self) -> int:
        return self._transposition

    @transposition.setter
    def transposition(self, semitones: int) -> None:
        if isinstance(semitones, bool) or int(semitones) != semitones:
            raise ValueError(f"transposition must be an integer, got {semitones!r}")
        if abs(semitones) > MAX_TRANSPOSITION:
            raise ValueError(
                f"transposition must be within ±{MAX_TRANSPOSITION}, got {semitones}"
            )
        self._transposition = int(semitones)

    def set_notes(self, notes: Iterable[ReferenceNote]) -> None:
        self._notes = sorted(notes, key=lambda n: n.start_time)
        self.reset()

    def reset(self) -> None:
        self._cursor = 0

    def update(self, t: float) -> Optional[ReferenceNote]:
        """Move the cursor to playback time ``t`` and return the active target.

        The target is the (transposed) note under the cursor when ``t``
        lies within its interval, otherwise ``None``.
        """
        if not math.isfinite(t):
            return None
        notes = self._notes
        if not notes:
            return None
        # The cursor stops on the last note so that it stays the candidate
        # after the melody ends.
        idx = min(self._cursor, len(notes) - 1)
        while idx < len(notes) - 1 and t > notes[idx].end_time:
            idx += 1
        while idx > 0 and t < notes[idx].start_time:
            idx -= 1
        self._cursor = idx

        candidate = self.candidate
        if candidate is None or not candidate.contains(t):
            return None
        return transpose_note(candidate, self._transposition)


__all__ = ["TargetNoteTracker"]
