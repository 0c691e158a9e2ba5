"""Voicecoach package."""

from .analysis import NoteHitArbiter, ScoreKeeper, classify
from .capture import ArraySource, CaptureAcquisitionError, SampleSource, acquire_with_retry
from .lifecycle import CaptureState
from .models import (
    HistoryPoint,
    PitchEstimate,
    PitchSample,
    ReferenceNote,
    SampleWindow,
    SongResults,
    VoiceAnalysisSnapshot,
)
from .noise_gate import VoiceActivityGate
from .note_tracker import TargetNoteTracker
from .pitch_detector import PitchDetector
from .scheduler import VoiceAnalysisScheduler

__all__ = [
    "ArraySource",
    "CaptureAcquisitionError",
    "CaptureState",
    "HistoryPoint",
    "NoteHitArbiter",
    "PitchDetector",
    "PitchEstimate",
    "PitchSample",
    "ReferenceNote",
    "SampleSource",
    "SampleWindow",
    "ScoreKeeper",
    "SongResults",
    "TargetNoteTracker",
    "VoiceActivityGate",
    "VoiceAnalysisScheduler",
    "VoiceAnalysisSnapshot",
    "acquire_with_retry",
    "classify",
]
