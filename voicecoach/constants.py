"""Application-wide constants used by the pitch tracking pipeline.

The values in this module configure the audio capture, the YIN
estimator, the note matching rules and the update scheduler.  Every
component accepts keyword overrides for the values it uses; the
constants here are only defaults.  The hand-tuned thresholds (YIN
subharmonic margins, on-pitch tolerance, VAD threshold) have no derived
basis and should be re-validated against recorded singing before being
changed.
"""

from __future__ import annotations

# ─── Audio configuration ────────────────────────────────────────────────────

# Sampling frequency requested from the capture device.
SAMPLE_RATE: int = 44_100

# Samples per analysis window.  4096 samples at 44.1 kHz is roughly
# 93 ms, long enough to hold several periods of an 80 Hz fundamental.
WINDOW_SIZE: int = 4096

# Block size handed to the capture callback.
HOP_SIZE: int = 1024

# High-pass cutoff used by the microphone source to remove rumble and
# mains hum before analysis.
HP_FILTER_CUTOFF: float = 60.0

# ─── Pitch reference ────────────────────────────────────────────────────────

A4_FREQ: float = 440.0
A4_MIDI: int = 69

NOTE_NAMES: tuple[str, ...] = (
    "C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B",
)

# ─── YIN estimator ──────────────────────────────────────────────────────────

MIN_FREQ: float = 80.0
MAX_FREQ: float = 2000.0

# Absolute CMNDF threshold.  Typical values are 0.1–0.2.
YIN_THRESHOLD: float = 0.15

# A doubled (or tripled) lag replaces the refined lag only when its CMNDF
# value is lower by at least this margin.
SUBHARMONIC_MARGIN_DOUBLE: float = 0.015
SUBHARMONIC_MARGIN_TRIPLE: float = 0.02

# RMS level at which the energy half of the confidence blend saturates.
CONFIDENCE_RMS_REFERENCE: float = 0.1

# ─── Voice activity gate ────────────────────────────────────────────────────

# Windows whose RMS falls below this level never reach the estimator.
VAD_RMS_THRESHOLD: float = 0.01

# Multiplier applied to a measured noise floor when calibrating the gate.
NOISE_GATE_MARGIN: float = 1.5

# ─── Note matching ──────────────────────────────────────────────────────────

ON_PITCH_CENTS: float = 50.0
MAX_TRANSPOSITION: int = 12

# ─── Scheduler ──────────────────────────────────────────────────────────────

TICK_INTERVAL_MS: int = 80
LIVE_UPDATE_MS: int = 66
HISTORY_FLUSH_MS: int = 100

ACQUIRE_ATTEMPTS: int = 3
ACQUIRE_RETRY_DELAY: float = 0.1  # seconds, multiplied by the attempt number

__all__ = [
    "SAMPLE_RATE",
    "WINDOW_SIZE",
    "HOP_SIZE",
    "HP_FILTER_CUTOFF",
    "A4_FREQ",
    "A4_MIDI",
    "NOTE_NAMES",
    "MIN_FREQ",
    "MAX_FREQ",
    "YIN_THRESHOLD",
    "SUBHARMONIC_MARGIN_DOUBLE",
    "SUBHARMONIC_MARGIN_TRIPLE",
    "CONFIDENCE_RMS_REFERENCE",
    "VAD_RMS_THRESHOLD",
    "NOISE_GATE_MARGIN",
    "ON_PITCH_CENTS",
    "MAX_TRANSPOSITION",
    "TICK_INTERVAL_MS",
    "LIVE_UPDATE_MS",
    "HISTORY_FLUSH_MS",
    "ACQUIRE_ATTEMPTS",
    "ACQUIRE_RETRY_DELAY",
]
