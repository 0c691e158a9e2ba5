"""Entry point for ``python -m voicecoach`` or the ``voicecoach`` console script.

Listens on an input device and logs how closely the voice follows a
melody given as note names, one note after another.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import time
from typing import Optional, Sequence

from PySide6 import QtCore

from .constants import SAMPLE_RATE, VAD_RMS_THRESHOLD, WINDOW_SIZE
from .models import ReferenceNote, VoiceAnalysisSnapshot
from .music import note_to_midi
from .pitch_detector import PitchDetector
from .scheduler import VoiceAnalysisScheduler

logger = logging.getLogger("voicecoach")


def build_melody(
    names: Sequence[str], note_length: float, gap: float = 0.0
) -> list[ReferenceNote]:
    """Lay ``names`` end to end, each lasting ``note_length`` seconds."""
    notes = []
    start = 0.0
    for i, name in enumerate(names, start=1):
        notes.append(ReferenceNote.from_midi(str(i), start, note_length, note_to_midi(name)))
        start += note_length + gap
    return notes


def calibrate_detector(
    detector: PitchDetector, seconds: float, device: Optional[int] = None
) -> float:
    """Raise the detector's voice gate above the room's noise floor."""
    from .microphone import record_ambient

    logger.info("measuring background noise for %.1f s, stay quiet", seconds)
    ambient = record_ambient(seconds, device)
    return detector.gate.calibrate(ambient)


def _log_snapshot(snapshot: VoiceAnalysisSnapshot) -> None:
    pitch = snapshot.current_pitch
    target = snapshot.target_note
    if pitch is None:
        return
    if target is None:
        logger.info("%-4s %7.1f Hz", pitch.note_name, pitch.frequency)
        return
    logger.info(
        "%-4s %7.1f Hz  target %-3s  %+6.1f cents  %3.0f%%%s",
        pitch.note_name,
        pitch.frequency,
        target.display_name,
        snapshot.deviation_cents,
        snapshot.accuracy * 100,
        "  ✓" if snapshot.is_on_pitch else "",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Live pitch tracking against a melody")
    parser.add_argument("--device", type=int, default=None, help="Input device index")
    parser.add_argument(
        "--notes",
        nargs="+",
        default=["C4", "D4", "E4", "F4", "G4", "A4", "B4", "C5"],
        help="Melody as note names (e.g. C4 D#4 Bb3)",
    )
    parser.add_argument("--note-length", type=float, default=1.0, help="Seconds per note")
    parser.add_argument("--transpose", type=int, default=0, help="Semitones, -12..12")
    parser.add_argument("--duration", type=float, default=None, help="Seconds to listen")
    parser.add_argument("--vad-threshold", type=float, default=VAD_RMS_THRESHOLD)
    parser.add_argument(
        "--calibrate",
        type=float,
        default=0.0,
        metavar="SECONDS",
        help="Measure background noise first and raise the VAD threshold",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        notes = build_melody(args.notes, args.note_length)
    except ValueError as exc:
        parser.error(str(exc))
    duration = args.duration
    if duration is None:
        duration = notes[-1].end_time + 2.0 if notes else 10.0

    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication(sys.argv[:1])
    signal.signal(signal.SIGINT, signal.SIG_DFL)

    from .microphone import SoundDeviceSource

    started: Optional[float] = None

    def playback_time() -> float:
        return 0.0 if started is None else time.monotonic() - started

    detector = PitchDetector(vad_threshold=args.vad_threshold)
    if args.calibrate > 0:
        try:
            calibrate_detector(detector, args.calibrate, args.device)
        except Exception as exc:
            logger.error("noise calibration failed: %s", exc)
            return 1
    try:
        scheduler = VoiceAnalysisScheduler(
            lambda: SoundDeviceSource(
                args.device, sample_rate=SAMPLE_RATE, window_size=WINDOW_SIZE
            ),
            notes=notes,
            playback_clock=playback_time,
            detector=detector,
            transposition=args.transpose,
        )
    except ValueError as exc:
        parser.error(str(exc))

    exit_code = 0

    def on_state(name: str, reason: str) -> None:
        nonlocal exit_code, started
        if name == "active":
            started = time.monotonic()
            QtCore.QTimer.singleShot(int(duration * 1000), finish)
        elif name == "failed":
            exit_code = 1
            app.quit()

    def finish() -> None:
        scheduler.stop()
        results = scheduler.results()
        logger.info(
            "%d/%d notes hit (%.0f%%)",
            results.correct_notes,
            results.total_notes,
            results.score_percentage,
        )
        app.quit()

    scheduler.analysisUpdated.connect(_log_snapshot)
    scheduler.noteHit.connect(lambda note_id: logger.info("hit note %s", note_id))
    scheduler.stateChanged.connect(on_state)
    with scheduler:
        scheduler.start()
        app.exec()
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
