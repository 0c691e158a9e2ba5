"""Update scheduler: runs the pitch pipeline on a fixed tick.

:class:`VoiceAnalysisScheduler` owns one capture session.  Starting it
acquires a :class:`~voicecoach.capture.SampleSource` on an
:class:`AcquisitionWorker` thread (bounded retries, linear back-off),
then drives the pipeline from a ``QTimer`` on the scheduler's own
thread:

    sample source -> voice activity gate -> YIN -> pitch normalizer
    -> target note tracker -> classification -> note-hit arbiter

Each tick yields one :class:`~voicecoach.models.VoiceAnalysisSnapshot`
and at most one :class:`~voicecoach.models.HistoryPoint`.  Results
leave through Qt signals on two independently throttled channels:

* ``analysisUpdated`` carries the latest snapshot, at most once per
  ``live_update_ms``; intermediate ticks are dropped.
* ``historyFlushed`` carries every history point buffered since the
  previous flush, at most once per ``history_flush_ms``.

``noteHit`` fires immediately, once per note occupancy, and
``stateChanged`` reports every lifecycle transition with a reason
string for failures.

Ticks never overlap: the timer fires on a single thread and a tick runs
to completion.  A ``stop()`` issued from inside a tick (for example by a
slot connected to one of the signals) is carried out once that tick has
finished.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Callable, Iterable, Optional

from PySide6 import QtCore

from .analysis import NoteHitArbiter, ScoreKeeper, classify
from .capture import CaptureAcquisitionError, SampleSource, acquire_with_retry
from .constants import (
    ACQUIRE_ATTEMPTS,
    ACQUIRE_RETRY_DELAY,
    HISTORY_FLUSH_MS,
    LIVE_UPDATE_MS,
    ON_PITCH_CENTS,
    TICK_INTERVAL_MS,
)
from .lifecycle import (
    Active,
    CaptureState,
    Failed,
    Idle,
    Initializing,
    LifecycleState,
    RequestingPermission,
    Stopped,
    can_transition,
    describe,
)
from .models import HistoryPoint, ReferenceNote, SongResults, VoiceAnalysisSnapshot
from .note_tracker import TargetNoteTracker
from .pitch_detector import PitchDetector

logger = logging.getLogger(__name__)

_ACQUIRING = (CaptureState.REQUESTING_PERMISSION, CaptureState.INITIALIZING)


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


def _default_source_factory() -> SampleSource:
    from .microphone import SoundDeviceSource

    return SoundDeviceSource()


class ThrottledChannel:
    """Publishes at most once per ``interval_ms``.

    The first call to :meth:`ready` always succeeds.
    """

    def __init__(self, interval_ms: int) -> None:
        self.interval_ms = interval_ms
        self._last_ms: Optional[int] = None

    def ready(self, now_ms: int) -> bool:
        return self._last_ms is None or now_ms - self._last_ms >= self.interval_ms

    def mark(self, now_ms: int) -> None:
        self._last_ms = now_ms

    def reset(self) -> None:
        self._last_ms = None


class AcquisitionWorker(QtCore.QThread):
    """Open a capture source off the tick thread.

    Signals:
        attemptStarted(int): Emitted before each attempt.
        acquired(object): Emitted with the opened source.
        failed(str): Emitted with the reason once every attempt failed.
    """

    attemptStarted = QtCore.Signal(int)
    acquired = QtCore.Signal(object)
    failed = QtCore.Signal(str)

    def __init__(
        self,
        factory: Callable[[], SampleSource],
        *,
        attempts: int = ACQUIRE_ATTEMPTS,
        base_delay: float = ACQUIRE_RETRY_DELAY,
        parent: Optional[QtCore.QObject] = None,
    ) -> None:
        super().__init__(parent)
        self.factory = factory
        self.attempts = attempts
        self.base_delay = base_delay

    def run(self) -> None:
        try:
            source = acquire_with_retry(
                self.factory,
                attempts=self.attempts,
                base_delay=self.base_delay,
                sleep=lambda seconds: self.msleep(int(seconds * 1000)),
                on_attempt=self.attemptStarted.emit,
            )
        except CaptureAcquisitionError as exc:
            self.failed.emit(str(exc))
            return
        self.acquired.emit(source)


class VoiceAnalysisScheduler(QtCore.QObject):
    """Fixed-tick driver for one pitch tracking session.

    Args:
        source_factory: Builds an unopened capture source; defaults to
            the system microphone.
        notes: Reference melody.
        playback_clock: Returns the current playback time in seconds.
        detector: Pitch detector to use; a default one is created.
        transposition: Semitone offset applied to target notes.
        tick_interval_ms: Pipeline period.
        live_update_ms: Minimum spacing of ``analysisUpdated``.
        history_flush_ms: Minimum spacing of ``historyFlushed``.
        on_pitch_cents: Tolerance for the on-pitch decision.
        attempts: Capture acquisition attempts.
        retry_delay: Back-off unit in seconds between attempts.
        clock: Millisecond clock used for throttling.
    """

    analysisUpdated = QtCore.Signal(object)
    historyFlushed = QtCore.Signal(list)
    noteHit = QtCore.Signal(str)
    stateChanged = QtCore.Signal(str, str)

    def __init__(
        self,
        source_factory: Optional[Callable[[], SampleSource]] = None,
        *,
        notes: Iterable[ReferenceNote] = (),
        playback_clock: Optional[Callable[[], float]] = None,
        detector: Optional[PitchDetector] = None,
        transposition: int = 0,
        tick_interval_ms: int = TICK_INTERVAL_MS,
        live_update_ms: int = LIVE_UPDATE_MS,
        history_flush_ms: int = HISTORY_FLUSH_MS,
        on_pitch_cents: float = ON_PITCH_CENTS,
        attempts: int = ACQUIRE_ATTEMPTS,
        retry_delay: float = ACQUIRE_RETRY_DELAY,
        clock: Optional[Callable[[], int]] = None,
        parent: Optional[QtCore.QObject] = None,
    ) -> None:
        super().__init__(parent)
        notes = list(notes)
        self._source_factory = source_factory or _default_source_factory
        self._playback_clock: Callable[[], float] = playback_clock or (lambda: 0.0)
        self._clock: Callable[[], int] = clock or _monotonic_ms
        self.detector = detector or PitchDetector()
        self.tracker = TargetNoteTracker(notes, transposition)
        self.arbiter = NoteHitArbiter()
        self.score = ScoreKeeper.for_notes(notes)
        self.on_pitch_cents = on_pitch_cents
        self.attempts = attempts
        self.retry_delay = retry_delay

        self._live = ThrottledChannel(live_update_ms)
        self._history_channel = ThrottledChannel(history_flush_ms)
        self._history: list[HistoryPoint] = []
        self.latest: Optional[VoiceAnalysisSnapshot] = None

        self._state: LifecycleState = Idle()
        self._worker: Optional[AcquisitionWorker] = None
        self._workers: set[AcquisitionWorker] = set()
        self._in_tick = False
        self._stop_requested = False

        self._timer = QtCore.QTimer(self)
        self._timer.setTimerType(QtCore.Qt.TimerType.PreciseTimer)
        self._timer.setInterval(tick_interval_ms)
        self._timer.timeout.connect(self._on_timeout)

    # ─── lifecycle ────────────────────────────────────────────────────
    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_active(self) -> bool:
        return isinstance(self._state, Active)

    def _set_state(self, new: LifecycleState) -> None:
        if not can_transition(self._state.kind, new.kind):
            raise RuntimeError(
                f"illegal capture transition {self._state.kind.value} -> {new.kind.value}"
            )
        self._state = new
        name, reason = describe(new)
        if reason:
            logger.error("capture %s: %s", name, reason)
        else:
            logger.info("capture %s", name)
        self.stateChanged.emit(name, reason)

    def start(self, blocking: bool = False) -> None:
        """Acquire the capture source and begin ticking.

        With ``blocking`` the acquisition runs on the calling thread;
        otherwise it runs on an :class:`AcquisitionWorker` and the tick
        starts once the worker reports success.  Calling ``start`` on a
        session that is acquiring or active does nothing; after
        ``Stopped`` or ``Failed`` it begins a fresh session.
        """
        kind = self._state.kind
        if kind in _ACQUIRING or kind is CaptureState.ACTIVE:
            return
        if kind in (CaptureState.STOPPED, CaptureState.FAILED):
            self._state = Idle()
            self.stateChanged.emit(*describe(self._state))
        self._set_state(RequestingPermission())

        if blocking:
            try:
                source = acquire_with_retry(
                    self._source_factory,
                    attempts=self.attempts,
                    base_delay=self.retry_delay,
                    on_attempt=self._on_attempt,
                )
            except CaptureAcquisitionError as exc:
                self._on_failed(str(exc))
                return
            self._on_acquired(source)
            return

        worker = AcquisitionWorker(
            self._source_factory,
            attempts=self.attempts,
            base_delay=self.retry_delay,
        )
        worker.attemptStarted.connect(self._on_worker_attempt)
        worker.acquired.connect(self._on_worker_acquired)
        worker.failed.connect(self._on_worker_failed)
        worker.finished.connect(self._on_worker_finished)
        # Held until ``finished`` so that no running thread is destroyed.
        self._workers.add(worker)
        self._worker = worker
        worker.start()

    def _is_current(self, worker: Optional[QtCore.QObject]) -> bool:
        return worker is not None and worker is self._worker

    @QtCore.Slot(int)
    def _on_worker_attempt(self, attempt: int) -> None:
        if self._is_current(self.sender()):
            self._on_attempt(attempt)

    @QtCore.Slot(object)
    def _on_worker_acquired(self, source: SampleSource) -> None:
        if self._is_current(self.sender()):
            self._on_acquired(source)
        else:
            logger.info("closing capture source from a superseded acquisition")
            source.close()

    @QtCore.Slot(str)
    def _on_worker_failed(self, reason: str) -> None:
        if self._is_current(self.sender()):
            self._on_failed(reason)

    @QtCore.Slot()
    def _on_worker_finished(self) -> None:
        worker = self.sender()
        if worker not in self._workers:
            return
        # ``finished`` is emitted just before the thread exits.
        worker.wait()
        self._workers.discard(worker)
        if worker is self._worker:
            self._worker = None
        worker.deleteLater()

    def _on_attempt(self, attempt: int) -> None:
        if self._state.kind in _ACQUIRING:
            self._set_state(Initializing(attempt))

    def _on_acquired(self, source: SampleSource) -> None:
        if self._state.kind not in _ACQUIRING:
            # Stopped while the device was being opened.
            source.close()
            return
        self._set_state(Active(source))
        self._live.reset()
        self._history_channel.reset()
        self._timer.start()

    def _on_failed(self, reason: str) -> None:
        if self._state.kind in _ACQUIRING:
            self._set_state(Failed(reason))

    def stop(self) -> None:
        """Stop ticking and release the capture source and buffers.

        Called from inside a tick, the release happens once the tick
        completes.
        """
        if self._in_tick:
            self._stop_requested = True
            return
        self._teardown()

    def _teardown(self) -> None:
        self._timer.stop()
        worker, self._worker = self._worker, None
        if worker is not None and not worker.wait(2000):
            # Its source is closed on arrival; the thread stays referenced
            # in ``_workers`` until it finishes.
            logger.warning("capture acquisition still running after stop")
        state = self._state
        try:
            if isinstance(state, Active):
                state.source.close()
        finally:
            self._history = []
            self._live.reset()
            self._history_channel.reset()
            self.tracker.reset()
            self.arbiter.clear()
            if can_transition(state.kind, CaptureState.STOPPED):
                self._set_state(Stopped())

    def __enter__(self) -> "VoiceAnalysisScheduler":
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()

    # ─── song control ─────────────────────────────────────────────────
    def set_notes(self, notes: Iterable[ReferenceNote]) -> None:
        notes = list(notes)
        self.tracker.set_notes(notes)
        self.arbiter.clear()
        self.score.reset(total_notes=len({n.id for n in notes}))

    def set_transposition(self, semitones: int) -> None:
        self.tracker.transposition = semitones

    def set_playback_clock(self, clock: Callable[[], float]) -> None:
        self._playback_clock = clock

    def restart(self) -> None:
        """Rewind to the start of the song, forgetting hits and history."""
        self.tracker.reset()
        self.arbiter.clear()
        self.score.reset()
        self._history = []

    def results(self, completed_at_ms: Optional[int] = None) -> SongResults:
        if completed_at_ms is None:
            completed_at_ms = int(time.time() * 1000)
        return self.score.results(completed_at_ms)

    # ─── tick ─────────────────────────────────────────────────────────
    @QtCore.Slot()
    def _on_timeout(self) -> None:
        self.tick()

    def tick(self, now_ms: Optional[int] = None) -> Optional[VoiceAnalysisSnapshot]:
        """Run the pipeline once.  Does nothing unless the session is active.

        Errors inside the pipeline are logged and the tick yields no
        snapshot; the next tick runs normally.
        """
        state = self._state
        if not isinstance(state, Active):
            return None
        now = self._clock() if now_ms is None else now_ms
        self._in_tick = True
        try:
            snapshot = self._run_pipeline(state.source, now)
        except Exception:
            logger.exception("voice analysis tick failed")
            snapshot = None
        finally:
            self._in_tick = False
        if self._stop_requested:
            self._stop_requested = False
            self._teardown()
        return snapshot

    def _run_pipeline(self, source: SampleSource, now_ms: int) -> VoiceAnalysisSnapshot:
        t = float(self._playback_clock())
        # An unusable playback time says nothing about which note is due,
        # so the cursor and the hit guard are left alone for this tick.
        clock_valid = math.isfinite(t)
        target = self.tracker.update(t) if clock_valid else None

        window = source.read_window()
        sample = self.detector.detect(window) if window is not None else None

        snapshot = classify(sample, target, self.on_pitch_cents)
        if clock_valid:
            hit = self.arbiter.observe(snapshot)
            if hit is not None:
                self.score.record_hit(hit)
                self.noteHit.emit(hit)
        if sample is None:
            snapshot = VoiceAnalysisSnapshot.empty()

        self.latest = snapshot
        if self._live.ready(now_ms):
            self._live.mark(now_ms)
            self.analysisUpdated.emit(snapshot)

        if sample is not None and clock_valid:
            self._history.append(
                HistoryPoint(
                    time=t,
                    midi_pitch=float(sample.midi_pitch),
                    is_on_pitch=snapshot.is_on_pitch,
                )
            )
        if self._history_channel.ready(now_ms):
            self._history_channel.mark(now_ms)
            if self._history:
                batch, self._history = self._history, []
                self.historyFlushed.emit(batch)
        return snapshot


__all__ = ["ThrottledChannel", "AcquisitionWorker", "VoiceAnalysisScheduler"]
