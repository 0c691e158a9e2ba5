"""Tests for :class:`voicecoach.scheduler.VoiceAnalysisScheduler`."""

from __future__ import annotations

import time
from typing import Optional

import numpy as np
import pytest
from PySide6 import QtCore

from voicecoach.lifecycle import Active, Failed, Stopped
from voicecoach.models import ReferenceNote, SampleWindow
from voicecoach.scheduler import ThrottledChannel, VoiceAnalysisScheduler

SR = 44100
N = 4096


class ToneSource:
    """Capture source producing a steady sine, or silence for ``freq=None``."""

    sample_rate = SR

    def __init__(self, freq: Optional[float] = 220.0) -> None:
        self.freq = freq
        self.opened = False
        self.closed = False
        self.reads = 0

    def open(self) -> None:
        self.opened = True

    def read_window(self) -> Optional[SampleWindow]:
        self.reads += 1
        if self.freq is None:
            return SampleWindow(np.zeros(N, dtype=np.float32), SR)
        t = np.arange(N) / SR
        return SampleWindow((0.5 * np.sin(2 * np.pi * self.freq * t)).astype(np.float32), SR)

    def close(self) -> None:
        self.closed = True


class PlaybackClock:
    def __init__(self) -> None:
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


@pytest.fixture
def make_scheduler(qapp):
    created: list[VoiceAnalysisScheduler] = []

    def build(source: Optional[ToneSource] = None, **kwargs) -> VoiceAnalysisScheduler:
        source = source or ToneSource()
        kwargs.setdefault("retry_delay", 0.0)
        scheduler = VoiceAnalysisScheduler(lambda: source, **kwargs)
        created.append(scheduler)
        return scheduler

    yield build
    for scheduler in created:
        scheduler.stop()


def _melody() -> list[ReferenceNote]:
    # A3 is 220 Hz
    return [
        ReferenceNote.from_midi("a", 0.0, 1.0, 57),
        ReferenceNote.from_midi("b", 1.0, 1.0, 60),
    ]


def test_throttled_channel() -> None:
    channel = ThrottledChannel(100)
    assert channel.ready(5)
    channel.mark(5)
    assert not channel.ready(104)
    assert channel.ready(105)
    channel.reset()
    assert channel.ready(0)


def test_blocking_start_reaches_active(make_scheduler) -> None:
    source = ToneSource()
    scheduler = make_scheduler(source)
    states: list[tuple[str, str]] = []
    scheduler.stateChanged.connect(lambda name, reason: states.append((name, reason)))

    scheduler.start(blocking=True)

    assert [name for name, _ in states] == ["requesting_permission", "initializing", "active"]
    assert scheduler.is_active
    assert isinstance(scheduler.state, Active)
    assert scheduler.state.source is source
    assert source.opened


def test_start_while_active_is_ignored(make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.start(blocking=True)
    states: list[str] = []
    scheduler.stateChanged.connect(lambda name, _reason: states.append(name))
    scheduler.start(blocking=True)
    assert states == []
    assert scheduler.is_active


def test_acquisition_failure_reports_reason(make_scheduler) -> None:
    attempts = []

    def factory():
        attempts.append(1)
        raise OSError("no input device")

    scheduler = VoiceAnalysisScheduler(factory, retry_delay=0.0)
    states: list[tuple[str, str]] = []
    scheduler.stateChanged.connect(lambda name, reason: states.append((name, reason)))

    scheduler.start(blocking=True)

    assert len(attempts) == 3
    assert [name for name, _ in states] == [
        "requesting_permission",
        "initializing",
        "initializing",
        "initializing",
        "failed",
    ]
    reason = states[-1][1]
    assert "Failed to access microphone" in reason
    assert "no input device" in reason
    assert isinstance(scheduler.state, Failed)
    assert not scheduler.is_active
    assert scheduler.tick(0) is None


def test_retry_succeeds_on_second_attempt(make_scheduler) -> None:
    source = ToneSource()
    calls = []

    def factory():
        calls.append(1)
        if len(calls) == 1:
            raise OSError("busy")
        return source

    scheduler = VoiceAnalysisScheduler(factory, retry_delay=0.0)
    scheduler.start(blocking=True)
    assert scheduler.is_active
    assert len(calls) == 2
    scheduler.stop()


def test_tick_outside_active_does_nothing(make_scheduler) -> None:
    source = ToneSource()
    scheduler = make_scheduler(source)
    assert scheduler.tick(0) is None
    assert source.reads == 0


def test_tick_scores_against_target(make_scheduler) -> None:
    clock = PlaybackClock()
    scheduler = make_scheduler(ToneSource(220.0), notes=_melody(), playback_clock=clock)
    hits: list[str] = []
    scheduler.noteHit.connect(hits.append)
    scheduler.start(blocking=True)

    clock.t = 0.5
    snapshot = scheduler.tick(0)
    assert snapshot is not None
    assert snapshot.target_note.id == "a"
    assert snapshot.current_pitch.note_name == "A3"
    assert snapshot.is_on_pitch
    assert abs(snapshot.deviation_cents) < 10
    assert scheduler.latest is snapshot

    for i in range(1, 10):
        scheduler.tick(i * 80)
    assert hits == ["a"]

    clock.t = 1.5
    snapshot = scheduler.tick(1000)
    assert snapshot.target_note.id == "b"
    assert not snapshot.is_on_pitch
    assert hits == ["a"]

    results = scheduler.results(completed_at_ms=42)
    assert results.total_notes == 2
    assert results.correct_notes == 1
    assert results.score_percentage == pytest.approx(50.0)
    assert results.completed_at_ms == 42


def test_rewind_allows_a_second_hit(make_scheduler) -> None:
    clock = PlaybackClock()
    scheduler = make_scheduler(ToneSource(220.0), notes=_melody(), playback_clock=clock)
    hits: list[str] = []
    scheduler.noteHit.connect(hits.append)
    scheduler.start(blocking=True)

    clock.t = 0.5
    scheduler.tick(0)
    clock.t = 5.0
    assert scheduler.tick(80).target_note is None
    clock.t = 0.5
    scheduler.tick(160)
    assert hits == ["a", "a"]
    assert scheduler.results(0).correct_notes == 1


def test_transposition_moves_target(make_scheduler) -> None:
    clock = PlaybackClock()
    clock.t = 0.5
    scheduler = make_scheduler(
        ToneSource(220.0 * 2 ** (2 / 12)), notes=_melody(), playback_clock=clock
    )
    scheduler.start(blocking=True)
    assert not scheduler.tick(0).is_on_pitch

    scheduler.set_transposition(2)
    snapshot = scheduler.tick(80)
    assert snapshot.target_note.midi_pitch == 59
    assert snapshot.target_note.id == "a"
    assert snapshot.is_on_pitch

    with pytest.raises(ValueError):
        scheduler.set_transposition(20)


def test_silence_produces_no_pitch_or_history(make_scheduler) -> None:
    clock = PlaybackClock()
    clock.t = 0.5
    scheduler = make_scheduler(ToneSource(None), notes=_melody(), playback_clock=clock)
    batches: list[list] = []
    scheduler.historyFlushed.connect(batches.append)
    scheduler.start(blocking=True)

    snapshot = scheduler.tick(0)
    assert snapshot.current_pitch is None
    assert snapshot.target_note is None
    assert snapshot.accuracy == 0.0
    assert not snapshot.is_on_pitch
    assert batches == []


def test_updates_are_throttled(make_scheduler) -> None:
    clock = PlaybackClock()
    scheduler = make_scheduler(ToneSource(220.0), notes=_melody(), playback_clock=clock)
    live: list = []
    batches: list[list] = []
    scheduler.analysisUpdated.connect(live.append)
    scheduler.historyFlushed.connect(batches.append)
    scheduler.start(blocking=True)

    for i in range(200):
        clock.t = i * 0.08
        scheduler.tick(i * 80)

    # 16 s of ticks: at most one live update per 66 ms, one flush per 100 ms
    assert len(live) <= 16000 // 66 + 1
    assert len(batches) <= 16000 // 100
    points = [p for batch in batches for p in batch]
    # the final tick's point is still buffered
    assert len(points) == 199
    times = [p.time for p in points]
    assert times == sorted(times)
    assert all(p.midi_pitch == 57 for p in points)
    assert points[0].is_on_pitch


def test_live_channel_drops_intermediate_ticks(make_scheduler) -> None:
    scheduler = make_scheduler(ToneSource(220.0))
    live: list = []
    scheduler.analysisUpdated.connect(live.append)
    scheduler.start(blocking=True)
    for now in (0, 20, 40, 60, 70, 100):
        scheduler.tick(now)
    assert len(live) == 2


def test_stop_releases_source(make_scheduler) -> None:
    source = ToneSource()
    scheduler = make_scheduler(source)
    states: list[str] = []
    scheduler.stateChanged.connect(lambda name, _reason: states.append(name))
    scheduler.start(blocking=True)

    scheduler.stop()

    assert source.closed
    assert isinstance(scheduler.state, Stopped)
    assert states[-1] == "stopped"
    reads = source.reads
    assert scheduler.tick(0) is None
    assert source.reads == reads

    scheduler.stop()
    assert states.count("stopped") == 1


def test_stop_discards_pending_history(make_scheduler) -> None:
    clock = PlaybackClock()
    clock.t = 0.5
    scheduler = make_scheduler(ToneSource(220.0), notes=_melody(), playback_clock=clock)
    batches: list[list] = []
    scheduler.historyFlushed.connect(batches.append)
    scheduler.start(blocking=True)
    scheduler.tick(0)
    scheduler.tick(10)
    scheduler.stop()
    assert [len(b) for b in batches] == [1]


def test_stop_inside_tick_is_deferred(make_scheduler) -> None:
    source = ToneSource()
    scheduler = make_scheduler(source)
    seen: list[bool] = []

    def on_update(_snapshot) -> None:
        scheduler.stop()
        seen.append(scheduler.is_active)

    scheduler.analysisUpdated.connect(on_update)
    scheduler.start(blocking=True)

    snapshot = scheduler.tick(0)

    assert snapshot is not None
    assert seen == [True]
    assert source.closed
    assert isinstance(scheduler.state, Stopped)


def test_tick_errors_are_contained(make_scheduler) -> None:
    source = ToneSource()
    scheduler = make_scheduler(source)
    scheduler.start(blocking=True)

    original = source.read_window
    source.read_window = lambda: (_ for _ in ()).throw(OSError("overflow"))
    assert scheduler.tick(0) is None
    assert scheduler.is_active

    source.read_window = original
    assert scheduler.tick(80) is not None


def test_restart_after_stop_begins_fresh_session(make_scheduler) -> None:
    scheduler = make_scheduler()
    scheduler.start(blocking=True)
    scheduler.stop()
    states: list[str] = []
    scheduler.stateChanged.connect(lambda name, _reason: states.append(name))

    scheduler.start(blocking=True)

    assert states == ["idle", "requesting_permission", "initializing", "active"]
    assert scheduler.is_active


def test_context_manager_stops(make_scheduler) -> None:
    source = ToneSource()
    scheduler = make_scheduler(source)
    with scheduler:
        scheduler.start(blocking=True)
        assert scheduler.is_active
    assert source.closed


def test_set_notes_resets_score(make_scheduler) -> None:
    scheduler = make_scheduler(notes=_melody())
    scheduler.score.record_hit("a")
    scheduler.set_notes([ReferenceNote.from_midi("x", 0.0, 1.0, 57)])
    results = scheduler.results(0)
    assert results.total_notes == 1
    assert results.correct_notes == 0


def test_worker_acquires_in_background(make_scheduler) -> None:
    source = ToneSource()
    scheduler = make_scheduler(source)
    states: list[str] = []
    loop = QtCore.QEventLoop()

    def on_state(name: str, _reason: str) -> None:
        states.append(name)
        if name in ("active", "failed"):
            loop.quit()

    scheduler.stateChanged.connect(on_state)
    QtCore.QTimer.singleShot(5000, loop.quit)
    scheduler.start()
    loop.exec()

    assert states == ["requesting_permission", "initializing", "active"]
    assert source.opened
    scheduler.stop()
    assert source.closed


class SequenceClock:
    """Playback clock that steps through a fixed list of times."""

    def __init__(self, times: list[float]) -> None:
        self.times = list(times)

    def __call__(self) -> float:
        return self.times.pop(0) if len(self.times) > 1 else self.times[0]


def test_invalid_playback_time_keeps_hit_guard(make_scheduler) -> None:
    clock = SequenceClock([0.5, 0.5, float("nan"), 0.6])
    scheduler = make_scheduler(ToneSource(220.0), notes=_melody(), playback_clock=clock)
    hits: list[str] = []
    batches: list[list] = []
    scheduler.noteHit.connect(hits.append)
    scheduler.historyFlushed.connect(batches.append)
    scheduler.start(blocking=True)

    for i in range(4):
        scheduler.tick(i * 200)

    assert hits == ["a"]
    assert scheduler.tracker.cursor == 0
    times = [p.time for batch in batches for p in batch]
    assert times == [0.5, 0.5, 0.6]


def test_silent_breath_inside_note_does_not_rehit(make_scheduler) -> None:
    clock = PlaybackClock()
    clock.t = 0.5
    source = ToneSource(220.0)
    scheduler = make_scheduler(source, notes=_melody(), playback_clock=clock)
    hits: list[str] = []
    scheduler.noteHit.connect(hits.append)
    scheduler.start(blocking=True)

    scheduler.tick(0)
    source.freq = None
    assert scheduler.tick(80).target_note is None
    source.freq = 220.0
    scheduler.tick(160)

    assert hits == ["a"]


def test_stop_and_restart_during_slow_acquisition(make_scheduler) -> None:
    """A late source from an abandoned acquisition is closed, not adopted."""
    slow, fast = ToneSource(), ToneSource()
    calls: list[ToneSource] = []

    def factory() -> ToneSource:
        if not calls:
            calls.append(slow)
            time.sleep(2.5)
            return slow
        calls.append(fast)
        return fast

    scheduler = VoiceAnalysisScheduler(factory, retry_delay=0.0)
    loop = QtCore.QEventLoop()

    def settled() -> None:
        if scheduler.is_active and slow.closed and not scheduler._workers:
            loop.quit()

    poll = QtCore.QTimer()
    poll.timeout.connect(settled)
    poll.start(20)
    QtCore.QTimer.singleShot(10000, loop.quit)

    scheduler.start()
    scheduler.stop()
    scheduler.start()
    loop.exec()
    poll.stop()

    assert scheduler.is_active
    assert scheduler.state.source is fast
    assert slow.closed
    assert not fast.closed
    assert not scheduler._workers

    scheduler.stop()
    assert fast.closed
