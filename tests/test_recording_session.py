"""Tests for the RecordingSession state machine, timers and generation tokens."""

from __future__ import annotations

import time
import wave
from datetime import datetime, timezone

import numpy as np
import pytest

from core.app_config import AppConfig
from core.recording_session import (
    CaptureState,
    RecordingSession,
    StopReason,
    artifact_name,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: int):
        self.now += ms / 1000.0


class FakeTimer:
    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = tuple(args or ())
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def is_alive(self) -> bool:
        return self.started and not self.cancelled and not self.fired

    def fire(self):
        self.fired = True
        self.function(*self.args)


class TimerLog:
    def __init__(self):
        self.timers: list[FakeTimer] = []

    def __call__(self, interval, function, args=None, kwargs=None) -> FakeTimer:
        timer = FakeTimer(interval, function, args=args, kwargs=kwargs)
        self.timers.append(timer)
        return timer

    def by_interval(self, seconds: float) -> list[FakeTimer]:
        return [t for t in self.timers if t.interval == pytest.approx(seconds)]


class FakeSource:
    def __init__(self, fail_on_start: bool = False):
        self.fail_on_start = fail_on_start
        self.on_chunk = None
        self.on_error = None
        self.started = 0
        self.stopped = 0

    def start(self, on_chunk, on_error=None):
        if self.fail_on_start:
            raise OSError("no default input device")
        self.started += 1
        self.on_chunk = on_chunk
        self.on_error = on_error

    def stop(self):
        self.stopped += 1

    def push(self, chunk: bytes):
        self.on_chunk(chunk)


def _tone(amplitude: int, samples: int = 1600) -> bytes:
    return np.full(samples, amplitude, dtype="<i2").tobytes()


@pytest.fixture
def harness(tmp_path):
    class Harness:
        pass

    h = Harness()
    h.tmp_path = tmp_path
    h.config = AppConfig(temp_dir=str(tmp_path / "temp"), recordings_dir=str(tmp_path / "recordings"))
    h.clock = FakeClock()
    h.timers = TimerLog()
    h.sources: list[FakeSource] = []
    h.completed = []
    h.rejected = []
    h.levels = []
    h.states = []

    def source_factory():
        source = FakeSource()
        h.sources.append(source)
        return source

    h.session = RecordingSession(
        h.config,
        on_completed=h.completed.append,
        on_rejected=h.rejected.append,
        on_level=h.levels.append,
        on_state_changed=h.states.append,
        source_factory=source_factory,
        clock=h.clock,
        timer_factory=h.timers,
    )
    return h


def test_artifact_name_replaces_colons_and_dots():
    moment = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)
    assert artifact_name(moment) == "recording_2024-01-02T03-04-05-678Z.wav"


class TestStart:
    def test_start_activates_and_arms_both_timers(self, harness):
        assert harness.session.start() is True

        assert harness.session.state is CaptureState.ACTIVE
        assert len(harness.sources) == 1
        assert harness.sources[0].started == 1
        assert len(harness.timers.by_interval(5.0)) == 1
        assert len(harness.timers.by_interval(10.0)) == 1
        assert all(t.started and t.daemon for t in harness.timers.timers)
        assert harness.session.session.artifact_path.exists()

    def test_second_start_is_rejected_without_side_effects(self, harness):
        assert harness.session.start() is True
        first = harness.session.session

        assert harness.session.start() is False

        assert harness.session.session is first
        assert harness.session.generation == 1
        assert len(harness.sources) == 1
        assert len(harness.timers.timers) == 2
        assert harness.states.count("ACTIVE") == 1

    def test_manual_mode_only_arms_safety_ceiling(self, harness):
        harness.session.start(auto_stop=False)
        assert [t.interval for t in harness.timers.timers] == [pytest.approx(10.0)]

    def test_capture_failure_rejects_and_allows_restart(self, tmp_path):
        config = AppConfig(temp_dir=str(tmp_path / "temp"))
        sources = [FakeSource(fail_on_start=True), FakeSource()]
        session = RecordingSession(
            config,
            source_factory=lambda: sources.pop(0),
            clock=FakeClock(),
            timer_factory=TimerLog(),
        )

        with pytest.raises(OSError):
            session.start()
        failed = session.session
        assert failed.state is CaptureState.REJECTED
        assert not failed.artifact_path.exists()

        assert session.start() is True
        assert session.state is CaptureState.ACTIVE

    def test_source_factory_failure_leaves_no_artifact(self, tmp_path):
        config = AppConfig(temp_dir=str(tmp_path / "temp"))
        factories = [OSError("PortAudio library not found"), FakeSource()]

        def source_factory():
            outcome = factories.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        session = RecordingSession(
            config,
            source_factory=source_factory,
            clock=FakeClock(),
            timer_factory=TimerLog(),
        )

        with pytest.raises(OSError, match="PortAudio"):
            session.start()
        temp_dir = tmp_path / "temp"
        assert not temp_dir.exists() or list(temp_dir.iterdir()) == []
        assert session.state is CaptureState.IDLE

        assert session.start() is True
        assert session.state is CaptureState.ACTIVE


class TestChunks:
    def test_chunks_accumulate_and_publish_level(self, harness):
        harness.session.start()
        harness.sources[0].push(_tone(16384))

        assert harness.session.current_level == pytest.approx(0.5)
        assert harness.levels == [pytest.approx(0.5)]
        assert harness.session.session.byte_count == 3200
        assert harness.session.session.peak_level == pytest.approx(0.5)

    def test_chunk_after_stop_is_discarded(self, harness):
        harness.session.start()
        source = harness.sources[0]
        source.push(_tone(1000))
        harness.clock.advance_ms(1000)
        harness.session.stop()

        source.push(_tone(1000))

        assert harness.session.dropped_chunks == 1
        assert harness.session.session.byte_count == 3200

    def test_chunks_land_in_wav_artifact(self, harness):
        harness.session.start()
        harness.sources[0].push(_tone(500, 8000))
        harness.clock.advance_ms(1000)
        session = harness.session.stop()

        with wave.open(str(session.artifact_path), "rb") as wf:
            assert wf.getframerate() == 16000
            assert wf.getnchannels() == 1
            assert wf.getsampwidth() == 2
            assert wf.getnframes() == 8000


class TestStop:
    def test_stop_below_minimum_is_rejected(self, harness):
        harness.session.start()
        harness.sources[0].push(_tone(1000))
        harness.clock.advance_ms(300)

        session = harness.session.stop()

        assert session.state is CaptureState.REJECTED
        assert session.duration_ms == 300
        assert session.reject_reason == "too short"
        assert session.chunks == []
        assert not session.artifact_path.exists()
        assert harness.rejected == [session]
        assert harness.timers.by_interval(0.5) == []
        assert harness.completed == []

    def test_standard_timer_completes_at_exactly_five_seconds(self, harness):
        harness.session.start()
        harness.sources[0].push(_tone(1000, 16000))
        harness.clock.advance_ms(5000)

        harness.timers.by_interval(5.0)[0].fire()

        session = harness.session.session
        assert session.state is CaptureState.COMPLETED
        assert session.duration_ms == 5000
        assert session.stop_reason is StopReason.STANDARD_TIMEOUT
        assert harness.sources[0].stopped == 1
        assert harness.timers.by_interval(10.0)[0].cancelled
        assert harness.completed == []

        harness.timers.by_interval(0.5)[0].fire()

        assert len(harness.completed) == 1
        job = harness.completed[0]
        assert job.duration_ms == 5000
        assert job.source_file == session.artifact_path
        assert job.size_bytes == 32000 + 44
        assert session.chunks == []

    def test_stop_is_idempotent(self, harness):
        harness.session.start()
        harness.clock.advance_ms(2000)
        assert harness.session.stop() is not None
        assert harness.session.stop() is None
        assert len(harness.timers.by_interval(0.5)) == 1

    def test_stop_when_idle_is_noop(self, harness):
        assert harness.session.stop() is None
        assert harness.states == []

    def test_stale_timer_does_not_stop_newer_session(self, harness):
        harness.session.start()
        old_standard = harness.timers.by_interval(5.0)[0]
        harness.clock.advance_ms(1000)
        harness.session.stop()
        harness.session.start()

        old_standard.fire()

        assert harness.session.generation == 2
        assert harness.session.state is CaptureState.ACTIVE

    def test_safety_ceiling_stops_when_standard_timer_missed(self, harness):
        harness.session.start()
        harness.clock.advance_ms(10000)

        harness.timers.by_interval(10.0)[0].fire()

        session = harness.session.session
        assert session.state is CaptureState.COMPLETED
        assert session.stop_reason is StopReason.SAFETY_TIMEOUT

    def test_device_error_takes_normal_stop_path(self, harness):
        harness.session.start()
        source = harness.sources[0]
        source.push(_tone(2000, 8000))
        harness.clock.advance_ms(1500)

        source.on_error(RuntimeError("input overflow"))

        deadline = time.monotonic() + 2.0
        while harness.session.state in (CaptureState.ACTIVE, CaptureState.STOPPING) and time.monotonic() < deadline:
            time.sleep(0.01)
        session = harness.session.session
        assert session.state is CaptureState.COMPLETED
        assert session.stop_reason is StopReason.DEVICE_ERROR
        assert session.duration_ms == 1500


class TestAbort:
    def test_abort_discards_active_capture(self, harness):
        harness.session.start()
        harness.sources[0].push(_tone(1000))
        harness.clock.advance_ms(4000)

        session = harness.session.abort()

        assert session.state is CaptureState.REJECTED
        assert session.reject_reason == "interrupted"
        assert not session.artifact_path.exists()
        assert harness.sources[0].stopped == 1
        assert all(t.cancelled for t in harness.timers.timers)
        assert harness.timers.by_interval(0.5) == []

    def test_abort_cancels_pending_settle_and_removes_artifact(self, harness):
        harness.session.start()
        harness.sources[0].push(_tone(2000, 8000))
        harness.clock.advance_ms(5000)
        stopped = harness.session.stop()
        settle = harness.timers.by_interval(0.5)[0]
        assert stopped.artifact_path.exists()

        assert harness.session.abort() is None

        assert settle.cancelled
        assert not stopped.artifact_path.exists()
        assert list((harness.tmp_path / "temp").glob("*.wav")) == []
        assert stopped.state is CaptureState.REJECTED
        assert harness.rejected[-1] is stopped
        assert stopped.reject_reason == "interrupted"
        assert harness.completed == []

    def test_settle_timer_firing_after_abort_delivers_nothing(self, harness):
        harness.session.start()
        harness.clock.advance_ms(5000)
        harness.session.stop()
        settle = harness.timers.by_interval(0.5)[0]
        harness.session.abort()

        settle.fire()

        assert harness.completed == []

    def test_abort_during_stop_is_not_delivered(self, harness):
        def abort_on_completed(state_name):
            harness.states.append(state_name)
            if state_name == "COMPLETED":
                harness.session.abort()

        harness.session._on_state_changed = abort_on_completed
        harness.session.start()
        harness.sources[0].push(_tone(2000, 8000))
        harness.clock.advance_ms(5000)

        stopped = harness.session.stop()

        assert harness.timers.by_interval(0.5) == []
        assert stopped.state is CaptureState.REJECTED
        assert stopped.reject_reason == "interrupted"
        assert not stopped.artifact_path.exists()
        assert harness.completed == []
        assert harness.rejected == [stopped]

    def test_start_after_abort_delivers_again(self, harness):
        harness.session.abort()
        harness.session.start()
        harness.clock.advance_ms(5000)
        harness.session.stop()

        harness.timers.by_interval(0.5)[0].fire()

        assert len(harness.completed) == 1
