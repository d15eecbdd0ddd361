"""Recording session state machine, one bounded capture cycle at a time.

States: IDLE -> ACTIVE -> STOPPING -> COMPLETED | REJECTED.

Every stop trigger (operator command, standard timer, safety ceiling, capture
device error) goes through the same guarded ``stop`` transition. Timers carry
the generation token of the session that armed them and do nothing once a
newer session exists.
"""

from __future__ import annotations

import functools
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional
from uuid import uuid4

from core.delivery import DeliveryJob
from core.level_meter import compute_level
from core.wav_sink import WavFileSink

if TYPE_CHECKING:
    from core.app_config import AppConfig

logger = logging.getLogger(__name__)


class CaptureState(Enum):
    IDLE = auto()
    ACTIVE = auto()
    STOPPING = auto()
    COMPLETED = auto()
    REJECTED = auto()


class StopReason(Enum):
    COMMAND = auto()
    STANDARD_TIMEOUT = auto()
    SAFETY_TIMEOUT = auto()
    DEVICE_ERROR = auto()
    INTERRUPTED = auto()


def artifact_name(moment: datetime) -> str:
    """``recording_<ISO8601>.wav`` with ':' and '.' replaced by '-'."""
    utc = moment.astimezone(timezone.utc)
    stamp = utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"
    return "recording_" + stamp.replace(":", "-").replace(".", "-") + ".wav"


@dataclass
class CaptureSession:
    id: str
    generation: int
    started_at: datetime
    artifact_path: Path
    state: CaptureState = CaptureState.IDLE
    stopped_at: Optional[datetime] = None
    chunks: list[bytes] = field(default_factory=list, repr=False)
    byte_count: int = 0
    current_level: float = 0.0
    peak_level: float = 0.0
    duration_ms: int = 0
    stop_reason: Optional[StopReason] = None
    reject_reason: str = ""


def _default_source_factory(config: "AppConfig"):
    from core.audio_recorder import AudioRecorder
    return AudioRecorder(sample_rate=config.sample_rate, channels=config.channels)


class RecordingSession:
    """Drives capture cycles and hands completed ones to ``on_completed``.

    Callbacks are invoked from background threads (audio thread, timers).
    """

    def __init__(
        self,
        config: "AppConfig",
        on_completed: Optional[Callable[[DeliveryJob], None]] = None,
        on_rejected: Optional[Callable[[CaptureSession], None]] = None,
        on_level: Optional[Callable[[float], None]] = None,
        on_state_changed: Optional[Callable[[str], None]] = None,
        source_factory: Optional[Callable[[], object]] = None,
        sink_factory=WavFileSink,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        timer_factory=threading.Timer,
    ):
        self.config = config
        self._on_completed = on_completed
        self._on_rejected = on_rejected
        self._on_level = on_level
        self._on_state_changed = on_state_changed
        self._source_factory = source_factory or functools.partial(_default_source_factory, config)
        self._sink_factory = sink_factory
        self._clock = clock
        self._wall_clock = wall_clock
        self._timer_factory = timer_factory

        self._lock = threading.Lock()
        self._generation = 0
        self._session: Optional[CaptureSession] = None
        self._source = None
        self._sink: Optional[WavFileSink] = None
        self._started_mono = 0.0
        self._stop_timers: list = []
        self._settle_timers: list = []  # (timer, session) pairs awaiting delivery
        self._interrupted_through = 0
        self._current_level = 0.0
        self.dropped_chunks = 0

    # -- Observation --

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def session(self) -> Optional[CaptureSession]:
        """The current (or most recent) capture session."""
        return self._session

    @property
    def state(self) -> CaptureState:
        session = self._session
        return session.state if session else CaptureState.IDLE

    @property
    def is_active(self) -> bool:
        return self.state is CaptureState.ACTIVE

    @property
    def current_level(self) -> float:
        return self._current_level

    def _set_state(self, session: CaptureSession, new_state: CaptureState):
        session.state = new_state
        if self._on_state_changed:
            self._on_state_changed(new_state.name)

    # -- Transitions --

    def start(self, auto_stop: bool = True) -> bool:
        """Begin a capture. Returns False if one is already running.

        With ``auto_stop`` the standard window timer is armed; the safety
        ceiling is always armed.
        """
        with self._lock:
            current = self._session
            if current is not None and current.state in (CaptureState.ACTIVE, CaptureState.STOPPING):
                logger.warning("Already recording (session %s); start ignored", current.id)
                return False
            self._generation += 1
            generation = self._generation
            started_at = self._wall_clock()
            session = CaptureSession(
                id=uuid4().hex[:8],
                generation=generation,
                started_at=started_at,
                artifact_path=Path(self.config.temp_dir) / artifact_name(started_at),
            )
            # Build the source before the sink creates the file.
            source = self._source_factory()
            sink = self._sink_factory(
                session.artifact_path,
                sample_rate=self.config.sample_rate,
                channels=self.config.channels,
            ).open()
            self._session = session
            self._sink = sink
            self._source = source
            self._current_level = 0.0
            self._started_mono = self._clock()
            self._set_state(session, CaptureState.ACTIVE)

        try:
            source.start(
                on_chunk=functools.partial(self._handle_chunk, generation),
                on_error=functools.partial(self._handle_source_error, generation),
            )
        except Exception as e:
            logger.error("Failed to start audio capture: %s", e)
            self._finish_rejected(self._halt(generation, StopReason.DEVICE_ERROR), f"capture failed: {e}")
            raise

        timers = []
        if auto_stop:
            timers.append(self._arm(self.config.standard_duration_ms, self._on_stop_timer,
                                    generation, StopReason.STANDARD_TIMEOUT))
        timers.append(self._arm(self.config.max_duration_ms, self._on_stop_timer,
                                generation, StopReason.SAFETY_TIMEOUT))
        with self._lock:
            if self._generation == generation and session.state is CaptureState.ACTIVE:
                self._stop_timers = timers
                timers = []
        for timer in timers:
            timer.cancel()
        logger.info("Recording started (session %s, %s)", session.id, session.artifact_path.name)
        return True

    def stop(self, reason: StopReason = StopReason.COMMAND, generation: int | None = None) -> Optional[CaptureSession]:
        """Stop the active capture and validate it. No-op unless ACTIVE."""
        session = self._halt(generation, reason)
        if session is None:
            return None
        if session.duration_ms < self.config.min_duration_ms:
            logger.warning(
                "Recording too short (%dms). Minimum: %dms",
                session.duration_ms, self.config.min_duration_ms,
            )
            self._finish_rejected(session, "too short")
            return session

        self._set_state(session, CaptureState.COMPLETED)
        if session.peak_level < self.config.silence_threshold:
            logger.warning("Recording %s looks silent (peak level %.3f)", session.id, session.peak_level)
        logger.info(
            "Recording stopped (%s): %dms, %d bytes captured",
            reason.name.lower(), session.duration_ms, session.byte_count,
        )
        with self._lock:
            interrupted = session.generation <= self._interrupted_through
            if not interrupted:
                # Armed under the lock so _on_settled always finds its entry.
                timer = self._arm(self.config.settle_delay_ms, self._on_settled, session)
                self._settle_timers.append((timer, session))
        if interrupted:
            logger.info("Recording %s interrupted before delivery", session.id)
            self._finish_rejected(session, "interrupted")
        return session

    def abort(self) -> Optional[CaptureSession]:
        """Operator interrupt: stop capture and timers, never deliver.

        Completed clips still waiting for their settle timer are rejected
        and their artifacts removed, as is any clip a concurrent stop is
        finishing right now.
        """
        with self._lock:
            self._interrupted_through = self._generation
            pending = self._settle_timers
            self._settle_timers = []
        for timer, settled in pending:
            timer.cancel()
            self._finish_rejected(settled, "interrupted")
        session = self._halt(None, StopReason.INTERRUPTED)
        if session is not None:
            self._finish_rejected(session, "interrupted")
        return session

    # -- Internals --

    def _arm(self, delay_ms: int, fn, *args):
        timer = self._timer_factory(max(0, delay_ms) / 1000.0, fn, args=args)
        timer.daemon = True
        timer.start()
        return timer

    def _halt(self, generation: int | None, reason: StopReason) -> Optional[CaptureSession]:
        """ACTIVE -> STOPPING, then tear down capture. Returns the session or None."""
        with self._lock:
            session = self._session
            if session is None or session.state is not CaptureState.ACTIVE:
                return None
            if generation is not None and generation != session.generation:
                return None
            self._set_state(session, CaptureState.STOPPING)
            elapsed = self._clock() - self._started_mono
            timers, self._stop_timers = self._stop_timers, []
            source, self._source = self._source, None
            sink, self._sink = self._sink, None

        for timer in timers:
            timer.cancel()
        if source is not None:
            try:
                source.stop()
            except Exception as e:
                logger.error("Failed to stop audio capture cleanly: %s", e)
        if sink is not None:
            sink.close()

        session.stopped_at = self._wall_clock()
        session.duration_ms = int(round(elapsed * 1000))
        session.stop_reason = reason
        self._current_level = 0.0
        return session

    def _finish_rejected(self, session: Optional[CaptureSession], reason: str):
        if session is None:
            return
        session.chunks = []
        session.reject_reason = reason
        try:
            session.artifact_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove rejected artifact %s: %s", session.artifact_path, e)
        self._set_state(session, CaptureState.REJECTED)
        if self._on_rejected:
            self._on_rejected(session)

    def _handle_chunk(self, generation: int, chunk: bytes):
        level = compute_level(chunk)
        with self._lock:
            session = self._session
            if session is None or session.generation != generation or session.state is not CaptureState.ACTIVE:
                self.dropped_chunks += 1
                return
            session.chunks.append(chunk)
            session.byte_count += len(chunk)
            session.current_level = level
            session.peak_level = max(session.peak_level, level)
            if self._sink is not None:
                self._sink.write(chunk)
            self._current_level = level
        if self._on_level:
            self._on_level(level)

    def _handle_source_error(self, generation: int, error: Exception):
        logger.error("Recording error: %s", error)
        # Runs on the audio thread; the stream cannot be stopped from inside itself.
        threading.Thread(
            target=self.stop,
            args=(StopReason.DEVICE_ERROR, generation),
            daemon=True,
        ).start()

    def _on_stop_timer(self, generation: int, reason: StopReason):
        if generation != self._generation:
            logger.debug("Ignoring stale %s timer (generation %d)", reason.name, generation)
            return
        if self.stop(reason, generation=generation) is not None and reason is StopReason.SAFETY_TIMEOUT:
            logger.warning("Max recording duration reached (safety timeout)")

    def _on_settled(self, session: CaptureSession):
        with self._lock:
            remaining = [entry for entry in self._settle_timers if entry[1] is not session]
            claimed = len(remaining) != len(self._settle_timers)
            self._settle_timers = remaining
        if not claimed:
            # abort() already took this clip.
            return
        job = DeliveryJob.for_artifact(session.artifact_path, session.duration_ms)
        session.chunks = []
        if self._on_completed:
            self._on_completed(job)
