"""
Recording orchestrator for Resilient Stream Recorder.

Drives one recording session through its phases:

    idle -> capturing -> (capturing | monitoring) -> ... -> merging -> done

Any phase can move to ``stopped`` on an explicit stop request. A failed
capture never ends the session: it hands over to the outage monitor and
capturing resumes once the stream is back, asking for the time that is
still missing but never less than one viable capture.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from .capture import CaptureOutcome, CaptureSession
from .config import Config
from .errors import RecorderError
from .logger import get_logger, get_session_logger
from .merger import SegmentMerger
from .outage_monitor import OutageMonitor
from .probe import AvailabilityProbe


class Phase(Enum):
    """Recording session phases."""
    IDLE = "idle"
    CAPTURING = "capturing"
    MONITORING = "monitoring"
    MERGING = "merging"
    DONE = "done"
    STOPPED = "stopped"
    FAILED = "failed"  # merge stage raised


class SegmentStatus(Enum):
    """Segment completion status."""
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class Segment:
    """One capture attempt and the file it produced."""
    index: int
    path: Path
    duration_ms: int = 0
    status: SegmentStatus = SegmentStatus.COMPLETE


@dataclass
class Session:
    """State of one end-to-end recording request."""
    session_id: str
    stream_url: str
    output_dir: Path
    target_ms: int
    final_name: str
    accumulated_ms: int = 0
    segments: List[Segment] = field(default_factory=list)
    discarded: List[Segment] = field(default_factory=list)
    phase: Phase = Phase.IDLE
    next_index: int = 0  # attempt counter; failed attempts burn their index
    final_path: Optional[Path] = None

    @property
    def remaining_ms(self) -> int:
        return max(0, self.target_ms - self.accumulated_ms)

    @property
    def progress_percent(self) -> int:
        if self.target_ms <= 0:
            return 0
        return min(100, int(self.accumulated_ms * 100 / self.target_ms))

    def segment_paths(self) -> List[Path]:
        """Completed segment files, ordered by sequence index."""
        return [s.path for s in sorted(self.segments, key=lambda s: s.index)]


@dataclass
class RecorderStatus:
    """Snapshot of the recorder for status reporting."""
    phase: Phase
    progress_percent: int
    segments_recorded: int
    stream_available: bool
    consecutive_failures: int
    recorded_seconds: int = 0
    target_seconds: int = 0
    current_segment_seconds: int = 0
    session_id: Optional[str] = None
    attempts_discarded: int = 0

    def to_dict(self) -> dict:
        return {
            'phase': self.phase.value,
            'progress_percent': self.progress_percent,
            'segments_recorded': self.segments_recorded,
            'attempts_discarded': self.attempts_discarded,
            'stream_available': self.stream_available,
            'consecutive_failures': self.consecutive_failures,
            'recorded_seconds': self.recorded_seconds,
            'target_seconds': self.target_seconds,
            'current_segment_seconds': self.current_segment_seconds,
            'session_id': self.session_id,
        }


class RecordingOrchestrator:
    """
    Records a stream for a fixed total duration across outages.

    Owns the session state exclusively. Only one worker is alive at a
    time: either a capture or the outage monitor, never both.
    """

    def __init__(
        self,
        stream_url: str,
        output_dir: str = "./recordings",
        probe: Optional[AvailabilityProbe] = None,
        capture: Optional[CaptureSession] = None,
        monitor: Optional[OutageMonitor] = None,
        merger: Optional[SegmentMerger] = None,
        extension: str = "mp4",
        stop_timeout: float = 10.0
    ):
        """
        Initialize orchestrator.

        Args:
            stream_url: Stream to record.
            output_dir: Directory for segments and the final file.
            probe: Availability probe (defaults built if omitted).
            capture: Segment capturer.
            monitor: Outage monitor; should share *probe*.
            merger: Segment merger.
            extension: Segment file extension.
            stop_timeout: Max seconds ``stop()`` waits for cleanup.
        """
        self.stream_url = stream_url
        self.output_dir = Path(output_dir)
        self.probe = probe or AvailabilityProbe()
        self.capture = capture or CaptureSession()
        self.monitor = monitor or OutageMonitor(self.probe)
        self.merger = merger or SegmentMerger()
        self.extension = extension.lstrip('.')
        self.stop_timeout = stop_timeout

        self._logger = get_logger('orchestrator')
        self._session: Optional[Session] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_requested = False

    @classmethod
    def from_config(cls, config: Config) -> 'RecordingOrchestrator':
        """Build an orchestrator and its collaborators from configuration."""
        probe = AvailabilityProbe(
            timeout=config.probe.timeout,
            ffprobe_path=config.probe.ffprobe_path,
            deep_timeout=config.probe.deep_timeout,
            deep_io_timeout=config.probe.deep_io_timeout
        )
        return cls(
            stream_url=config.stream.url,
            output_dir=config.recording.output_dir,
            probe=probe,
            capture=CaptureSession(
                ffmpeg_path=config.capture.ffmpeg_path,
                min_viable_seconds=config.capture.min_viable_seconds,
                reconnect_delay_max=config.capture.reconnect_delay_max,
                terminate_timeout=config.capture.terminate_timeout,
                idle_log_interval=config.capture.idle_log_interval
            ),
            monitor=OutageMonitor(
                probe,
                fast_interval=config.monitor.fast_interval,
                deep_rearm_delay=config.monitor.deep_rearm_delay,
                deep_enabled=config.monitor.deep_enabled,
                max_outage_seconds=config.monitor.max_outage_seconds
            ),
            merger=SegmentMerger(
                ffmpeg_path=config.merge.ffmpeg_path,
                timeout=config.merge.timeout
            ),
            extension=config.recording.extension,
            stop_timeout=config.capture.terminate_timeout + 5
        )

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start_recording(
        self,
        duration_minutes: float,
        final_output_name: Optional[str] = None
    ) -> Optional[Path]:
        """
        Record until *duration_minutes* of stream time are captured.

        Args:
            duration_minutes: Target total recording length.
            final_output_name: File name of the merged recording.

        Returns:
            Path of the final recording, or None if the session was stopped.

        Raises:
            EmptyInput: No segment was recorded.
            MergeFailed: Concatenation failed; segments are kept on disk.
        """
        if duration_minutes <= 0:
            raise ValueError("Recording duration must be positive")
        if self.is_running:
            raise RuntimeError("A recording session is already running")

        session_id = str(int(time.time() * 1000))
        self._session = Session(
            session_id=session_id,
            stream_url=self.stream_url,
            output_dir=self.output_dir,
            target_ms=int(duration_minutes * 60 * 1000),
            final_name=final_output_name or f"recording_{session_id}.mp4",
        )

        # stop() may land between scheduling this call and its first step
        if self._stop_requested:
            self._stop_requested = False
            self._session.phase = Phase.STOPPED
            self._logger.info("Stop requested before recording started, not recording")
            return None

        self.output_dir.mkdir(parents=True, exist_ok=True)

        self._task = asyncio.create_task(self._run(self._session))
        return await self._task

    async def stop(self) -> None:
        """
        Stop the current session. Safe to call repeatedly and from any phase.

        Terminates the live capture or stops the monitor, keeps completed
        segments on disk and never merges. A stop issued while nothing is
        running stays pending and cancels the next ``start_recording``.
        """
        self._stop_requested = True
        session = self._session
        task = self._task

        if task is None or task.done():
            if session and session.phase not in (Phase.DONE, Phase.FAILED):
                session.phase = Phase.STOPPED
            return

        self._logger.info("Stopping recorder...")
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=self.stop_timeout)
        if not done:
            self._logger.warning(f"Recorder did not stop within {self.stop_timeout:.0f}s")
        self._stop_requested = False
        if session:
            session.phase = Phase.STOPPED

    def get_status(self) -> RecorderStatus:
        """Return a snapshot of the current session."""
        state = self.monitor.state
        session = self._session
        if session is None:
            return RecorderStatus(
                phase=Phase.STOPPED if self._stop_requested else Phase.IDLE,
                progress_percent=0,
                segments_recorded=0,
                stream_available=state.available,
                consecutive_failures=state.consecutive_failures
            )

        current = self.capture.progress_seconds if session.phase == Phase.CAPTURING else 0
        return RecorderStatus(
            phase=session.phase,
            progress_percent=session.progress_percent,
            segments_recorded=len(session.segments),
            stream_available=state.available,
            consecutive_failures=state.consecutive_failures,
            recorded_seconds=session.accumulated_ms // 1000,
            target_seconds=session.target_ms // 1000,
            current_segment_seconds=current,
            session_id=session.session_id,
            attempts_discarded=len(session.discarded)
        )

    async def _run(self, session: Session) -> Optional[Path]:
        logger = get_session_logger(session.session_id, 'orchestrator')
        logger.info(
            f"Starting recording session for {session.target_ms / 60000:g} minutes, "
            f"final output: {session.final_name}"
        )

        try:
            available = await self.probe.is_available(session.stream_url)
            self.monitor.record_check(available)
            if not available:
                logger.info("Stream not initially available, starting monitoring...")
                if not await self._wait_for_stream(session):
                    return await self._finish(session, logger)

            while session.remaining_ms > 0:
                session.phase = Phase.CAPTURING
                outcome = await self._capture_next(session, logger)

                if outcome.success:
                    self.monitor.mark_available()
                    continue

                self.monitor.mark_unavailable()
                if not await self._wait_for_stream(session):
                    break

            return await self._finish(session, logger)

        except asyncio.CancelledError:
            session.phase = Phase.STOPPED
            logger.info(
                f"Recording stopped with {len(session.segments)} segment(s) kept, not merging"
            )
            return None
        finally:
            await self.probe.close()

    async def _capture_next(self, session: Session, logger) -> CaptureOutcome:
        """Run one capture attempt for the remaining time and book the result."""
        index = session.next_index
        session.next_index += 1
        path = session.output_dir / f"segment_{session.session_id}_{index}.{self.extension}"
        remaining_s = session.remaining_ms / 1000
        logger = logger.for_segment(index)

        # Never ask for less than a viable capture; the last segment overshoots
        requested_s = max(remaining_s, self.capture.min_viable_seconds + 1)

        logger.info(
            f"Starting segment {index}, remaining duration: {remaining_s:.0f}s "
            f"(requesting {requested_s:.0f}s)"
        )
        outcome = await self.capture.run(session.stream_url, requested_s, path)

        if outcome.success:
            session.segments.append(Segment(
                index=index,
                path=outcome.path,
                duration_ms=outcome.duration_ms
            ))
            session.accumulated_ms += outcome.duration_ms
            logger.info(
                f"Segment {index} completed ({outcome.duration_ms / 1000:.0f}s), "
                f"progress {session.progress_percent}%"
            )
        else:
            session.discarded.append(Segment(
                index=index,
                path=outcome.path or path,
                duration_ms=outcome.duration_ms,
                status=SegmentStatus.FAILED
            ))
            logger.warning(f"Capture failed ({outcome.failure.value}): {outcome.reason}")
        return outcome

    async def _wait_for_stream(self, session: Session) -> bool:
        session.phase = Phase.MONITORING
        return await self.monitor.watch(session.stream_url)

    async def _finish(self, session: Session, logger) -> Path:
        session.phase = Phase.MERGING
        final_path = session.output_dir / session.final_name
        manifest_path = session.output_dir / f"concat_{session.session_id}.txt"

        try:
            session.final_path = await self.merger.merge(
                session.segment_paths(), final_path, manifest_path
            )
        except RecorderError as e:
            session.phase = Phase.FAILED
            logger.error(f"Recording session failed: {e}")
            raise

        session.phase = Phase.DONE
        logger.info(f"Recording completed: {session.final_path}")
        return session.final_path
