"""
Segment capture module for Resilient Stream Recorder.
Runs one ffmpeg stream-copy process per segment and classifies its outcome.
"""

import asyncio
import math
import re
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .logger import get_logger


PROGRESS_PATTERN = re.compile(r'time=(\d{2}):(\d{2}):(\d{2})')

# Substrings in ffmpeg diagnostics that point at a rejected or dead source
FATAL_PATTERNS = (
    '403',
    'Connection refused',
    'Server returned 4',
    'HTTP error 403',
)

NOISE_PATTERNS = (
    'frame=',
    'size=',
    "opening 'http",
    'hls request for url',
    'skip (\'#ext-x-',
)


class FailureKind(Enum):
    """Why a capture attempt was discarded."""
    FAILED_FAST = "capture_failed_fast"  # exited before producing usable data
    FAILED_LATE = "capture_failed_late"  # non-zero exit or missing file after running a while
    SPAWN_ERROR = "spawn_error"          # ffmpeg could not be started at all


@dataclass
class CaptureOutcome:
    """Result of one capture attempt."""
    success: bool
    path: Path
    duration_ms: int
    returncode: Optional[int] = None
    failure: Optional[FailureKind] = None
    reason: str = ""

    @classmethod
    def succeeded(cls, path: Path, duration_ms: int, returncode: int = 0) -> 'CaptureOutcome':
        return cls(success=True, path=path, duration_ms=duration_ms, returncode=returncode)

    @classmethod
    def failed(
        cls,
        path: Path,
        failure: FailureKind,
        reason: str,
        duration_ms: int = 0,
        returncode: Optional[int] = None
    ) -> 'CaptureOutcome':
        return cls(
            success=False,
            path=path,
            duration_ms=duration_ms,
            returncode=returncode,
            failure=failure,
            reason=reason
        )


class CaptureSession:
    """
    Captures a live stream into a single file with ffmpeg.

    The process output is only read for logging and progress. The outcome
    is decided by the exit status, the destination file and the wall-clock
    time the process stayed alive.
    """

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        min_viable_seconds: float = 5.0,
        reconnect_delay_max: int = 2,
        terminate_timeout: float = 5.0,
        idle_log_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize capture session.

        Args:
            ffmpeg_path: ffmpeg executable.
            min_viable_seconds: Captures that end this fast count as failures.
            reconnect_delay_max: Max seconds between ffmpeg reconnect attempts.
            terminate_timeout: Seconds to wait after SIGTERM before SIGKILL.
            idle_log_interval: Seconds without output before a heartbeat log.
            clock: Monotonic clock used to measure elapsed capture time.
        """
        self.ffmpeg_path = ffmpeg_path
        self.min_viable_seconds = min_viable_seconds
        self.reconnect_delay_max = reconnect_delay_max
        self.terminate_timeout = terminate_timeout
        self.idle_log_interval = idle_log_interval
        self._clock = clock

        self._logger = get_logger('capture')
        self._process: Optional[asyncio.subprocess.Process] = None
        self.progress_seconds = 0

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def build_command(self, url: str, duration_seconds: int, dest_path: Path) -> list:
        """Build the ffmpeg command line for one segment."""
        return [
            self.ffmpeg_path,
            # Input options, must precede -i
            '-reconnect', '1',
            '-reconnect_at_eof', '1',
            '-reconnect_streamed', '1',
            '-reconnect_delay_max', str(self.reconnect_delay_max),
            '-i', url,
            '-c', 'copy',  # No re-encoding
            '-avoid_negative_ts', 'make_zero',
            '-fflags', '+genpts',
            '-t', str(duration_seconds),
            '-y',
            str(dest_path),
        ]

    async def run(self, url: str, duration_seconds: float, dest_path: Path) -> CaptureOutcome:
        """
        Capture up to *duration_seconds* of the stream into *dest_path*.

        Args:
            url: Stream URL.
            duration_seconds: Requested segment length; rounded up to whole seconds.
            dest_path: Output file, overwritten if present.

        Returns:
            CaptureOutcome. Failed attempts have their partial file removed.
        """
        dest_path = Path(dest_path)
        requested = max(1, int(math.ceil(duration_seconds)))
        cmd = self.build_command(url, requested, dest_path)
        self.progress_seconds = 0

        self._logger.info(f"Capturing {requested}s -> {dest_path.name}")
        self._logger.debug(f"Running: {' '.join(cmd)}")

        started = self._clock()
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            self._discard(dest_path)
            self._logger.error(f"Could not start ffmpeg: {e}")
            return CaptureOutcome.failed(dest_path, FailureKind.SPAWN_ERROR, str(e))

        self._process = process
        try:
            tail = await self._watch_output(process, dest_path)
            returncode = await process.wait()
        except asyncio.CancelledError:
            self._logger.info("Capture cancelled, terminating ffmpeg")
            await self.terminate()
            raise
        finally:
            self._process = None

        elapsed = self._clock() - started
        elapsed_ms = int(elapsed * 1000)
        self._logger.info(f"ffmpeg exited with code {returncode} after {elapsed:.1f}s")

        if elapsed <= self.min_viable_seconds:
            self._discard(dest_path)
            return CaptureOutcome.failed(
                dest_path,
                FailureKind.FAILED_FAST,
                f"ffmpeg exited after {elapsed:.1f}s (code {returncode}); source rejected or down",
                duration_ms=elapsed_ms,
                returncode=returncode
            )

        if returncode != 0:
            self._discard(dest_path)
            return CaptureOutcome.failed(
                dest_path,
                FailureKind.FAILED_LATE,
                f"ffmpeg exited with code {returncode}: {tail[-300:]}",
                duration_ms=elapsed_ms,
                returncode=returncode
            )

        if not dest_path.exists():
            return CaptureOutcome.failed(
                dest_path,
                FailureKind.FAILED_LATE,
                "ffmpeg reported success but wrote no file",
                duration_ms=elapsed_ms,
                returncode=returncode
            )

        return CaptureOutcome.succeeded(dest_path, elapsed_ms, returncode)

    async def terminate(self) -> None:
        """Send SIGTERM to the running ffmpeg, escalating to SIGKILL."""
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout)
        except asyncio.TimeoutError:
            self._logger.warning("ffmpeg ignored SIGTERM, killing")
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _watch_output(self, process, dest_path: Path) -> str:
        """
        Consume ffmpeg diagnostics until EOF.

        ffmpeg rewrites its progress line with carriage returns, so the
        stream is read in chunks and split on both line terminators.

        Returns:
            The last lines of output, used as a failure reason.
        """
        recent = deque(maxlen=20)
        pending = ""
        fatal_logged = False
        last_logged_progress = 0

        while True:
            try:
                chunk = await asyncio.wait_for(
                    process.stderr.read(4096),
                    timeout=self.idle_log_interval
                )
            except asyncio.TimeoutError:
                if process.returncode is not None:
                    break
                size_mb = None
                try:
                    if dest_path.exists():
                        size_mb = dest_path.stat().st_size / (1024 * 1024)
                except OSError:
                    size_mb = None
                if size_mb is not None:
                    self._logger.debug(f"ffmpeg: no output for {self.idle_log_interval}s, size={size_mb:.1f} MB")
                else:
                    self._logger.debug(f"ffmpeg: no output for {self.idle_log_interval}s (process running)")
                continue

            if not chunk:
                break

            pending += chunk.decode('utf-8', errors='ignore')
            *lines, pending = re.split(r'[\r\n]', pending)

            for line in lines:
                line = line.strip()
                if not line:
                    continue
                recent.append(line)

                match = PROGRESS_PATTERN.search(line)
                if match:
                    hours, minutes, seconds = (int(g) for g in match.groups())
                    self.progress_seconds = hours * 3600 + minutes * 60 + seconds
                    if self.progress_seconds - last_logged_progress >= 10:
                        last_logged_progress = self.progress_seconds
                        self._logger.debug(f"Progress: {self.progress_seconds}s")
                    continue

                if not fatal_logged and any(p in line for p in FATAL_PATTERNS):
                    fatal_logged = True
                    self._logger.warning(f"Stream access error: {line}")
                elif not any(p in line.lower() for p in NOISE_PATTERNS):
                    self._logger.debug(f"ffmpeg: {line}")

        if pending.strip():
            recent.append(pending.strip())
        return '\n'.join(recent)

    def _discard(self, dest_path: Path) -> None:
        """Remove a partially written segment."""
        try:
            dest_path.unlink(missing_ok=True)
        except OSError as e:
            self._logger.warning(f"Failed to delete partial segment {dest_path.name}: {e}")
