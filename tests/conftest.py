"""
Shared fakes for recorder tests.

Subprocesses and the network are replaced with small in-memory doubles;
file operations run for real inside tmp_path.
"""

import asyncio
from pathlib import Path

from resilientrecorder.capture import CaptureOutcome, FailureKind


class FakeStream:
    """Stand-in for a subprocess pipe."""

    def __init__(self, chunks=(), until=None):
        self._chunks = list(chunks)
        self._until = until

    async def read(self, n=-1):
        if self._chunks:
            return self._chunks.pop(0)
        if self._until is not None:
            await self._until.wait()
        return b''


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(self, returncode=0, chunks=(), stdout=b'', stderr=b'', hang=False):
        self._final = returncode
        self._hang = hang
        self._exited = asyncio.Event()
        self.returncode = None
        self.stdout_data = stdout
        self.stderr_data = stderr
        self.stderr = FakeStream(chunks, until=self._exited if hang else None)
        self.terminated = False
        self.killed = False

    async def wait(self):
        if self._hang:
            await self._exited.wait()
        elif self.returncode is None:
            self.returncode = self._final
        return self.returncode

    async def communicate(self):
        await self.wait()
        return self.stdout_data, self.stderr_data

    def terminate(self):
        self.terminated = True
        self.returncode = -15
        self._exited.set()

    def kill(self):
        self.killed = True
        self.returncode = -9
        self._exited.set()


class FakeProbe:
    """Probe returning scripted answers; the last answer repeats forever."""

    def __init__(self, shallow=(False,), deep=(False,)):
        self._shallow = list(shallow)
        self._deep = list(deep)
        self.shallow_calls = 0
        self.deep_calls = 0
        self.closed = False

    @staticmethod
    def _next(script):
        return script.pop(0) if len(script) > 1 else script[0]

    async def is_available(self, url):
        self.shallow_calls += 1
        await asyncio.sleep(0)
        return self._next(self._shallow)

    async def deep_check(self, url):
        self.deep_calls += 1
        await asyncio.sleep(0)
        return self._next(self._deep)

    async def close(self):
        self.closed = True


class FakeCapture:
    """
    Capture double driven by a script of (success, duration_ms) pairs.

    Successful attempts write a small file at the requested path.
    """

    def __init__(self, script):
        self._script = list(script)
        self.calls = []
        self.progress_seconds = 0
        self.min_viable_seconds = 5.0

    async def run(self, url, duration_seconds, dest_path):
        self.calls.append((url, duration_seconds, Path(dest_path)))
        await asyncio.sleep(0)
        success, duration_ms = self._script.pop(0)
        if success:
            Path(dest_path).write_bytes(f"segment {len(self.calls)}".encode())
            return CaptureOutcome.succeeded(Path(dest_path), duration_ms)
        return CaptureOutcome.failed(
            Path(dest_path), FailureKind.FAILED_FAST, "rejected", duration_ms=duration_ms
        )


class HangingCapture:
    """Capture double that runs until cancelled."""

    def __init__(self):
        self.calls = []
        self.started = asyncio.Event()
        self.cancelled = False
        self.progress_seconds = 0
        self.min_viable_seconds = 5.0

    async def run(self, url, duration_seconds, dest_path):
        self.calls.append((url, duration_seconds, Path(dest_path)))
        self.started.set()
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class RecordingMerger:
    """Merger double that remembers what it was asked to merge."""

    def __init__(self, error=None):
        self.calls = []
        self._error = error

    async def merge(self, segments, final_path, manifest_path=None):
        self.calls.append(list(segments))
        if self._error:
            raise self._error
        Path(final_path).write_bytes(b'merged')
        return Path(final_path)
