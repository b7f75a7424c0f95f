"""
Tests for the segment capture module.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeProcess
from resilientrecorder.capture import CaptureSession, FailureKind


URL = "http://stream.example/live.ts"
SPAWN = 'resilientrecorder.capture.asyncio.create_subprocess_exec'


def make_clock(*readings):
    values = iter(readings)
    return lambda: next(values)


def spawner(process, write_output=True):
    """Fake create_subprocess_exec that optionally writes ffmpeg's output file."""
    async def spawn(*cmd, **kwargs):
        spawn.cmd = list(cmd)
        if write_output:
            with open(cmd[-1], 'wb') as f:
                f.write(b'\x47' * 188)
        return process
    return spawn


class TestBuildCommand:

    def test_stream_copy_with_reconnect_and_overwrite(self, tmp_path):
        capture = CaptureSession(ffmpeg_path='/usr/bin/ffmpeg', reconnect_delay_max=2)
        dest = tmp_path / 'segment_1_0.mp4'

        cmd = capture.build_command(URL, 60, dest)

        assert cmd[0] == '/usr/bin/ffmpeg'
        assert cmd[cmd.index('-i') + 1] == URL
        assert cmd[cmd.index('-c') + 1] == 'copy'
        assert cmd[cmd.index('-t') + 1] == '60'
        assert cmd[cmd.index('-reconnect') + 1] == '1'
        assert cmd[cmd.index('-reconnect_streamed') + 1] == '1'
        assert cmd[cmd.index('-reconnect_delay_max') + 1] == '2'
        assert '-y' in cmd
        assert cmd[-1] == str(dest)

    def test_reconnect_options_apply_to_input(self, tmp_path):
        cmd = CaptureSession().build_command(URL, 60, tmp_path / 'seg.mp4')

        input_at = cmd.index('-i')
        for flag in ('-reconnect', '-reconnect_at_eof', '-reconnect_streamed', '-reconnect_delay_max'):
            assert cmd.index(flag) < input_at, flag
        assert cmd.index('-t') > input_at


class TestCaptureOutcome:

    @pytest.mark.asyncio
    async def test_clean_exit_after_threshold_is_success(self, tmp_path):
        dest = tmp_path / 'seg.mp4'
        capture = CaptureSession(clock=make_clock(100.0, 130.5))

        with patch(SPAWN, new=AsyncMock(side_effect=spawner(FakeProcess(returncode=0)))):
            outcome = await capture.run(URL, 60, dest)

        assert outcome.success
        assert outcome.duration_ms == 30500
        assert outcome.path == dest
        assert dest.exists()

    @pytest.mark.asyncio
    @pytest.mark.parametrize('elapsed', [0.2, 1.0, 3.9, 4.0])
    @pytest.mark.parametrize('returncode', [0, 1])
    async def test_quick_exit_is_always_failure(self, tmp_path, elapsed, returncode):
        dest = tmp_path / 'seg.mp4'
        capture = CaptureSession(clock=make_clock(0.0, elapsed))

        with patch(SPAWN, new=AsyncMock(side_effect=spawner(FakeProcess(returncode=returncode)))):
            outcome = await capture.run(URL, 60, dest)

        assert not outcome.success
        assert outcome.failure == FailureKind.FAILED_FAST
        assert not dest.exists()

    @pytest.mark.asyncio
    async def test_nonzero_exit_after_running_is_late_failure(self, tmp_path):
        dest = tmp_path / 'seg.mp4'
        capture = CaptureSession(clock=make_clock(0.0, 42.0))
        process = FakeProcess(returncode=1, chunks=[b'Connection reset by peer\n'])

        with patch(SPAWN, new=AsyncMock(side_effect=spawner(process))):
            outcome = await capture.run(URL, 60, dest)

        assert not outcome.success
        assert outcome.failure == FailureKind.FAILED_LATE
        assert outcome.returncode == 1
        assert 'Connection reset' in outcome.reason
        assert not dest.exists()

    @pytest.mark.asyncio
    async def test_missing_output_file_is_failure(self, tmp_path):
        dest = tmp_path / 'seg.mp4'
        capture = CaptureSession(clock=make_clock(0.0, 20.0))

        with patch(SPAWN, new=AsyncMock(side_effect=spawner(FakeProcess(), write_output=False))):
            outcome = await capture.run(URL, 60, dest)

        assert not outcome.success
        assert outcome.failure == FailureKind.FAILED_LATE

    @pytest.mark.asyncio
    async def test_spawn_error_is_failure(self, tmp_path):
        dest = tmp_path / 'seg.mp4'
        capture = CaptureSession(ffmpeg_path='missing-ffmpeg')

        with patch(SPAWN, new=AsyncMock(side_effect=FileNotFoundError('missing-ffmpeg'))):
            outcome = await capture.run(URL, 60, dest)

        assert not outcome.success
        assert outcome.failure == FailureKind.SPAWN_ERROR
        assert not capture.is_running

    @pytest.mark.asyncio
    async def test_fatal_error_text_does_not_change_outcome(self, tmp_path):
        dest = tmp_path / 'seg.mp4'
        capture = CaptureSession(clock=make_clock(0.0, 61.0))
        process = FakeProcess(returncode=0, chunks=[b'Server returned 403 Forbidden\n'])

        with patch(SPAWN, new=AsyncMock(side_effect=spawner(process))):
            outcome = await capture.run(URL, 60, dest)

        assert outcome.success


class TestCaptureProgress:

    @pytest.mark.asyncio
    async def test_progress_parsed_from_carriage_return_lines(self, tmp_path):
        capture = CaptureSession(clock=make_clock(0.0, 70.0))
        process = FakeProcess(chunks=[
            b'frame=  10 size=  1kB time=00:00:30.00 bitrate=1k\r',
            b'frame=  20 size=  2kB time=00:01:',
            b'05.00 bitrate=1k\r',
        ])

        with patch(SPAWN, new=AsyncMock(side_effect=spawner(process))):
            await capture.run(URL, 70, tmp_path / 'seg.mp4')

        assert capture.progress_seconds == 65

    @pytest.mark.asyncio
    async def test_requested_duration_rounds_up(self, tmp_path):
        capture = CaptureSession(clock=make_clock(0.0, 10.0))
        spawn = spawner(FakeProcess())

        with patch(SPAWN, new=AsyncMock(side_effect=spawn)):
            await capture.run(URL, 59.2, tmp_path / 'seg.mp4')

        assert spawn.cmd[spawn.cmd.index('-t') + 1] == '60'


class TestCaptureCancellation:

    @pytest.mark.asyncio
    async def test_cancel_terminates_ffmpeg_quickly(self, tmp_path):
        process = FakeProcess(hang=True)
        capture = CaptureSession(terminate_timeout=1.0)

        with patch(SPAWN, new=AsyncMock(side_effect=spawner(process))):
            task = asyncio.create_task(capture.run(URL, 600, tmp_path / 'seg.mp4'))
            await asyncio.sleep(0.05)
            assert capture.is_running

            loop = asyncio.get_running_loop()
            started = loop.time()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert process.terminated
        assert loop.time() - started < 0.5
        assert not capture.is_running
