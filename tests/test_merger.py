"""
Tests for the segment merger.
"""

from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeProcess
from resilientrecorder.errors import EmptyInput, MergeFailed
from resilientrecorder.merger import SegmentMerger


SPAWN = 'resilientrecorder.merger.asyncio.create_subprocess_exec'


def make_segments(directory, count):
    segments = []
    for i in range(count):
        path = directory / f"segment_1_{i}.mp4"
        path.write_bytes(f"data {i}".encode())
        segments.append(path)
    return segments


@pytest.mark.asyncio
async def test_empty_input_touches_nothing(tmp_path):
    merger = SegmentMerger()

    with pytest.raises(EmptyInput):
        await merger.merge([], tmp_path / 'final.mp4', tmp_path / 'concat.txt')

    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_single_segment_is_renamed_byte_for_byte(tmp_path):
    segment = tmp_path / 'segment_1_0.mp4'
    payload = bytes(range(256)) * 64
    segment.write_bytes(payload)
    final = tmp_path / 'final.mp4'
    spawn = AsyncMock()

    with patch(SPAWN, new=spawn):
        result = await SegmentMerger().merge([segment], final)

    assert result == final
    assert final.read_bytes() == payload
    assert not segment.exists()
    spawn.assert_not_called()


@pytest.mark.asyncio
async def test_concat_success_cleans_up(tmp_path):
    segments = make_segments(tmp_path, 3)
    final = tmp_path / 'final.mp4'
    manifest = tmp_path / 'concat_1.txt'
    seen = {}

    async def spawn(*cmd, **kwargs):
        seen['cmd'] = list(cmd)
        seen['manifest'] = manifest.read_text(encoding='utf-8')
        final.write_bytes(b'joined')
        return FakeProcess(returncode=0)

    with patch(SPAWN, new=AsyncMock(side_effect=spawn)):
        result = await SegmentMerger(ffmpeg_path='ffmpeg').merge(segments, final, manifest)

    assert result == final
    assert seen['manifest'].splitlines() == [f"file '{s.resolve()}'" for s in segments]
    cmd = seen['cmd']
    assert cmd[cmd.index('-f') + 1] == 'concat'
    assert cmd[cmd.index('-c') + 1] == 'copy'
    assert cmd[cmd.index('-i') + 1] == str(manifest)
    assert '-y' in cmd
    assert cmd[-1] == str(final)

    assert not manifest.exists()
    assert all(not s.exists() for s in segments)
    assert final.read_bytes() == b'joined'


@pytest.mark.asyncio
async def test_concat_failure_keeps_inputs(tmp_path):
    segments = make_segments(tmp_path, 2)
    final = tmp_path / 'final.mp4'
    process = FakeProcess(returncode=1, stderr=b'Invalid data found when processing input\n')

    with patch(SPAWN, new=AsyncMock(return_value=process)):
        with pytest.raises(MergeFailed) as exc_info:
            await SegmentMerger().merge(segments, final, tmp_path / 'concat_1.txt')

    assert exc_info.value.returncode == 1
    assert 'Invalid data' in exc_info.value.stderr_tail
    assert exc_info.value.segments == segments
    assert all(s.exists() for s in segments)
    assert not final.exists()


@pytest.mark.asyncio
async def test_missing_ffmpeg_keeps_inputs(tmp_path):
    segments = make_segments(tmp_path, 2)

    with patch(SPAWN, new=AsyncMock(side_effect=FileNotFoundError('ffmpeg'))):
        with pytest.raises(MergeFailed):
            await SegmentMerger().merge(segments, tmp_path / 'final.mp4')

    assert all(s.exists() for s in segments)


@pytest.mark.asyncio
async def test_manifest_escapes_single_quotes(tmp_path):
    odd = tmp_path / "it's here.mp4"
    manifest = tmp_path / 'concat.txt'

    await SegmentMerger().write_manifest([odd], manifest)

    text = manifest.read_text(encoding='utf-8')
    assert text.startswith("file '/")
    assert text.endswith("it'\\''s here.mp4'\n")
