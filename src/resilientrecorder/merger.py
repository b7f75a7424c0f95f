"""
Segment merger for Resilient Stream Recorder.
Joins recorded segments into the final file without re-encoding.
"""

import asyncio
from pathlib import Path
from typing import List, Optional, Sequence

import aiofiles

from .errors import EmptyInput, MergeFailed
from .logger import get_logger


class SegmentMerger:
    """
    Produces the final recording from an ordered list of segment files.

    A single segment is renamed into place. Several segments are joined
    with the ffmpeg concat demuxer in stream-copy mode. Inputs are only
    deleted after a successful merge.
    """

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout: float = 3600.0):
        """
        Initialize merger.

        Args:
            ffmpeg_path: ffmpeg executable.
            timeout: Hard limit for one concat run.
        """
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout
        self._logger = get_logger('merger')

    async def merge(
        self,
        segments: Sequence[Path],
        final_path: Path,
        manifest_path: Optional[Path] = None
    ) -> Path:
        """
        Merge *segments* (already in capture order) into *final_path*.

        Args:
            segments: Segment files in capture order.
            final_path: Destination of the merged recording.
            manifest_path: Where to write the concat list. Defaults to
                ``<final_path>.concat.txt``.

        Returns:
            Path of the final recording.

        Raises:
            EmptyInput: If *segments* is empty.
            MergeFailed: If ffmpeg fails. Segment files are left untouched.
        """
        segments = [Path(s) for s in segments]
        final_path = Path(final_path)

        if not segments:
            raise EmptyInput()

        if len(segments) == 1:
            return self._move_single(segments[0], final_path)

        if manifest_path is None:
            manifest_path = final_path.with_name(f"{final_path.name}.concat.txt")
        manifest_path = Path(manifest_path)

        await self.write_manifest(segments, manifest_path)
        self._logger.info(f"Merging {len(segments)} segments into: {final_path.name}")

        await self._run_concat(segments, manifest_path, final_path)

        manifest_path.unlink(missing_ok=True)
        for segment in segments:
            try:
                segment.unlink(missing_ok=True)
                self._logger.debug(f"Deleted segment: {segment.name}")
            except OSError as e:
                self._logger.warning(f"Failed to delete {segment.name}: {e}")

        size_mb = final_path.stat().st_size / (1024 * 1024)
        self._logger.info(f"Successfully merged recordings to: {final_path} ({size_mb:.1f} MB)")
        return final_path

    def _move_single(self, segment: Path, final_path: Path) -> Path:
        try:
            segment.replace(final_path)
        except OSError as e:
            raise MergeFailed(f"Failed to move {segment.name}: {e}", segments=[segment]) from e
        self._logger.info(f"Single segment recording moved to: {final_path}")
        return final_path

    async def write_manifest(self, segments: List[Path], manifest_path: Path) -> None:
        """Write an ffmpeg concat list with absolute, quote-escaped paths."""
        lines = []
        for segment in segments:
            safe_path = str(segment.resolve()).replace("'", "'\\''")
            lines.append(f"file '{safe_path}'\n")

        async with aiofiles.open(manifest_path, 'w', encoding='utf-8') as f:
            await f.write(''.join(lines))

    async def _run_concat(self, segments: List[Path], manifest_path: Path, final_path: Path) -> None:
        cmd = [
            self.ffmpeg_path, '-y',
            '-f', 'concat',
            '-safe', '0',
            '-i', str(manifest_path),
            '-c', 'copy',
            str(final_path),
        ]
        self._logger.debug(f"Running: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise MergeFailed(f"Could not start ffmpeg: {e}", segments=segments) from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._abort(process, final_path)
            raise MergeFailed(f"Merge timed out after {self.timeout:.0f}s", segments=segments)
        except asyncio.CancelledError:
            await self._abort(process, final_path)
            raise

        if process.returncode != 0 or not final_path.exists():
            error_lines = stderr.decode('utf-8', errors='ignore').splitlines()
            error_tail = '\n'.join(error_lines[-10:])
            self._logger.error(f"FFmpeg merge failed:\n{error_tail}")
            final_path.unlink(missing_ok=True)
            raise MergeFailed(
                f"Merge failed with code {process.returncode}",
                segments=segments,
                returncode=process.returncode,
                stderr_tail=error_tail
            )

    async def _abort(self, process, final_path: Path) -> None:
        """Stop a running concat and drop its partial output."""
        if process.returncode is None:
            try:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass
        final_path.unlink(missing_ok=True)
