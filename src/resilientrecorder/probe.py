"""
Stream availability probe for Resilient Stream Recorder.
Combines a cheap HTTP HEAD check with an ffprobe format probe.
"""

import asyncio
from typing import Optional

import aiohttp

from .logger import get_logger


AVAILABLE_STATUSES = (200, 206)


class AvailabilityProbe:
    """
    Checks whether a stream endpoint is currently reachable.

    Two strategies:
    - Shallow: HEAD request, available on HTTP 200/206 only
    - Deep: ffprobe against the URL, exit code 0 is a hint that the
      stream is back; it must be confirmed by a shallow check

    Neither call raises. Timeouts and transport errors resolve to False,
    and no call retries internally.
    """

    def __init__(
        self,
        timeout: float = 3.0,
        ffprobe_path: str = "ffprobe",
        deep_timeout: float = 10.0,
        deep_io_timeout: float = 5.0
    ):
        """
        Initialize probe.

        Args:
            timeout: Total timeout for one HEAD request.
            ffprobe_path: ffprobe executable.
            deep_timeout: Hard limit for one ffprobe run.
            deep_io_timeout: Network timeout handed to ffprobe itself.
        """
        self.timeout = timeout
        self.ffprobe_path = ffprobe_path
        self.deep_timeout = deep_timeout
        self.deep_io_timeout = deep_io_timeout

        self._session: Optional[aiohttp.ClientSession] = None
        self._logger = get_logger('probe')

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def is_available(self, url: str) -> bool:
        """Authoritative "is the stream up right now" answer (shallow check)."""
        return await self.shallow_check(url)

    async def shallow_check(self, url: str) -> bool:
        """
        Issue a HEAD request against the stream URL.

        Args:
            url: Stream URL.

        Returns:
            True if the server answered 200 or 206.
        """
        try:
            session = await self._get_session()
            async with session.head(
                url,
                allow_redirects=False,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as resp:
                available = resp.status in AVAILABLE_STATUSES
                if not available:
                    self._logger.debug(f"HEAD {url} -> {resp.status}")
                return available

        except asyncio.TimeoutError:
            self._logger.debug(f"HEAD {url} timed out after {self.timeout}s")
            return False
        except aiohttp.ClientError as e:
            self._logger.debug(f"HEAD {url} failed: {e}")
            return False
        except Exception as e:
            self._logger.warning(f"Unexpected probe error: {e}")
            return False

    def build_deep_command(self, url: str) -> list:
        """Build the ffprobe command line for a deep check."""
        return [
            self.ffprobe_path,
            '-v', 'quiet',
            '-print_format', 'json',
            '-show_streams',
            '-timeout', str(int(self.deep_io_timeout * 1_000_000)),  # microseconds
            url,
        ]

    async def deep_check(self, url: str) -> bool:
        """
        Run ffprobe against the stream URL.

        Args:
            url: Stream URL.

        Returns:
            True if ffprobe exited cleanly within the deep timeout.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_deep_command(url),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            self._logger.debug(f"Could not start ffprobe: {e}")
            return False

        try:
            await asyncio.wait_for(process.communicate(), timeout=self.deep_timeout)
        except asyncio.TimeoutError:
            self._logger.debug(f"ffprobe timed out after {self.deep_timeout}s")
            await self._kill(process)
            return False
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        return process.returncode == 0

    async def _kill(self, process) -> None:
        """Kill a probe process and reap it."""
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=1)
        except asyncio.TimeoutError:
            self._logger.debug("ffprobe did not exit after kill")
