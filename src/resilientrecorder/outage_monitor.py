"""
Outage monitor for Resilient Stream Recorder.
Polls the stream while it is down and signals once when it comes back.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .logger import get_logger
from .probe import AvailabilityProbe


@dataclass
class AvailabilityState:
    """Last known availability of the stream."""
    available: bool = False
    last_available_at: Optional[datetime] = None
    consecutive_failures: int = 0


class OutageMonitor:
    """
    Waits for an unavailable stream to return.

    Runs two loops while watching:
    - Fast loop: HEAD check every ``fast_interval`` seconds
    - Deep loop: ffprobe run back to back with ``deep_rearm_delay`` pause,
      each hit confirmed by a HEAD check

    Only the first confirmed detection resumes; the ``_active`` flag is
    cleared on that detection so the other loop cannot fire again.
    """

    def __init__(
        self,
        probe: AvailabilityProbe,
        fast_interval: float = 2.0,
        deep_rearm_delay: float = 1.0,
        deep_enabled: bool = True,
        max_outage_seconds: float = 0.0
    ):
        """
        Initialize outage monitor.

        Args:
            probe: Probe used by both loops.
            fast_interval: Seconds between HEAD checks.
            deep_rearm_delay: Pause after each ffprobe run.
            deep_enabled: Run the ffprobe loop at all.
            max_outage_seconds: Give up after this long. 0 waits forever.
        """
        self.probe = probe
        self.fast_interval = fast_interval
        self.deep_rearm_delay = deep_rearm_delay
        self.deep_enabled = deep_enabled
        self.max_outage_seconds = max_outage_seconds

        self.state = AvailabilityState()
        self._logger = get_logger('monitor')
        self._active = False
        self._resumed: Optional[asyncio.Event] = None
        self._on_resume: Optional[Callable[[], None]] = None

    @property
    def active(self) -> bool:
        return self._active

    def record_check(self, available: bool) -> bool:
        """
        Update availability state with a probe result.

        Returns:
            True if this result is an unavailable -> available transition.
        """
        was_available = self.state.available
        self.state.available = available
        if available:
            self.state.consecutive_failures = 0
            self.state.last_available_at = datetime.now()
        else:
            self.state.consecutive_failures += 1
            if was_available:
                self._logger.info("Stream went offline, waiting for it to return...")
        return available and not was_available

    def mark_available(self) -> None:
        self.state.available = True
        self.state.last_available_at = datetime.now()

    def mark_unavailable(self) -> None:
        self.state.available = False

    async def watch(self, url: str, on_resume: Optional[Callable[[], None]] = None) -> bool:
        """
        Block until the stream is confirmed available again.

        Args:
            url: Stream URL.
            on_resume: Optional callback fired once on resumption.

        Returns:
            True if the stream came back, False if ``max_outage_seconds`` expired.
        """
        if self._active:
            raise RuntimeError("Outage monitor is already watching")

        self._active = True
        self._resumed = asyncio.Event()
        self._on_resume = on_resume
        self._logger.info("Starting stream availability monitoring...")

        tasks = [asyncio.create_task(self._fast_loop(url))]
        if self.deep_enabled:
            tasks.append(asyncio.create_task(self._deep_loop(url)))

        try:
            if self.max_outage_seconds > 0:
                try:
                    await asyncio.wait_for(self._resumed.wait(), timeout=self.max_outage_seconds)
                except asyncio.TimeoutError:
                    self._logger.warning(
                        f"Stream did not return within {self.max_outage_seconds:.0f}s, giving up"
                    )
                    return False
            else:
                await self._resumed.wait()
            return True
        finally:
            self._active = False
            self._on_resume = None
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._logger.info("Stream monitoring stopped")

    def _signal_resume(self, source: str) -> bool:
        """Fire the resumption signal once per watch."""
        if not self._active:
            return False
        self._active = False
        self._logger.info(f"Stream is back online (detected by {source} check)")
        self._resumed.set()
        if self._on_resume:
            self._on_resume()
        return True

    async def _fast_loop(self, url: str) -> None:
        while self._active:
            await asyncio.sleep(self.fast_interval)
            if not self._active:
                break
            try:
                available = await self.probe.is_available(url)
                if self._active and self.record_check(available):
                    self._signal_resume('fast')
            except Exception as e:
                self._logger.error(f"Fast availability check error: {e}")

    async def _deep_loop(self, url: str) -> None:
        while self._active:
            try:
                detected = await self.probe.deep_check(url)
                if detected and self._active and not self.state.available:
                    self._logger.info("ffprobe detected stream activity, verifying...")
                    confirmed = await self.probe.is_available(url)
                    if self._active and self.record_check(confirmed):
                        self._signal_resume('deep')
            except Exception as e:
                self._logger.error(f"Deep availability check error: {e}")
            await asyncio.sleep(self.deep_rearm_delay)
