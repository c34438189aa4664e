"""Speaking detection for the local participant.

Samples the local capture at a fixed cadence, averages its byte frequency
data and compares against a threshold. The resulting flag is persisted only
when it differs from the last persisted value, so the number of writes
equals the number of transitions rather than the number of samples.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from src.voice_room.errors import StoreError
from src.voice_room.media.analysis import FrequencyAnalyser
from src.voice_room.media.base import LocalCapture

logger = logging.getLogger(__name__)


class SpeakingDetector:
    """Threshold classifier with write-on-change bookkeeping.

    Example:
        ```python
        detector = SpeakingDetector(threshold=30.0)
        value = detector.evaluate(level=42.0, muted=False)  # True
        if detector.needs_write(value):
            await persist(value)
            detector.commit(value)
        ```
    """

    def __init__(self, threshold: float, initial: bool = False) -> None:
        """Initialize detector.

        Args:
            threshold: Average level (0-255) that must be exceeded to count as speech
            initial: Value already persisted for the participant
        """
        self.threshold = threshold
        self._last_written = initial
        self.transitions = 0

    @property
    def last_written(self) -> bool:
        return self._last_written

    def evaluate(self, level: float, muted: bool) -> bool:
        """Speaking iff the level exceeds the threshold and the mic is not muted."""
        return level > self.threshold and not muted

    def needs_write(self, value: bool) -> bool:
        return value != self._last_written

    def commit(self, value: bool) -> None:
        """Record that ``value`` was persisted."""
        if value != self._last_written:
            self.transitions += 1
        self._last_written = value


class SpeakingMonitor:
    """Background task driving speaking detection for one capture."""

    def __init__(
        self,
        capture: LocalCapture,
        analyser: FrequencyAnalyser,
        detector: SpeakingDetector,
        is_muted: Callable[[], bool],
        write: Callable[[bool], Awaitable[None]],
        interval_ms: int = 16,
    ) -> None:
        self._capture = capture
        self._analyser = analyser
        self.detector = detector
        self._is_muted = is_muted
        self._write = write
        self._interval_s = interval_ms / 1000.0
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="speaking-monitor")

    async def stop(self) -> None:
        """Stop sampling and reset the analysis graph."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._analyser.reset()

    async def sample_once(self) -> bool | None:
        """Take one sample; persist on change.

        Returns:
            The evaluated speaking flag, or None if no audio has been captured yet
        """
        if self._capture.stopped:
            return None
        samples = self._capture.read_time_domain()
        if samples is None:
            return None

        level = self._analyser.average_level(samples)
        value = self.detector.evaluate(level, self._is_muted())
        if self.detector.needs_write(value):
            try:
                await self._write(value)
            except (StoreError, LookupError) as e:
                # Leave last_written untouched so the next tick retries
                logger.warning(f"Failed to persist speaking flag: {e}")
                return value
            self.detector.commit(value)
            logger.debug(f"Speaking flag changed to {value} (level={level:.1f})")
        return value

    async def _run(self) -> None:
        while True:
            await self.sample_once()
            await asyncio.sleep(self._interval_s)
