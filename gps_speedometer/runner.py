"""
Cooperative host loop: pumps the position source and ticks the frame clock
"""

import logging
import time
from typing import Callable, Optional

from .capture import CaptureController
from .core import TrackingSession

logger = logging.getLogger(__name__)


class MonotonicClock:
    """Wall-clock pacing for live sessions"""

    def now(self) -> float:
        return time.monotonic()

    def wait_until(self, deadline: float) -> None:
        delay = deadline - self.now()
        if delay > 0:
            time.sleep(delay)


class VirtualClock:
    """Clock that jumps straight to each deadline, for replaying recorded footage"""

    def __init__(self, start: float = 0.0):
        self._now = start

    def now(self) -> float:
        return self._now

    def wait_until(self, deadline: float) -> None:
        self._now = max(self._now, deadline)


class SpeedometerRunner:
    """
    Single-threaded event loop joining the tracking session and the capture controller

    Every iteration reads the clock, lets the position source deliver the
    fixes that are due and then ticks the capture controller. Handlers run to
    completion one after another, so no locking is involved.

    Args:
        session: Tracking session whose source is pumped
        capture: Optional capture controller ticked at ``display_fps``
        clock: ``MonotonicClock`` (default) or ``VirtualClock``
        display_fps: Frame clock rate
        fix_offset: Seconds of host time before the first logged fix is due
        progress_callback: Called with the elapsed seconds after every tick
    """

    def __init__(self, session: TrackingSession,
                 capture: Optional[CaptureController] = None,
                 clock=None,
                 display_fps: float = 60.0,
                 fix_offset: float = 0.0,
                 progress_callback: Optional[Callable[[float], None]] = None):
        self.session = session
        self.capture = capture
        self.clock = clock or MonotonicClock()
        self.display_fps = display_fps
        self.fix_offset = fix_offset
        self.progress_callback = progress_callback
        self.ticks = 0

    def step(self, elapsed: float) -> None:
        """Process one tick at ``elapsed`` seconds since the loop started"""
        source_time = elapsed - self.fix_offset
        if self.session.source is not None and source_time >= 0:
            self.session.source.poll(int(round(source_time * 1000)))

        if self.capture is not None:
            self.capture.on_frame(elapsed)

        self.ticks += 1
        if self.progress_callback:
            self.progress_callback(elapsed)

    def run(self, until: Optional[Callable[[], bool]] = None,
            max_seconds: Optional[float] = None) -> int:
        """
        Tick until ``until()`` is true or ``max_seconds`` have elapsed

        Returns:
            Number of ticks processed
        """
        if until is None and max_seconds is None:
            raise ValueError("run() needs a stop condition")

        interval = 1.0 / self.display_fps
        start = self.clock.now()
        next_tick = start
        ticks_before = self.ticks

        while True:
            self.clock.wait_until(next_tick)
            elapsed = self.clock.now() - start
            self.step(elapsed)

            if until is not None and until():
                break
            if max_seconds is not None and elapsed >= max_seconds:
                break
            next_tick += interval

        ticks = self.ticks - ticks_before
        logger.debug(f"Runner finished after {ticks} ticks")
        return ticks
