"""
Core speed estimation: distance math, source arbitration, smoothing and the tracking session
"""

import logging
import math
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from .geo import (
    Fix,
    GeoPositionSource,
    PositionErrorKind,
    PositionReading,
    WatchOptions,
)

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371e3
MPS_TO_MPH = 2.237
MPH_TO_KMH = 1.609344


class SpeedometerError(Exception):
    """Base class for GPS Speedometer errors"""


class UnsupportedPlatformError(SpeedometerError):
    """Raised when tracking is started without any position source"""

    message = "Geolocation is not supported by this platform"

    def __init__(self, message: str = None):
        super().__init__(message or self.message)


class Unit(Enum):
    """Display units. Speeds are always stored in mph."""

    MPH = "mph"
    KMH = "kmh"

    @property
    def label(self) -> str:
        return self.value.upper()

    def convert(self, speed_mph: float) -> float:
        """Convert an internal mph value for display"""
        if self is Unit.KMH:
            return speed_mph * MPH_TO_KMH
        return speed_mph

    @classmethod
    def parse(cls, value) -> "Unit":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("/", "").replace("_", "")
        if normalized in ("kmh", "kph", "km"):
            return cls.KMH
        if normalized == "mph":
            return cls.MPH
        raise ValueError(f"Unknown speed unit: {value!r}")


def haversine_distance(a: Fix, b: Fix) -> float:
    """Great-circle distance between two fixes in metres"""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    delta_phi = math.radians(b.latitude - a.latitude)
    delta_lambda = math.radians(b.longitude - a.longitude)

    h = (math.sin(delta_phi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))

    return EARTH_RADIUS_M * c


def distance_and_speed(a: Fix, b: Fix) -> float:
    """
    Average speed needed to travel between two fixes

    Args:
        a: Earlier fix
        b: Later fix

    Returns:
        Speed in mph, 0 when both fixes share a timestamp
    """
    time_delta = (b.timestamp_ms - a.timestamp_ms) / 1000
    if time_delta == 0:
        return 0.0

    return haversine_distance(a, b) / time_delta * MPS_TO_MPH


class SpeedEstimator:
    """Chooses between device-reported speed and speed derived from consecutive fixes"""

    def estimate(self, current: Fix, device_speed_mps: Optional[float],
                 last_fix: Optional[Fix]) -> float:
        """
        Produce one raw speed sample for a fix

        Device speed wins whenever it is reported and non-negative. Otherwise
        the speed is derived from the previous fix, or 0 for the first fix of
        a session. Callers must remember ``current`` as the next ``last_fix``.

        Returns:
            Non-negative speed in mph
        """
        if device_speed_mps is not None and device_speed_mps >= 0:
            speed = device_speed_mps * MPS_TO_MPH
        elif last_fix is not None:
            speed = distance_and_speed(last_fix, current)
        else:
            speed = 0.0

        # Clock skew between fixes can produce a negative delta
        return max(0.0, speed)


class SpeedSmoother:
    """Linearly weighted average over the most recent raw samples"""

    def __init__(self, window_size: int = 5):
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        self.window_size = window_size
        self.window = deque(maxlen=window_size)

    def push(self, raw_speed: float) -> float:
        """Add a sample and return the smoothed speed (newest sample weighs most)"""
        self.window.append(raw_speed)

        weighted_sum = 0.0
        total_weight = 0
        for index, speed in enumerate(self.window):
            weight = index + 1
            weighted_sum += speed * weight
            total_weight += weight

        return weighted_sum / total_weight

    def clear(self) -> None:
        self.window.clear()

    def samples(self) -> List[float]:
        return list(self.window)


class TrackingState(Enum):
    IDLE = "idle"
    TRACKING = "tracking"


@dataclass
class SessionStats:
    """Externally observable tracking statistics"""

    max_speed: float = 0.0
    accuracy_m: Optional[float] = None
    heading_deg: Optional[float] = None
    connected: bool = False


class TrackingSession:
    """
    Owns the position subscription and turns incoming fixes into a smoothed speed

    Fields are written only by the session's own handlers; renderers and
    displays read ``speed``, ``stats`` and ``error``.
    """

    def __init__(self, source: Optional[GeoPositionSource],
                 options: Optional[WatchOptions] = None,
                 window_size: int = 5):
        self.source = source
        self.options = options or WatchOptions()
        self.estimator = SpeedEstimator()
        self.smoother = SpeedSmoother(window_size)

        self.state = TrackingState.IDLE
        self.speed = 0.0
        self.stats = SessionStats()
        self.error: Optional[str] = None
        self.last_fix: Optional[Fix] = None

        self._subscription: Optional[int] = None
        self._generation = 0

    @property
    def is_tracking(self) -> bool:
        return self.state is TrackingState.TRACKING

    @property
    def max_speed(self) -> float:
        return self.stats.max_speed

    @property
    def connected(self) -> bool:
        return self.stats.connected

    def start(self) -> None:
        """Subscribe to the position source and begin tracking"""
        if self.source is None:
            self.error = UnsupportedPlatformError.message
            raise UnsupportedPlatformError()

        if self.is_tracking:
            return

        self.error = None
        self.state = TrackingState.TRACKING
        self.last_fix = None
        self.smoother.clear()

        self._generation += 1
        generation = self._generation
        self._subscription = self.source.subscribe(
            self.options,
            lambda reading: self._on_fix(generation, reading),
            lambda kind: self._on_error(generation, kind),
        )
        logger.info(f"Tracking started (subscription {self._subscription})")

    def stop(self) -> None:
        """Cancel the subscription; max speed, accuracy and heading are kept"""
        if not self.is_tracking:
            return

        if self._subscription is not None:
            self.source.unsubscribe(self._subscription)
            self._subscription = None
        # Invalidates callbacks already queued by the cancelled subscription
        self._generation += 1

        self.state = TrackingState.IDLE
        self.stats.connected = False
        self.speed = 0.0
        logger.info(f"Tracking stopped (max speed {self.stats.max_speed:.1f} mph)")

    def reset_max_speed(self) -> None:
        self.stats.max_speed = 0.0

    def display_speed(self, unit: Unit) -> float:
        return unit.convert(self.speed)

    def display_max_speed(self, unit: Unit) -> float:
        return unit.convert(self.stats.max_speed)

    def _is_current(self, generation: int) -> bool:
        return self.is_tracking and generation == self._generation

    def _on_fix(self, generation: int, reading: PositionReading) -> None:
        if not self._is_current(generation):
            logger.debug("Ignoring fix from a cancelled subscription")
            return

        self.stats.connected = True
        self.stats.accuracy_m = reading.accuracy_m
        if reading.heading_deg is not None:
            self.stats.heading_deg = reading.heading_deg
        self.error = None

        raw_speed = self.estimator.estimate(reading.fix, reading.speed_mps, self.last_fix)
        self.speed = self.smoother.push(raw_speed)
        self.stats.max_speed = max(self.stats.max_speed, self.speed)
        self.last_fix = reading.fix

        logger.debug(f"Fix at {reading.fix.timestamp_ms}: raw {raw_speed:.2f} mph, "
                     f"smoothed {self.speed:.2f} mph")

    def _on_error(self, generation: int, kind: PositionErrorKind) -> None:
        if not self._is_current(generation):
            return

        self.stats.connected = False
        self.error = kind.message
        logger.warning(f"Position source failure: {kind.name}")
