"""
Position fixes and the position sources that deliver them
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Fix:
    """A single geographic position sample"""

    latitude: float
    longitude: float
    timestamp_ms: int


@dataclass(frozen=True)
class PositionReading:
    """Everything a position source reports for one update"""

    fix: Fix
    speed_mps: Optional[float] = None
    accuracy_m: Optional[float] = None
    heading_deg: Optional[float] = None


class PositionErrorKind(Enum):
    """Classified position source failures, valued by their user-facing message"""

    PERMISSION_DENIED = "Location access denied. Please enable location permissions."
    POSITION_UNAVAILABLE = "Location information unavailable."
    TIMEOUT = "Location request timed out."
    UNKNOWN = "An unknown error occurred."

    @property
    def message(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value) -> "PositionErrorKind":
        """Map a loose error label (``"timeout"``, ``"PERMISSION_DENIED"``, ``3``) to a kind"""
        if isinstance(value, cls):
            return value
        # W3C PositionError codes
        codes = {1: cls.PERMISSION_DENIED, 2: cls.POSITION_UNAVAILABLE, 3: cls.TIMEOUT}
        try:
            return codes[int(value)]
        except (TypeError, ValueError, KeyError):
            pass
        name = str(value).strip().upper().replace("-", "_").replace(" ", "_")
        return cls.__members__.get(name, cls.UNKNOWN)


@dataclass(frozen=True)
class WatchOptions:
    """Subscription settings handed to a position source"""

    high_accuracy: bool = True
    timeout_ms: int = 10000
    max_fix_age_ms: int = 1000


FixCallback = Callable[[PositionReading], None]
ErrorCallback = Callable[[PositionErrorKind], None]


class GeoPositionSource:
    """Continuous stream of position readings.

    Implementations call ``on_fix`` / ``on_error`` for every subscription
    until it is cancelled with ``unsubscribe``.
    """

    def subscribe(self, options: WatchOptions, on_fix: FixCallback,
                  on_error: ErrorCallback) -> int:
        raise NotImplementedError

    def unsubscribe(self, handle: int) -> None:
        raise NotImplementedError

    def poll(self, now_ms: int) -> None:
        """Deliver whatever is due at ``now_ms``. Push-based sources may ignore this."""


@dataclass
class ReplayEvent:
    """One row of a fix log, positioned on the replay timeline"""

    offset_ms: int
    reading: Optional[PositionReading] = None
    error: Optional[PositionErrorKind] = None


@dataclass
class _Subscription:
    options: WatchOptions
    on_fix: FixCallback
    on_error: ErrorCallback
    cursor: int
    last_activity_ms: int


class ReplayPositionSource(GeoPositionSource):
    """Replays a recorded fix log against the host clock.

    Event offsets are milliseconds since the first logged row; ``poll`` is
    called with the current position on that same timeline. A subscription
    only sees events at or after the moment it was made. When no event
    arrives within ``timeout_ms`` the subscriber receives a TIMEOUT failure,
    once per elapsed timeout period.
    """

    def __init__(self, events: List[ReplayEvent]):
        self.events = sorted(events, key=lambda e: e.offset_ms)
        self._subscriptions: Dict[int, _Subscription] = {}
        self._next_handle = 1
        self._now_ms = 0

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "ReplayPositionSource":
        """Build a source from a normalized fix log (see ``utils.load_fix_log``)"""
        if df.empty:
            return cls([])

        origin = int(df['timestamp_ms'].iloc[0])
        events = []
        for row in df.itertuples(index=False):
            timestamp_ms = int(row.timestamp_ms)
            error = getattr(row, 'error', None)
            if isinstance(error, str) and error.strip():
                events.append(ReplayEvent(timestamp_ms - origin, error=PositionErrorKind.parse(error)))
                continue

            reading = PositionReading(
                fix=Fix(float(row.latitude), float(row.longitude), timestamp_ms),
                speed_mps=_optional_float(getattr(row, 'speed_mps', None)),
                accuracy_m=_optional_float(getattr(row, 'accuracy_m', None)),
                heading_deg=_optional_float(getattr(row, 'heading_deg', None)),
            )
            events.append(ReplayEvent(timestamp_ms - origin, reading=reading))

        return cls(events)

    @property
    def duration_ms(self) -> int:
        return self.events[-1].offset_ms if self.events else 0

    def exhausted(self) -> bool:
        """True once every subscription has been handed every event"""
        return all(sub.cursor >= len(self.events) for sub in self._subscriptions.values())

    def subscribe(self, options: WatchOptions, on_fix: FixCallback,
                  on_error: ErrorCallback) -> int:
        handle = self._next_handle
        self._next_handle += 1

        cursor = 0
        while cursor < len(self.events) and self.events[cursor].offset_ms < self._now_ms:
            cursor += 1

        self._subscriptions[handle] = _Subscription(options, on_fix, on_error, cursor, self._now_ms)
        logger.debug(f"Replay subscription {handle} starts at event {cursor}/{len(self.events)}")
        return handle

    def unsubscribe(self, handle: int) -> None:
        if self._subscriptions.pop(handle, None) is not None:
            logger.debug(f"Replay subscription {handle} cancelled")

    def poll(self, now_ms: int) -> None:
        self._now_ms = max(self._now_ms, int(now_ms))

        for handle in list(self._subscriptions):
            self._pump(handle)

    def _pump(self, handle: int) -> None:
        sub = self._subscriptions.get(handle)
        while sub is not None and sub.cursor < len(self.events):
            event = self.events[sub.cursor]
            if event.offset_ms > self._now_ms:
                break

            self._check_timeout(sub, event.offset_ms)
            if handle not in self._subscriptions:
                return

            sub.cursor += 1
            sub.last_activity_ms = event.offset_ms
            if event.error is not None:
                sub.on_error(event.error)
            else:
                sub.on_fix(event.reading)
            sub = self._subscriptions.get(handle)

        if sub is not None:
            self._check_timeout(sub, self._now_ms)

    @staticmethod
    def _check_timeout(sub: _Subscription, at_ms: int) -> None:
        if at_ms - sub.last_activity_ms > sub.options.timeout_ms:
            sub.last_activity_ms = at_ms
            sub.on_error(PositionErrorKind.TIMEOUT)


def _optional_float(value) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(value)
