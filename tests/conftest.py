"""
Test configuration and fixtures
"""

import pytest
import tempfile
from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np
import pandas as pd

from gps_speedometer.capture import (
    CameraUnavailableError,
    FrameSink,
    MediaSource,
    MediaStream,
    MediaTrack,
)
from gps_speedometer.geo import GeoPositionSource


class ManualPositionSource(GeoPositionSource):
    """Position source whose callbacks are fired by the test"""

    def __init__(self):
        self.subscriptions = {}
        self.unsubscribed = []
        self.options = None
        self._next = 1

    def subscribe(self, options, on_fix, on_error):
        handle = self._next
        self._next += 1
        self.options = options
        self.subscriptions[handle] = (on_fix, on_error)
        return handle

    def unsubscribe(self, handle):
        self.unsubscribed.append(handle)
        self.subscriptions.pop(handle, None)

    def callbacks(self, handle=None):
        handle = handle if handle is not None else max(self.subscriptions)
        return self.subscriptions[handle]

    def emit(self, reading):
        for on_fix, _ in list(self.subscriptions.values()):
            on_fix(reading)

    def fail(self, kind):
        for _, on_error in list(self.subscriptions.values()):
            on_error(kind)


class FakeVideoTrack(MediaTrack):
    kind = "video"

    def __init__(self, frames: List[np.ndarray]):
        super().__init__()
        self.frames = list(frames)
        self.reads = 0

    @property
    def size(self):
        height, width = self.frames[0].shape[:2]
        return width, height

    @property
    def fps(self):
        return 30.0

    @property
    def position_seconds(self):
        return self.reads / 30.0

    def read(self) -> Optional[np.ndarray]:
        if not self.live:
            return None
        if self.reads >= len(self.frames):
            self.ready_state = "ended"
            return None
        frame = self.frames[self.reads]
        self.reads += 1
        return frame


class FakeAudioTrack(MediaTrack):
    kind = "audio"


class FakeMediaSource(MediaSource):
    def __init__(self, frame_count=10, width=320, height=240, fail=False, audio=True):
        self.frame_count = frame_count
        self.width = width
        self.height = height
        self.fail = fail
        self.audio = audio
        self.streams = []
        self.constraints = None

    def acquire(self, constraints):
        self.constraints = constraints
        if self.fail:
            raise CameraUnavailableError("no camera attached")
        frames = [np.full((self.height, self.width, 3), i * 10 % 256, dtype=np.uint8)
                  for i in range(self.frame_count)]
        stream = MediaStream(FakeVideoTrack(frames), FakeAudioTrack() if self.audio else None)
        self.streams.append(stream)
        return stream


class FakeFrameSink(FrameSink):
    """Encoder stand-in: every pushed frame becomes one chunk"""

    def __init__(self):
        self.opened_with = None
        self.frames = []
        self.pending = []
        self.closed = False

    def open(self, width, height, fps, audio=None, audio_start=0.0):
        self.opened_with = (width, height, fps, audio, audio_start)

    def push(self, frame):
        self.frames.append(frame)
        self.pending.append(f"frame{len(self.frames)};".encode())

    def pull(self):
        chunks, self.pending = self.pending, []
        return chunks

    def close(self):
        self.closed = True
        return self.pull() + [b"trailer"]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def manual_source():
    return ManualPositionSource()


@pytest.fixture
def fake_media_source():
    return FakeMediaSource()


@pytest.fixture
def sinks():
    """List collecting every FakeFrameSink created by the controller"""
    return []


@pytest.fixture
def sink_factory(sinks):
    def factory():
        sink = FakeFrameSink()
        sinks.append(sink)
        return sink
    return factory


@pytest.fixture
def mock_video_file(temp_dir):
    """Create a mock video file for testing"""
    video_path = temp_dir / "test_video.mp4"

    # Create a simple test video using OpenCV
    fourcc = cv2.VideoWriter_fourcc(*'mp4v')
    out = cv2.VideoWriter(str(video_path), fourcc, 10.0, (320, 240))

    for i in range(10):
        frame = np.zeros((240, 320, 3), dtype=np.uint8)
        cv2.putText(frame, f"Frame {i}", (40, 120), cv2.FONT_HERSHEY_SIMPLEX, 1, (255, 255, 255), 2)
        out.write(frame)

    out.release()
    return video_path


@pytest.fixture
def sample_fix_rows():
    """A short drive along the equator: one derived-speed fix, device speeds, a timeout"""
    return [
        {'timestamp_ms': 1000, 'latitude': 0.0, 'longitude': 0.0,
         'speed_mps': None, 'accuracy_m': 5.0, 'heading_deg': None, 'error': None},
        {'timestamp_ms': 2000, 'latitude': 0.0, 'longitude': 0.0001,
         'speed_mps': None, 'accuracy_m': 4.0, 'heading_deg': 90.0, 'error': None},
        {'timestamp_ms': 3000, 'latitude': 0.0, 'longitude': 0.0002,
         'speed_mps': 10.0, 'accuracy_m': 3.0, 'heading_deg': None, 'error': None},
        {'timestamp_ms': 3500, 'latitude': None, 'longitude': None,
         'speed_mps': None, 'accuracy_m': None, 'heading_deg': None, 'error': 'timeout'},
        {'timestamp_ms': 4000, 'latitude': 0.0, 'longitude': 0.0003,
         'speed_mps': 12.0, 'accuracy_m': 3.0, 'heading_deg': 92.0, 'error': None},
    ]


@pytest.fixture
def sample_fix_log(temp_dir, sample_fix_rows):
    """Write the sample drive to a CSV fix log"""
    csv_path = temp_dir / "fixes.csv"
    pd.DataFrame(sample_fix_rows).to_csv(csv_path, index=False)
    return csv_path


@pytest.fixture
def failing_media_source():
    return FakeMediaSource(fail=True)
