"""
Tests for the speed dial overlay
"""

import numpy as np
import pytest

from gps_speedometer.core import TrackingSession, Unit
from gps_speedometer.geo import Fix, PositionReading
from gps_speedometer.overlay import OverlayRenderer, arc_color


@pytest.fixture
def frame():
    rng = np.random.default_rng(7)
    return rng.integers(0, 256, size=(240, 320, 3), dtype=np.uint8)


class TestOverlayRenderer:

    def test_returns_new_frame(self, frame):
        original = frame.copy()
        renderer = OverlayRenderer()

        output = renderer.render(frame, 42.0, Unit.MPH, True)

        assert output is not frame
        assert output.shape == frame.shape
        assert output.dtype == np.uint8
        assert np.array_equal(frame, original)

    def test_idempotent(self, frame):
        renderer = OverlayRenderer()

        first = renderer.render(frame, 42.0, Unit.KMH, False, heading=90.0)
        second = renderer.render(frame, 42.0, Unit.KMH, False, heading=90.0)

        assert np.array_equal(first, second)

    def test_only_dial_region_changes(self, frame):
        renderer = OverlayRenderer()
        x, y, size = renderer.dial_box(320, 240)

        output = renderer.render(frame, 80.0, Unit.MPH, True)

        mask = np.ones(frame.shape[:2], dtype=bool)
        mask[y:y + size, x:x + size] = False
        assert np.array_equal(output[mask], frame[mask])
        assert not np.array_equal(output[y:y + size, x:x + size], frame[y:y + size, x:x + size])

    def test_dial_in_bottom_right(self):
        x, y, size = OverlayRenderer().dial_box(1280, 720)

        assert x + size <= 1280 and y + size <= 720
        assert x > 640 and y > 360

    def test_dial_fits_tiny_frames(self):
        x, y, size = OverlayRenderer().dial_box(40, 30)
        assert size <= 30
        assert x >= 0 and y >= 0

    def test_frame_too_small_for_dial(self):
        frame = np.zeros((4, 4, 3), dtype=np.uint8)

        output = OverlayRenderer().render(frame, 10.0, Unit.MPH, True)

        assert output is not frame
        assert np.array_equal(output, frame)
        assert OverlayRenderer().draw_dial(4, 10.0, Unit.MPH, True).getpixel((2, 2))[3] == 0

    def test_speed_changes_the_dial(self, frame):
        renderer = OverlayRenderer()
        stopped = renderer.render(frame, 0.0, Unit.MPH, True)
        moving = renderer.render(frame, 100.0, Unit.MPH, True)
        assert not np.array_equal(stopped, moving)

    def test_connectivity_changes_the_dial(self, frame):
        renderer = OverlayRenderer()
        connected = renderer.render(frame, 10.0, Unit.MPH, True)
        disconnected = renderer.render(frame, 10.0, Unit.MPH, False)
        assert not np.array_equal(connected, disconnected)

    @pytest.mark.parametrize("display_speed,expected", [
        (0.0, 0.0),
        (100.0, 0.5),
        (200.0, 1.0),
        (450.0, 1.0),
        (-3.0, 0.0),
    ])
    def test_fill_fraction(self, display_speed, expected):
        assert OverlayRenderer().fill_fraction(display_speed) == pytest.approx(expected)

    def test_fill_fraction_uses_display_unit(self):
        renderer = OverlayRenderer()
        # 150 mph reads as ~241 km/h, past the end of the dial
        assert renderer.fill_fraction(Unit.KMH.convert(150.0)) == 1.0
        assert renderer.fill_fraction(Unit.MPH.convert(150.0)) == pytest.approx(0.75)

    def test_draw_dial_canvas(self):
        dial = OverlayRenderer().draw_dial(120, 55.5, Unit.MPH, True, heading=12.0)
        assert dial.mode == "RGBA"
        assert dial.size == (120, 120)
        # Corners stay transparent
        assert dial.getpixel((0, 0))[3] == 0

    def test_render_session_is_read_only(self, frame, manual_source):
        session = TrackingSession(manual_source)
        session.start()
        manual_source.emit(PositionReading(Fix(0.0, 0.0, 0), speed_mps=15.0, heading_deg=45.0))
        speed, max_speed = session.speed, session.max_speed

        renderer = OverlayRenderer()
        output = renderer.render_session(frame, session, Unit.KMH)

        assert session.speed == speed
        assert session.max_speed == max_speed
        assert np.array_equal(output, renderer.render(frame, speed, Unit.KMH, True, heading=45.0))


class TestArcColor:

    def test_endpoints(self):
        assert arc_color(0.0) == (59, 130, 246, 255)
        assert arc_color(0.5) == (139, 92, 246, 255)
        assert arc_color(1.0) == (236, 72, 153, 255)

    def test_midway_blend(self):
        r, g, b, a = arc_color(0.25)
        assert 59 < r < 139
        assert a == 255
