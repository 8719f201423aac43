"""
Speed dial overlay drawn onto video frames
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image, ImageDraw, ImageFont

from .core import TrackingSession, Unit

logger = logging.getLogger(__name__)

FONT_SEARCH_PATHS = [
    Path("/usr/share/fonts"),
    Path("/Library/Fonts"),
    Path("/mnt/c/Windows/Fonts"),
]

RING_COLOR = (168, 85, 247, 51)
PANEL_COLOR = (15, 23, 42, 170)
READOUT_COLOR = (255, 255, 255, 255)
LABEL_COLOR = (216, 180, 254, 255)
CONNECTED_COLOR = (34, 197, 94, 255)
DISCONNECTED_COLOR = (239, 68, 68, 255)
# Progress arc colour ramp: blue -> violet -> pink
ARC_STOPS = [
    (0.0, (59, 130, 246)),
    (0.5, (139, 92, 246)),
    (1.0, (236, 72, 153)),
]


@lru_cache(maxsize=32)
def ensure_font(size: int, bold: bool = False) -> ImageFont.ImageFont:
    """Load a TrueType font from common system locations, falling back to Pillow's default"""
    font_names = ["DejaVuSans-Bold.ttf" if bold else "DejaVuSans.ttf",
                  "Arial Bold.ttf" if bold else "Arial.ttf",
                  "Roboto-Bold.ttf" if bold else "Roboto-Regular.ttf"]

    for path in FONT_SEARCH_PATHS:
        if not path.exists():
            continue
        for name in font_names:
            found = next(path.rglob(name), None)
            if found:
                try:
                    return ImageFont.truetype(str(found), size)
                except OSError:
                    logger.debug(f"Could not load font {found}")

    return ImageFont.load_default(size=size)


def arc_color(fraction: float) -> Tuple[int, int, int, int]:
    """Colour of the progress arc for a fill fraction in [0, 1]"""
    for (start, low), (end, high) in zip(ARC_STOPS, ARC_STOPS[1:]):
        if fraction <= end:
            t = (fraction - start) / (end - start)
            r, g, b = (round(lo + (hi - lo) * t) for lo, hi in zip(low, high))
            return r, g, b, 255
    r, g, b = ARC_STOPS[-1][1]
    return r, g, b, 255


def stroke_width(size: int) -> int:
    return max(3, size // 14)


class OverlayRenderer:
    """
    Composites a speed dial onto BGR video frames

    The dial sits in the bottom-right corner and is sized relative to the
    frame. Rendering never modifies the input frame or the tracking session.
    """

    def __init__(self, max_speed: float = 200.0, scale: float = 0.32, margin: float = 0.03):
        self.max_speed = max_speed
        self.scale = scale
        self.margin = margin

    def fill_fraction(self, display_speed: float) -> float:
        return max(0.0, min(display_speed / self.max_speed, 1.0))

    def dial_box(self, width: int, height: int) -> Tuple[int, int, int]:
        """Top-left corner and edge length of the dial for a frame size"""
        size = min(width, height, max(48, int(min(width, height) * self.scale)))
        margin = int(min(width, height) * self.margin)
        x = max(0, width - size - margin)
        y = max(0, height - size - margin)
        return x, y, size

    def render(self, frame: np.ndarray, speed: float, unit: Unit, connected: bool,
               heading: Optional[float] = None) -> np.ndarray:
        """
        Draw the dial over a frame

        Args:
            frame: BGR image (height x width x 3, uint8)
            speed: Smoothed speed in mph
            unit: Display unit
            connected: Whether the position source is delivering fixes
            heading: Optional heading in degrees shown under the unit label

        Returns:
            New BGR image with the dial composited in
        """
        height, width = frame.shape[:2]
        x, y, size = self.dial_box(width, height)
        if size < 2 * stroke_width(size):
            logger.debug(f"Frame {width}x{height} too small for the dial")
            return frame.copy()

        dial =self.draw_dial(size, unit.convert(speed), unit, connected, heading)
        dial_bgra = cv2.cvtColor(np.asarray(dial), cv2.COLOR_RGBA2BGRA)

        output = frame.copy()
        region = output[y:y + size, x:x + size].astype(np.float32)
        alpha = dial_bgra[:, :, 3:4].astype(np.float32) / 255.0
        blended = region * (1.0 - alpha) + dial_bgra[:, :, :3].astype(np.float32) * alpha
        output[y:y + size, x:x + size] = np.clip(np.rint(blended), 0, 255).astype(np.uint8)

        return output

    def render_session(self, frame: np.ndarray, session: TrackingSession, unit: Unit) -> np.ndarray:
        """Render using the session's current speed, connectivity and heading"""
        return self.render(frame, session.speed, unit, session.stats.connected,
                           session.stats.heading_deg)

    def draw_dial(self, size: int, display_speed: float, unit: Unit, connected: bool,
                  heading: Optional[float] = None) -> Image.Image:
        """Draw the dial on a transparent square RGBA canvas"""
        canvas = Image.new("RGBA", (size, size), (0, 0, 0, 0))
        stroke = stroke_width(size)
        if size < 2 * stroke:
            return canvas
        draw = ImageDraw.Draw(canvas)

        inset = stroke // 2 + 1
        bbox = (inset, inset, size - inset - 1, size - inset - 1)

        draw.ellipse(bbox, fill=PANEL_COLOR)
        draw.arc(bbox, start=0, end=360, fill=RING_COLOR, width=stroke)

        # 0 degrees in PIL is 3 o'clock; the sweep starts at 12 o'clock, clockwise
        fraction = self.fill_fraction(display_speed)
        if fraction > 0:
            draw.arc(bbox, start=-90, end=-90 + fraction * 360,
                     fill=arc_color(fraction), width=stroke)

        center = size / 2
        readout_font = ensure_font(max(8, size // 5), bold=True)
        label_font = ensure_font(max(6, size // 11), bold=True)
        small_font = ensure_font(max(6, size // 14))

        readout = f"{display_speed:.1f}"
        _draw_centered(draw, readout, center, center - size * 0.06, readout_font, READOUT_COLOR)
        _draw_centered(draw, unit.label, center, center + size * 0.14, label_font, LABEL_COLOR)
        if heading is not None:
            _draw_centered(draw, f"{round(heading)}°", center, center + size * 0.27,
                           small_font, LABEL_COLOR)

        dot = max(3, size // 24)
        dot_x = center + size * 0.3
        dot_y = center - size * 0.3
        draw.ellipse((dot_x - dot, dot_y - dot, dot_x + dot, dot_y + dot),
                     fill=CONNECTED_COLOR if connected else DISCONNECTED_COLOR)

        return canvas


def _draw_centered(draw: ImageDraw.ImageDraw, text: str, cx: float, cy: float,
                   font: ImageFont.ImageFont, fill) -> None:
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    draw.text((cx - (right - left) / 2 - left, cy - (bottom - top) / 2 - top),
              text, font=font, fill=fill)
