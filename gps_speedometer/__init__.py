"""
GPS Speedometer - smoothed GPS speed with a live video overlay
"""

__version__ = "1.0.0"

from .core import SpeedEstimator, SpeedSmoother, TrackingSession, Unit, distance_and_speed
from .capture import CaptureController
from .overlay import OverlayRenderer
