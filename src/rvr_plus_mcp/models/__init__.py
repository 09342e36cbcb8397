"""Data models for colors, motion timing, and sensor readings."""

from .colors import RAINBOW, LedColor
from .motion import arc_wheel_speeds, turn_duration_ms
from .sensors import (
    ColorReading,
    DistanceReading,
    ImuReading,
    SensorSnapshot,
    SensorState,
)
