"""Latest-value sensor readings and the cache that owns them."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from ..protocol.parser import (
    AmbientLightEvent,
    ColorEvent,
    EncoderEvent,
    Event,
    ImuEvent,
)

TICKS_TO_DISTANCE = 0.1  # approximate robot units per encoder tick


@dataclass(frozen=True)
class ColorReading:
    """Color sample. A zero timestamp marks a reading that was never taken."""

    red: int = 0
    green: int = 0
    blue: int = 0
    index: int = 0
    confidence: int = 0
    timestamp: float = 0.0

    @property
    def valid(self) -> bool:
        return self.timestamp > 0

    def to_dict(self) -> dict:
        return {
            "red": self.red,
            "green": self.green,
            "blue": self.blue,
            "index": self.index,
            "confidence": self.confidence,
            "valid": self.valid,
        }


@dataclass(frozen=True)
class DistanceReading:
    left_wheel: float = 0.0
    right_wheel: float = 0.0

    @property
    def total(self) -> float:
        return (self.left_wheel + self.right_wheel) / 2.0

    @classmethod
    def from_encoders(cls, left: int, right: int) -> DistanceReading:
        return cls(left * TICKS_TO_DISTANCE, right * TICKS_TO_DISTANCE)

    def to_dict(self) -> dict:
        return {
            "left_wheel": self.left_wheel,
            "right_wheel": self.right_wheel,
            "total": self.total,
        }


@dataclass(frozen=True)
class ImuReading:
    accel_x: float = 0.0
    accel_y: float = 0.0
    accel_z: float = 0.0
    gyro_x: float = 0.0
    gyro_y: float = 0.0
    gyro_z: float = 0.0
    timestamp: float = 0.0

    @property
    def valid(self) -> bool:
        return self.timestamp > 0

    def to_dict(self) -> dict:
        return {
            "accel": [self.accel_x, self.accel_y, self.accel_z],
            "gyro": [self.gyro_x, self.gyro_y, self.gyro_z],
            "valid": self.valid,
        }


@dataclass
class SensorSnapshot:
    """Point-in-time copy of every cached sensor value."""

    color: ColorReading = field(default_factory=ColorReading)
    distance: DistanceReading = field(default_factory=DistanceReading)
    imu: ImuReading = field(default_factory=ImuReading)
    ambient_light: float = 0.0
    last_update: float = 0.0

    def to_dict(self) -> dict:
        return {
            "color": self.color.to_dict(),
            "distance": self.distance.to_dict(),
            "imu": self.imu.to_dict(),
            "ambient_light": self.ambient_light,
            "last_update": self.last_update,
        }


class SensorState:
    """Most recent value per sensor, overwritten as frames are classified.

    No history is kept. Readers get the latest value or an invalid zero
    reading if nothing has arrived yet.
    """

    def __init__(self, clock=time.time) -> None:
        self._clock = clock
        self.color: ColorReading | None = None
        self.ambient_light: float | None = None
        self.encoders: tuple[int, int] | None = None
        self.imu: ImuReading | None = None
        self.last_update: float = 0.0

    def apply(self, event: Event) -> bool:
        """Store a decoded event. Returns False for non-sensor events."""
        now = self._clock()
        if isinstance(event, ColorEvent):
            self.color = ColorReading(
                event.red, event.green, event.blue,
                event.index, event.confidence, now,
            )
        elif isinstance(event, AmbientLightEvent):
            self.ambient_light = event.lux
        elif isinstance(event, EncoderEvent):
            self.encoders = (event.left, event.right)
        elif isinstance(event, ImuEvent):
            self.imu = ImuReading(
                event.accel_x, event.accel_y, event.accel_z,
                event.gyro_x, event.gyro_y, event.gyro_z, now,
            )
        else:
            return False
        self.last_update = now
        return True

    def latest_color(self) -> ColorReading:
        return self.color if self.color is not None else ColorReading()

    def distance(self) -> DistanceReading:
        if self.encoders is None:
            return DistanceReading()
        return DistanceReading.from_encoders(*self.encoders)

    def reset_distance(self) -> None:
        """Forget the cached encoder counts after the robot zeroes them."""
        self.encoders = None

    def snapshot(self) -> SensorSnapshot:
        return SensorSnapshot(
            color=self.latest_color(),
            distance=self.distance(),
            imu=self.imu if self.imu is not None else ImuReading(),
            ambient_light=self.ambient_light if self.ambient_light is not None else 0.0,
            last_update=self.last_update,
        )
