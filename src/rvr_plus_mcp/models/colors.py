"""Named LED colors."""

from __future__ import annotations

from enum import Enum


class LedColor(Enum):
    """Predefined colors for the robot LEDs, valued as (red, green, blue)."""

    OFF = (0, 0, 0)
    RED = (255, 0, 0)
    GREEN = (0, 255, 0)
    BLUE = (0, 0, 255)
    YELLOW = (255, 255, 0)
    CYAN = (0, 255, 255)
    MAGENTA = (255, 0, 255)
    WHITE = (255, 255, 255)
    ORANGE = (255, 165, 0)
    PURPLE = (128, 0, 128)
    PINK = (255, 192, 203)
    LIME = (50, 205, 50)

    @property
    def rgb(self) -> tuple[int, int, int]:
        return self.value

    @classmethod
    def from_name(cls, name: str) -> LedColor:
        try:
            return cls[name.strip().upper()]
        except KeyError:
            raise ValueError(
                f"Unknown color '{name}'. Valid: {[c.name.lower() for c in cls]}"
            ) from None


RAINBOW: tuple[tuple[int, int, int], ...] = (
    (255, 0, 0),
    (255, 165, 0),
    (255, 255, 0),
    (0, 255, 0),
    (0, 0, 255),
    (75, 0, 130),
    (238, 130, 238),
)


def interpolate(
    start: tuple[int, int, int], end: tuple[int, int, int], progress: float
) -> tuple[int, int, int]:
    """Linear blend between two colors, truncated to whole channel values."""
    return tuple(int(a + (b - a) * progress) for a, b in zip(start, end))
