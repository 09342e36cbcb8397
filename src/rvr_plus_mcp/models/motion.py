"""Open-loop timing model for turns and arcs.

Turns are dead-reckoned: a rotation of N degrees is converted into a drive
duration and the motors are stopped when it elapses. Nothing checks the
angle actually achieved, so error accumulates over repeated turns.
"""

from __future__ import annotations

BASE_MS_PER_DEGREE = 12.0  # at speed 100
REFERENCE_SPEED = 100.0
MIN_TURN_SPEED = 30
MAX_TURN_SPEED = 200
SMALL_ANGLE = 45
LARGE_ANGLE = 180
SMALL_ANGLE_FACTOR = 0.85
LARGE_ANGLE_FACTOR = 1.05


def clamp_turn_speed(speed: int) -> int:
    return max(MIN_TURN_SPEED, min(MAX_TURN_SPEED, int(speed)))


def speed_factor(speed: int) -> float:
    """Duration multiplier for a turn speed.

    Above the reference speed the relation is roughly linear. Below it the
    wheels lose proportionally more to friction, so an extra term applies.
    """
    if speed >= REFERENCE_SPEED:
        return REFERENCE_SPEED / speed
    return (REFERENCE_SPEED / speed) * (1.0 + (REFERENCE_SPEED - speed) / 200.0)


def angle_factor(degrees: int) -> float:
    if degrees < SMALL_ANGLE:
        return SMALL_ANGLE_FACTOR
    if degrees > LARGE_ANGLE:
        return LARGE_ANGLE_FACTOR
    return 1.0


def turn_duration_ms(degrees: int, speed: int = 100) -> int:
    """Milliseconds to spin in place for ``degrees`` at ``speed``.

    ``speed`` is clamped to the usable turn range first.
    """
    if degrees <= 0:
        return 0
    speed = clamp_turn_speed(speed)
    per_degree = BASE_MS_PER_DEGREE * speed_factor(speed) * angle_factor(degrees)
    return int(degrees * per_degree)


def arc_wheel_speeds(speed: int, turn_ratio: float) -> tuple[int, int]:
    """Wheel speeds for a gradual turn.

    Args:
        speed: Base speed, clamped to 0..255.
        turn_ratio: -1.0 (hard left) .. 1.0 (hard right); the inner wheel
            is slowed by this fraction.

    Returns:
        (left, right) speeds.
    """
    speed = max(0, min(255, int(speed)))
    turn_ratio = max(-1.0, min(1.0, float(turn_ratio)))
    if turn_ratio < 0:
        return int(speed * (1.0 + turn_ratio)), speed
    if turn_ratio > 0:
        return speed, int(speed * (1.0 - turn_ratio))
    return speed, speed
