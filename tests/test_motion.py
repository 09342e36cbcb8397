"""Tests for the timed-turn model and LED color helpers."""

import pytest

from rvr_plus_mcp.models.colors import RAINBOW, LedColor, interpolate
from rvr_plus_mcp.models.motion import (
    angle_factor,
    arc_wheel_speeds,
    clamp_turn_speed,
    speed_factor,
    turn_duration_ms,
)


def test_clamp_turn_speed():
    assert clamp_turn_speed(10) == 30
    assert clamp_turn_speed(500) == 200
    assert clamp_turn_speed(100) == 100


def test_speed_factor():
    assert speed_factor(100) == 1.0
    assert speed_factor(200) == 0.5
    # Below the reference speed an extra friction term applies.
    assert speed_factor(50) == pytest.approx(2.0 * 1.25)


def test_angle_factor():
    assert angle_factor(30) == 0.85
    assert angle_factor(90) == 1.0
    assert angle_factor(180) == 1.0
    assert angle_factor(270) == 1.05


def test_turn_duration_reference():
    """90 degrees at speed 100 is 12 ms per degree."""
    assert turn_duration_ms(90, 100) == 1080


def test_turn_duration_small_angle():
    assert turn_duration_ms(30, 100) == int(30 * (12.0 * 1.0 * 0.85))


def test_turn_duration_large_angle_fast():
    assert turn_duration_ms(360, 200) == int(360 * (12.0 * 0.5 * 1.05))


def test_turn_duration_clamps_speed():
    assert turn_duration_ms(90, 1000) == turn_duration_ms(90, 200)


def test_turn_duration_zero():
    assert turn_duration_ms(0, 100) == 0


def test_arc_wheel_speeds():
    assert arc_wheel_speeds(200, 0.0) == (200, 200)
    assert arc_wheel_speeds(200, 0.5) == (200, 100)
    assert arc_wheel_speeds(200, -0.25) == (150, 200)
    assert arc_wheel_speeds(400, -2.0) == (0, 255)


def test_led_color_table():
    assert LedColor.ORANGE.rgb == (255, 165, 0)
    assert LedColor.LIME.rgb == (50, 205, 50)
    assert LedColor.from_name(" pink ") is LedColor.PINK


def test_led_color_unknown_name():
    with pytest.raises(ValueError):
        LedColor.from_name("chartreuse")


def test_rainbow_palette():
    assert len(RAINBOW) == 7
    assert RAINBOW[0] == (255, 0, 0)
    assert RAINBOW[-1] == (238, 130, 238)


def test_interpolate():
    assert interpolate((0, 0, 0), (255, 100, 10), 0.0) == (0, 0, 0)
    assert interpolate((0, 0, 0), (255, 100, 10), 0.5) == (127, 50, 5)
    assert interpolate((255, 0, 0), (0, 0, 255), 1.0) == (0, 0, 255)
