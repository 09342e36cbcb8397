"""Device/command identifiers and high-level command builders.

Every builder is a pure function of its arguments and the sequence number
it is given; the controller owns the counter and the transport.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable

from .framing import build_official_frame, build_raw_frame

FLAG_REQUEST = 0x02
FLAG_NONE = 0x00
ROBUST_FLAGS = (FLAG_REQUEST, FLAG_NONE)

MAX_SPEED = 255


class DeviceId(IntEnum):
    """Device (subsystem) identifiers."""

    SYSTEM = 0x11
    POWER = 0x13
    DRIVE = 0x16
    SENSORS = 0x18
    IO = 0x1A


class CommandId(IntEnum):
    """Command identifiers observed on the RVR+."""

    DRIVE_TANK = 0x01
    WAKE = 0x0D
    COLOR_STREAM = 0x0F
    SET_RGB_LED = 0x1A
    RESET_ENCODERS = 0x21
    READ_ENCODERS = 0x22
    ENABLE_COLOR_NODE = 0x26
    CONFIGURE_COLOR = 0x27
    COLOR_LED = 0x2B
    COLOR_DETECTION_NOTIFY = 0x2C
    COLOR_DETECTION_ASYNC = 0x2D
    LED_CONFIG = 0x2F
    AMBIENT_LIGHT = 0x30
    CONFIGURE_STREAMING_SERVICE = 0x39
    START_STREAMING_SERVICE = 0x3A
    STOP_STREAMING_SERVICE = 0x3B
    CLEAR_STREAMING_SERVICE = 0x3C
    STREAMING_SERVICE_DATA = 0x3D
    DEVICE_ERROR = 0x3F
    UNDERBODY_LED = 0x45
    ENCODERS = 0x50
    IMU = 0x51


def clamp_speed(speed: int) -> int:
    """Clamp a signed motor speed to -255..255."""
    return max(-MAX_SPEED, min(MAX_SPEED, int(speed)))


def clamp_byte(value: int) -> int:
    """Clamp a channel value to 0..255."""
    return max(0, min(0xFF, int(value)))


def _motor_mode(speed: int) -> int:
    if speed > 0:
        return 0x01
    if speed < 0:
        return 0x02
    return 0x00


def build_sensor_command(
    command_id: int, seq: int, payload: bytes = b"", flag: int = FLAG_REQUEST
) -> bytes:
    """Build a raw frame addressed to the sensor device."""
    return build_raw_frame(flag, DeviceId.SENSORS, command_id, seq, payload)


def build_tank_drive(left: int, right: int, seq: int) -> bytes:
    """Build a tank-drive command.

    Each wheel is encoded as a (mode, magnitude) pair where mode is 1 for
    forward, 2 for reverse and 0 for stop.
    """
    left = clamp_speed(left)
    right = clamp_speed(right)
    payload = bytes([_motor_mode(left), abs(left), _motor_mode(right), abs(right)])
    return build_raw_frame(
        FLAG_REQUEST, DeviceId.DRIVE, CommandId.DRIVE_TANK, seq, payload
    )


def build_main_led(red: int, green: int, blue: int, seq: int) -> bytes:
    """Build the official main-LED command (``1A 2F``) used by Sphero Edu."""
    payload = bytes([clamp_byte(red), clamp_byte(green), clamp_byte(blue)])
    return build_official_frame(DeviceId.IO, CommandId.LED_CONFIG, seq, payload)


def build_rgb_led(red: int, green: int, blue: int, seq: int) -> bytes:
    """Build the raw system set-RGB-LED command."""
    payload = bytes([clamp_byte(red), clamp_byte(green), clamp_byte(blue)])
    return build_raw_frame(
        FLAG_REQUEST, DeviceId.SYSTEM, CommandId.SET_RGB_LED, seq, payload
    )


def build_underbody_led(red: int, green: int, blue: int, seq: int) -> bytes:
    """Build the official underbody (color sensor) illumination command."""
    payload = bytes([0x00, clamp_byte(red), clamp_byte(green), clamp_byte(blue)])
    return build_official_frame(DeviceId.IO, CommandId.UNDERBODY_LED, seq, payload)


def build_reset_encoders(seq: int) -> bytes:
    return build_raw_frame(FLAG_REQUEST, DeviceId.DRIVE, CommandId.RESET_ENCODERS, seq)


def build_read_encoders(seq: int) -> bytes:
    return build_raw_frame(FLAG_REQUEST, DeviceId.DRIVE, CommandId.READ_ENCODERS, seq)


def build_wake(seq: int, flag: int = FLAG_NONE) -> bytes:
    """Build the power-device wake command sent right after connecting."""
    return build_raw_frame(flag, DeviceId.POWER, CommandId.WAKE, seq)


def build_enable_color_node(seq: int) -> bytes:
    return build_sensor_command(CommandId.ENABLE_COLOR_NODE, seq, b"\x01")


def build_color_sensor_led(on: bool, seq: int) -> bytes:
    return build_sensor_command(CommandId.COLOR_LED, seq, b"\x01" if on else b"\x00")


def build_color_stream(period_ms: int, seq: int) -> bytes:
    return build_sensor_command(
        CommandId.COLOR_STREAM, seq, bytes([0x02, clamp_byte(period_ms), 0x00])
    )


def build_stop_color_stream(seq: int) -> bytes:
    return build_sensor_command(CommandId.COLOR_STREAM, seq, b"\x02\x00\x00")


# ─── ROBUST ACTIVATION CANDIDATES ────────────────────────────────────
#
# The enabling payloads below were found by trial against several firmware
# revisions. None is confirmed; the controller sends them in order and stops
# at the first write the transport accepts.

@dataclass(frozen=True)
class Candidate:
    """One (flag, payload) encoding to try for a command."""

    flag: int
    payload: bytes


def candidate_grid(
    payloads: Iterable[bytes], flags: Iterable[int] = ROBUST_FLAGS
) -> tuple[Candidate, ...]:
    """Cross flags with payloads, flag-major."""
    payloads = tuple(bytes(p) for p in payloads)
    return tuple(Candidate(flag, p) for flag in flags for p in payloads)


COLOR_SENSOR_ENABLE = candidate_grid([b"\x01\x01", b"\x01"])

COLOR_LED_ON = candidate_grid([
    b"\x01",
    b"\x01\x01",
    b"\x01\x64",
    b"\x02\x01",
    b"\xFF",
    b"\x01\xFF",
    b"\xFF\xFF",
    b"\x03\x01",
])

COLOR_LED_OFF = candidate_grid([b"\x00", b"\x00\x00", b"\x01\x00", b"\x02\x00"])

COLOR_DETECTION_ON = candidate_grid([b"\x01", b"\x01\x01"])
COLOR_DETECTION_OFF = candidate_grid([b"\x00", b"\x00\x00"])


def color_stream_candidates(period_ms: int) -> tuple[Candidate, ...]:
    period = clamp_byte(period_ms)
    return candidate_grid([
        bytes([0x02, period, 0x00]),
        bytes([0x01, period, 0x00]),
        bytes([period]),
        bytes([0x00, period, 0x00]),
        bytes([0x02, period]),
    ])


# Token-based streaming service. These layouts are guesses modelled on the
# public SDK; no payload has been confirmed to start a stream.

COLOR_DETECTION_SERVICE = 0x0003
EIGHT_BIT = 0x00


def configure_streaming_candidates(
    token: int = 0x01, primary_processor: bool = True
) -> tuple[Candidate, ...]:
    sid_lo = COLOR_DETECTION_SERVICE & 0xFF
    sid_hi = (COLOR_DETECTION_SERVICE >> 8) & 0xFF
    processor = 0x01 if primary_processor else 0x02
    return candidate_grid([
        bytes([token, 0x01, sid_lo, sid_hi, EIGHT_BIT]),
        bytes([token, 0x01, sid_hi, sid_lo, EIGHT_BIT]),
        bytes([token, processor, 0x01, sid_lo, sid_hi, EIGHT_BIT]),
    ])


def start_streaming_candidates(
    period_ms: int = 100, token: int = 0x01
) -> tuple[Candidate, ...]:
    period = max(33, min(1000, int(period_ms)))
    lo, hi = period & 0xFF, (period >> 8) & 0xFF
    return candidate_grid([
        bytes([lo, hi, token]),
        bytes([token, lo, hi]),
        bytes([lo]),
        bytes([lo, hi, token, 0x01]),
        bytes([token, lo, hi, 0x01]),
    ])


def token_only_candidates(token: int = 0x01) -> tuple[Candidate, ...]:
    """Payload-major: ``[token]`` then empty, each with both flags."""
    return tuple(
        Candidate(flag, payload)
        for payload in (bytes([token]), b"")
        for flag in ROBUST_FLAGS
    )
