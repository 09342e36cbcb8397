"""Classification of inbound frames into sensor and diagnostic events.

Different firmware paths echo the same sensor data at different byte
offsets, and no frame carries a reliable "payload kind" field. Each known
shape is therefore described by a :class:`Hypothesis` (command ids, minimum
length, offset) and the hypotheses are tried in a fixed precedence order.
The first one that decodes wins; a frame that matches none is dropped.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Callable, Iterable, Union

from .commands import CommandId, DeviceId
from .framing import Frame

logger = logging.getLogger(__name__)

ERROR_MARKER = 0x28
STREAM_MARKER = 0x38
FULL_CONFIDENCE = 0xFF
COLOR_TOKEN_ID = 0x01
SCALE = 1000.0


@dataclass(frozen=True)
class ColorEvent:
    """Color sample from the underbody sensor."""

    red: int
    green: int
    blue: int
    index: int = 0
    confidence: int = 0


@dataclass(frozen=True)
class AmbientLightEvent:
    """Ambient light level in lux."""

    lux: float


@dataclass(frozen=True)
class EncoderEvent:
    """Wheel encoder counts in native ticks."""

    left: int
    right: int


@dataclass(frozen=True)
class ImuEvent:
    """Accelerometer and gyroscope vector."""

    accel_x: float
    accel_y: float
    accel_z: float
    gyro_x: float
    gyro_y: float
    gyro_z: float


@dataclass(frozen=True)
class DeviceErrorEvent:
    """Error frame reported by the robot."""

    device_id: int
    command_id: int
    sequence: int
    error_code: int


Event = Union[ColorEvent, AmbientLightEvent, EncoderEvent, ImuEvent, DeviceErrorEvent]


def command_id_candidates(frame: Frame) -> tuple[int, int]:
    """Return the (primary, alternate) command ids a frame may carry.

    The primary id sits at byte 4 in full frames (byte 2 in short ones).
    When byte 4 holds the sensor device id instead, the command id is the
    next byte.
    """
    data = frame.data
    if len(data) > 5:
        primary = data[4]
    elif len(data) > 2:
        primary = data[2]
    else:
        primary = 0x00
    alternate = data[5] if len(data) > 6 and primary == DeviceId.SENSORS else primary
    return primary, alternate


def _int32(data: bytes, offset: int) -> int:
    return struct.unpack_from(">i", data, offset)[0]


def _color_at(data: bytes, offset: int) -> ColorEvent:
    r, g, b, index, confidence = data[offset : offset + 5]
    return ColorEvent(r, g, b, index, confidence)


@dataclass(frozen=True)
class Hypothesis:
    """One candidate interpretation of a frame shape.

    Attributes:
        name: Label used in debug logs.
        command_ids: Ids matched against the primary/alternate candidates.
            Empty means the matcher alone decides.
        min_length: Frames shorter than this are not considered.
        offset: Index of the first payload byte this shape decodes.
        decode: ``(data, offset) -> event or None``.
        matcher: Extra shape check beyond command id and length.
    """

    name: str
    command_ids: tuple[int, ...]
    min_length: int
    offset: int
    decode: Callable[[bytes, int], "Event | None"]
    matcher: Callable[[bytes], bool] | None = None

    def applies(self, frame: Frame) -> bool:
        if len(frame.data) < self.min_length:
            return False
        if self.command_ids:
            primary, alternate = command_id_candidates(frame)
            if primary not in self.command_ids and alternate not in self.command_ids:
                return False
        if self.matcher is not None and not self.matcher(frame.data):
            return False
        return True


# ─── DECODERS ────────────────────────────────────────────────────────

def _decode_device_error(data: bytes, offset: int) -> DeviceErrorEvent:
    return DeviceErrorEvent(data[3], data[4], data[5], data[offset])


def _decode_led_response(data: bytes, offset: int) -> ColorEvent | None:
    # Some firmwares put RGB one byte later than others; an all-zero read
    # means the guess was wrong.
    for start in (offset + 1, offset):
        r, g, b = data[start : start + 3]
        if r + g + b > 0:
            return ColorEvent(r, g, b, 0, FULL_CONFIDENCE)
    return None


def _decode_official_stream(data: bytes, offset: int) -> ColorEvent:
    r, g, b = data[offset : offset + 3]
    return ColorEvent(r, g, b, 0, FULL_CONFIDENCE)


def _decode_color(data: bytes, offset: int) -> ColorEvent:
    return _color_at(data, offset)


def _decode_token_stream(data: bytes, offset: int) -> ColorEvent | None:
    token = data[offset - 1]
    data_len = len(data) - offset - 2  # exclude checksum and EOP
    if token & 0x0F != COLOR_TOKEN_ID or data_len < 5:
        return None
    return _color_at(data, offset)


def _decode_ambient(data: bytes, offset: int) -> AmbientLightEvent:
    return AmbientLightEvent(_int32(data, offset) / SCALE)


def _decode_encoders(data: bytes, offset: int) -> EncoderEvent:
    return EncoderEvent(_int32(data, offset), _int32(data, offset + 4))


def _decode_imu(data: bytes, offset: int) -> ImuEvent:
    values = [_int32(data, offset + 4 * i) / SCALE for i in range(6)]
    return ImuEvent(*values)


def _decode_imu_partial(data: bytes, offset: int) -> ImuEvent:
    ax, ay, az, gx = (_int32(data, offset + 4 * i) / SCALE for i in range(4))
    return ImuEvent(ax, ay, az, gx, 0.0, 0.0)


# ─── PRECEDENCE TABLE ────────────────────────────────────────────────

_COLOR_IDS = (CommandId.COLOR_DETECTION_NOTIFY, CommandId.COLOR_DETECTION_ASYNC)

HYPOTHESES: tuple[Hypothesis, ...] = (
    Hypothesis(
        "device-error", (), 7, 6, _decode_device_error,
        matcher=lambda d: d[1] == ERROR_MARKER and d[4] == CommandId.DEVICE_ERROR,
    ),
    Hypothesis(
        "led-response-color", (), 10, 6, _decode_led_response,
        matcher=lambda d: d[4] == DeviceId.IO and d[5] == CommandId.LED_CONFIG,
    ),
    Hypothesis(
        "official-stream-color", (), 12, 8, _decode_official_stream,
        matcher=lambda d: (
            len(d) == 15
            and d[1] == STREAM_MARKER
            and d[4] == DeviceId.SENSORS
            and d[5] == CommandId.STREAMING_SERVICE_DATA
        ),
    ),
    Hypothesis("color-notify", _COLOR_IDS, 11, 6, _decode_color),
    Hypothesis("color-notify-short", _COLOR_IDS, 10, 5, _decode_color),
    Hypothesis(
        "token-stream", (CommandId.STREAMING_SERVICE_DATA,), 10, 7, _decode_token_stream
    ),
    Hypothesis("color-stream", (CommandId.COLOR_STREAM,), 11, 6, _decode_color),
    Hypothesis("color-stream-short", (CommandId.COLOR_STREAM,), 10, 5, _decode_color),
    Hypothesis("ambient", (CommandId.AMBIENT_LIGHT,), 10, 6, _decode_ambient),
    Hypothesis("ambient-short", (CommandId.AMBIENT_LIGHT,), 9, 5, _decode_ambient),
    Hypothesis("encoders", (CommandId.ENCODERS,), 14, 6, _decode_encoders),
    Hypothesis("encoders-short", (CommandId.ENCODERS,), 13, 5, _decode_encoders),
    Hypothesis("imu", (CommandId.IMU,), 30, 6, _decode_imu),
    Hypothesis("imu-partial", (CommandId.IMU,), 24, 8, _decode_imu_partial),
)


def classify_frame(
    frame: Frame,
    kinds: Iterable[type] | None = None,
    hypotheses: Iterable[Hypothesis] = HYPOTHESES,
) -> Event | None:
    """Map a frame to at most one event.

    Args:
        frame: A complete extracted frame.
        kinds: Optional event types to restrict decoding to. Hypotheses
            producing other types are still tried but their results ignored.
        hypotheses: Precedence table, first match wins.

    Returns:
        The decoded event, or None if no hypothesis applies.
    """
    wanted = tuple(kinds) if kinds is not None else None
    for hypothesis in hypotheses:
        try:
            if not hypothesis.applies(frame):
                continue
            event = hypothesis.decode(frame.data, hypothesis.offset)
        except (IndexError, ValueError, struct.error) as e:
            logger.debug("Hypothesis %s failed on %r: %s", hypothesis.name, frame, e)
            continue
        if event is None:
            continue
        if wanted is not None and not isinstance(event, wanted):
            continue
        logger.debug("Frame %r classified as %s", frame, hypothesis.name)
        return event
    return None
