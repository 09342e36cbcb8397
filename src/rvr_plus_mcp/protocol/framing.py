"""Frame builder and stream extractor for the RVR+ BLE protocol.

Frame layouts::

    Raw:
    +------+------+------+-----+-----+-----+------------------+----------+------+
    | SOP  | 0x18 | Flag | DID | CID | SEQ |     Payload      | Checksum | EOP  |
    | 0x8D |      |      |     |     |     |  variable length |  1 byte  | 0xD8 |
    +------+------+------+-----+-----+-----+------------------+----------+------+

    Official (as sent by the Sphero Edu app):
    +------+------+------+------+-----+-----+-----+---------+----------+------+
    | SOP  | 0x3A | Flag | 0x01 | DID | CID | SEQ | Payload | Checksum | EOP  |
    +------+------+------+------+-----+-----+-----+---------+----------+------+

    Sensor query:
    +------+------+-----+-----+----------+------+
    | SOP  | 0x18 | CID | SEQ | Checksum | EOP  |
    +------+------+-----+-----+----------+------+

- Checksum: one's complement of the 8-bit sum of every byte between SOP and
  the checksum.
- There is no length field and no escaping. A 0xD8 byte inside a payload
  ends the frame early when scanning a received stream; this is a known
  limitation of the scan and is not corrected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

from ..utils.checksum import checksum, verify

logger = logging.getLogger(__name__)

START_MARKER = 0x8D
END_MARKER = 0xD8
RAW_MARKER = 0x18
OFFICIAL_MARKER = 0x3A
OFFICIAL_FLAG = 0x11
OFFICIAL_TARGET = 0x01
MAX_PAYLOAD = 64  # conservative single-notification payload


class FrameFormat(Enum):
    """Envelope layout for outgoing frames."""

    RAW = "raw"
    OFFICIAL = "official"


@dataclass(frozen=True)
class Frame:
    """A complete ``0x8D ... 0xD8`` frame extracted from the receive stream."""

    data: bytes

    def __len__(self) -> int:
        return len(self.data)

    def __getitem__(self, index):
        return self.data[index]

    @property
    def marker(self) -> int | None:
        return self.data[1] if len(self.data) > 1 else None

    @property
    def device_id(self) -> int | None:
        return self.data[3] if len(self.data) > 3 else None

    @property
    def command_id(self) -> int | None:
        return self.data[4] if len(self.data) > 4 else None

    @property
    def sequence(self) -> int | None:
        return self.data[5] if len(self.data) > 5 else None

    @property
    def correlation_id(self) -> int | None:
        """Command id used to match this frame against a pending request.

        Byte 4 for full frames, byte 2 for short sensor-query echoes.
        """
        if len(self.data) > 5:
            return self.data[4]
        if len(self.data) > 3:
            return self.data[2]
        return None

    @property
    def checksum_valid(self) -> bool:
        return verify(self.data)

    def __repr__(self) -> str:
        return f"Frame({self.data.hex(' ').upper()})"


def _byte(value: int) -> int:
    return value & 0xFF


def build_frame(
    flag: int,
    device_id: int,
    command_id: int,
    seq: int,
    payload: bytes = b"",
    fmt: FrameFormat = FrameFormat.RAW,
) -> bytes:
    """Build a single frame with its checksum.

    Args:
        flag: Flag byte. Byte 2 in both layouts; the official layout
            conventionally uses 0x11 (0x12 also appears in captures).
        device_id: Target device (DID).
        command_id: Command within the device (CID).
        seq: Sequence number, masked to 8 bits.
        payload: Command-specific payload bytes.
        fmt: Envelope layout.

    Returns:
        The frame as ``bytes``, ready to write to the command characteristic.
    """
    if len(payload) > MAX_PAYLOAD:
        raise ValueError(
            f"Payload must fit in one frame ({MAX_PAYLOAD} bytes), got {len(payload)}"
        )
    if fmt is FrameFormat.OFFICIAL:
        header = bytes([OFFICIAL_MARKER, _byte(flag), OFFICIAL_TARGET])
    else:
        header = bytes([RAW_MARKER, _byte(flag)])
    body = header + bytes([_byte(device_id), _byte(command_id), _byte(seq)]) + bytes(payload)
    return bytes([START_MARKER]) + body + bytes([checksum(body), END_MARKER])


def build_raw_frame(
    flag: int, device_id: int, command_id: int, seq: int, payload: bytes = b""
) -> bytes:
    """Build a frame in the raw ``8D 18`` layout."""
    return build_frame(flag, device_id, command_id, seq, payload, FrameFormat.RAW)


def build_official_frame(
    device_id: int,
    command_id: int,
    seq: int,
    payload: bytes = b"",
    flag: int = OFFICIAL_FLAG,
) -> bytes:
    """Build a frame in the official ``8D 3A 11 01`` layout."""
    return build_frame(flag, device_id, command_id, seq, payload, FrameFormat.OFFICIAL)


def build_sensor_query(command_id: int, seq: int) -> bytes:
    """Build the short ``8D 18 CID SEQ`` query used to poll a sensor value."""
    body = bytes([RAW_MARKER, _byte(command_id), _byte(seq)])
    return bytes([START_MARKER]) + body + bytes([checksum(body), END_MARKER])


def append_and_extract(buffer: bytearray, data: bytes) -> Iterator[bytes]:
    """Append ``data`` to ``buffer`` and lazily yield the complete frames in it.

    ``data`` is appended immediately; frames are consumed from ``buffer`` as
    the returned iterator advances. Bytes before a frame start are dropped,
    and a trailing partial frame stays in ``buffer`` for the next delivery.
    """
    buffer.extend(data)
    return _drain(buffer)


def _drain(buffer: bytearray) -> Iterator[bytes]:
    while True:
        start = buffer.find(START_MARKER)
        if start == -1:
            if buffer:
                logger.debug("Discarding %d bytes of noise", len(buffer))
            buffer.clear()
            return
        end = buffer.find(END_MARKER, start + 1)
        if end == -1:
            if start > 0:
                del buffer[:start]
            return
        frame = bytes(buffer[start : end + 1])
        del buffer[: end + 1]
        yield frame


class FrameBuffer:
    """Rolling receive buffer for notification payloads.

    BLE notifications are not frame-aligned: one frame may be split across
    several notifications and one notification may carry several frames.

    Usage::

        buf = FrameBuffer()
        for raw in buf.feed(notification):
            handle(Frame(raw))
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        """Bytes held back waiting for the rest of a frame."""
        return bytes(self._buffer)

    def feed(self, data: bytes) -> Iterator[bytes]:
        return append_and_extract(self._buffer, data)

    def clear(self) -> None:
        self._buffer.clear()
