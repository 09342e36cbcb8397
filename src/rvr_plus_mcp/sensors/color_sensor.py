"""Underbody color sensor activation and sampled reads.

Activation replays the command sequence the Sphero Edu app sends when a
program first touches the color sensor, captured over BLE. Each step is an
official-layout frame (``8D 3A flag 01 DID CID SEQ ...``) followed by the
pause observed in the capture. Sequence numbers come from the controller so
they stay unique on the link.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from ..controller import EventCallback, RvrController
from ..models.sensors import ColorReading
from ..protocol.commands import CommandId, DeviceId
from ..protocol.framing import build_official_frame
from ..protocol.parser import ColorEvent

logger = logging.getLogger(__name__)

READ_TIMEOUT_MS = 2000
READ_WINDOW_MS = 600
MIN_SAMPLES = 5
MAX_SAMPLES = 15
READ_COMMAND_DELAY_MS = 100
DEFAULT_POLL_INTERVAL = 0.5  # seconds

COLOR_DETECTION_CONTROL = 0x38
SINGLE_READ_PAYLOAD = b"\x00\x96"

ColorCallback = Callable[[ColorReading], None]


@dataclass(frozen=True)
class ActivationStep:
    flag: int
    device_id: int
    command_id: int
    payload: bytes = b""
    delay_ms: int = 0

    def build(self, seq: int) -> bytes:
        return build_official_frame(
            self.device_id, self.command_id, seq, self.payload, flag=self.flag
        )


def _step(flag, did, cid, payload=(), delay_ms=0) -> ActivationStep:
    return ActivationStep(flag, did, cid, bytes(payload), delay_ms)


_S = DeviceId.SENSORS
_IO = DeviceId.IO
_CFG = CommandId.CONFIGURE_STREAMING_SERVICE
_START = CommandId.START_STREAMING_SERVICE

ACTIVATION_SEQUENCE: tuple[ActivationStep, ...] = (
    _step(0x11, DeviceId.POWER, 0x10, (), 3000),
    _step(0x11, _IO, CommandId.LED_CONFIG, (0, 0, 0), 50),
    _step(0x11, _IO, CommandId.SET_RGB_LED, [0x3F] + [0] * 9, 20),
    _step(0x11, _IO, CommandId.LED_CONFIG, (0, 0, 0), 7),
    _step(0x12, DeviceId.DRIVE, 0x07, (0, 0, 0, 0), 9),
    _step(0x12, _S, 0x13, (), 6),
    _step(0x12, DeviceId.DRIVE, 0x06, (), 24),
    _step(0x11, _S, CommandId.STOP_STREAMING_SERVICE, (), 35),
    _step(0x12, _S, CommandId.STOP_STREAMING_SERVICE, (), 9),
    _step(0x11, _S, CommandId.STOP_STREAMING_SERVICE, (), 8),
    _step(0x12, _S, CommandId.STOP_STREAMING_SERVICE, (), 11),
    _step(0x11, _S, COLOR_DETECTION_CONTROL, (0x01,), 8),
    _step(0x11, _S, CommandId.CLEAR_STREAMING_SERVICE, (), 8),
    _step(0x12, _S, CommandId.CLEAR_STREAMING_SERVICE, (), 8),
    _step(0x11, _S, CommandId.CLEAR_STREAMING_SERVICE, (), 32),
    _step(0x12, _S, CommandId.CLEAR_STREAMING_SERVICE, (), 13),
    _step(0x11, _S, _CFG, (0x01, 0x00, 0x03, 0x00), 10),
    _step(0x11, _S, _CFG, (0x02, 0x00, 0x0A, 0x02), 7),
    _step(0x11, _S, _START, SINGLE_READ_PAYLOAD, 9),
    _step(0x11, _S, _CFG, (0x01, 0x00, 0x03, 0x00), 10),
    _step(0x11, _S, _CFG, (0x02, 0x00, 0x0A, 0x02), 7),
    _step(0x11, _S, _START, SINGLE_READ_PAYLOAD, 9),
    _step(0x12, _S, _CFG, (0x01, 0x00, 0x01, 0x02, 0x00, 0x02, 0x02, 0x00, 0x04, 0x02), 10),
    _step(0x12, _S, _CFG, (0x02, 0x00, 0x06, 0x02, 0x00, 0x07, 0x02), 8),
    _step(0x12, _S, _START, SINGLE_READ_PAYLOAD, 7),
    _step(0x12, _S, _CFG, (0x01, 0x00, 0x01, 0x02, 0x00, 0x02, 0x02, 0x00, 0x04, 0x02), 10),
    _step(0x12, _S, _CFG, (0x02, 0x00, 0x06, 0x02, 0x00, 0x07, 0x02), 7),
    _step(0x12, _S, _START, SINGLE_READ_PAYLOAD, 200),
    _step(0x11, _IO, CommandId.UNDERBODY_LED, (0x00, 0xFF, 0xFF, 0xFF), 0),
    _step(0x11, _S, _CFG, (0x01, 0x00, 0x03, 0x00), 500),
)


def summarize_samples(samples: list[tuple[ColorEvent, float]]) -> ColorReading:
    """Combine timestamped samples into one reading.

    RGB is the rounded mean. Index and confidence come from the sample with
    the highest confidence, the most recent one winning ties.
    """
    count = len(samples)

    def mean(channel: str) -> int:
        value = round(sum(getattr(e, channel) for e, _ in samples) / count)
        return max(0, min(255, value))

    best, stamp = max(samples, key=lambda s: (s[0].confidence, s[1]))
    return ColorReading(
        mean("red"), mean("green"), mean("blue"), best.index, best.confidence, stamp
    )


class ColorSensorManager:
    """Activate the underbody sensor and take averaged color reads.

    Usage::

        sensor = ColorSensorManager(rvr)
        if await sensor.activate():
            reading = await sensor.read_color()
    """

    def __init__(
        self, controller: RvrController, clock: Callable[[], float] = time.time
    ) -> None:
        self._controller = controller
        self._clock = clock
        self._activated = False
        self._stream_callback: EventCallback | None = None

    @property
    def is_activated(self) -> bool:
        return self._activated

    async def _send_step(self, step: ActivationStep) -> bool:
        ok = await self._controller.send_raw(step.build(self._controller.sequence.next()))
        await self._controller.pause(step.delay_ms)
        return ok

    async def activate(self) -> bool:
        """Replay the activation sequence once. Returns False if a write failed."""
        if self._activated:
            return True
        if not self._controller.is_connected:
            logger.warning("Cannot activate color sensor while disconnected")
            return False
        logger.info("Activating color sensor (%d steps)", len(ACTIVATION_SEQUENCE))
        failures = 0
        for step in ACTIVATION_SEQUENCE:
            if not await self._send_step(step):
                failures += 1
        if failures:
            logger.warning("%d activation writes were rejected", failures)
            return False
        self._activated = True
        return True

    async def deactivate(self) -> bool:
        if not self._activated:
            return True
        ok = await self._controller.send_raw(
            build_official_frame(
                DeviceId.SENSORS,
                COLOR_DETECTION_CONTROL,
                self._controller.sequence.next(),
                b"\x00",
            )
        )
        if ok:
            self._activated = False
            logger.info("Color sensor deactivated")
        return ok

    async def request_reading(self) -> bool:
        """Ask the sensor for one reading; samples arrive as color events."""
        ok = await self._controller.send_raw(
            build_official_frame(
                DeviceId.SENSORS,
                CommandId.START_STREAMING_SERVICE,
                self._controller.sequence.next(),
                SINGLE_READ_PAYLOAD,
            )
        )
        await self._controller.pause(READ_COMMAND_DELAY_MS)
        return ok

    async def read_color(self, timeout_ms: int = READ_TIMEOUT_MS) -> ColorReading | None:
        """Collect samples for a short window and average them.

        Stops early once ``MIN_SAMPLES`` have arrived and ignores anything
        past ``MAX_SAMPLES``.

        Returns:
            The combined reading, or None if no sample arrived.
        """
        if not await self.activate():
            return None

        samples: list[tuple[ColorEvent, float]] = []
        enough = asyncio.get_running_loop().create_future()

        def on_color(event: ColorEvent) -> None:
            if enough.done() or len(samples) >= MAX_SAMPLES:
                return
            samples.append((event, self._clock()))
            if len(samples) >= MIN_SAMPLES:
                enough.set_result(True)

        self._controller.add_listener(ColorEvent, on_color)
        try:
            await self.request_reading()
            wait_s = min(READ_WINDOW_MS, timeout_ms) / 1000.0
            try:
                await asyncio.wait_for(enough, wait_s)
            except asyncio.TimeoutError:
                logger.debug("Color read window closed with %d samples", len(samples))
        finally:
            self._controller.remove_listener(ColorEvent, on_color)

        if not samples:
            return None
        return summarize_samples(samples)

    async def start_streaming(self, callback: ColorCallback) -> bool:
        """Forward every color event to ``callback`` as a ColorReading."""
        if not await self.activate():
            return False
        self.stop_streaming()

        def forward(event: ColorEvent) -> None:
            callback(
                ColorReading(
                    event.red, event.green, event.blue,
                    event.index, event.confidence, self._clock(),
                )
            )

        self._stream_callback = forward
        self._controller.add_listener(ColorEvent, forward)
        return True

    def stop_streaming(self) -> None:
        if self._stream_callback is not None:
            self._controller.remove_listener(ColorEvent, self._stream_callback)
            self._stream_callback = None

    async def poll(
        self, stop_event: asyncio.Event, interval: float = DEFAULT_POLL_INTERVAL
    ) -> int:
        """Request a reading every ``interval`` seconds until ``stop_event`` is set.

        A request already written is not recalled when the event fires.

        Returns:
            The number of requests sent.
        """
        if not await self.activate():
            return 0
        sent = 0
        while not stop_event.is_set():
            if await self.request_reading():
                sent += 1
            try:
                await asyncio.wait_for(stop_event.wait(), interval)
            except asyncio.TimeoutError:
                pass
        return sent
