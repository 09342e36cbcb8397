"""High-level asynchronous controller for one RVR+.

The controller owns everything that is per-robot state: the transport, the
receive buffer, the sequence counter, the response correlator and the sensor
cache. Inbound bytes flow::

    transport -> FrameBuffer -> Frame -> frame listeners
                                      -> classify_frame -> SensorState
                                                        -> event listeners
                                      -> ResponseCorrelator

Every send API returns ``False`` when the write is rejected and every
correlated getter returns ``None`` when nothing answers in time. Nothing in
here raises for protocol-level problems.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable

from .config import RvrSettings, load_settings
from .models.colors import RAINBOW, LedColor, interpolate
from .models.motion import arc_wheel_speeds, clamp_turn_speed, turn_duration_ms
from .models.sensors import DistanceReading, ColorReading, SensorSnapshot, SensorState
from .protocol.commands import (
    COLOR_DETECTION_OFF,
    COLOR_DETECTION_ON,
    COLOR_LED_OFF,
    COLOR_LED_ON,
    COLOR_SENSOR_ENABLE,
    FLAG_NONE,
    FLAG_REQUEST,
    Candidate,
    CommandId,
    DeviceId,
    build_color_sensor_led,
    build_color_stream,
    build_enable_color_node,
    build_main_led,
    build_reset_encoders,
    build_rgb_led,
    build_sensor_command,
    build_stop_color_stream,
    build_tank_drive,
    build_underbody_led,
    build_wake,
    color_stream_candidates,
    configure_streaming_candidates,
    start_streaming_candidates,
    token_only_candidates,
)
from .protocol.correlation import ResponseCorrelator, SequenceCounter
from .protocol.framing import Frame, FrameBuffer, FrameFormat, build_frame, build_sensor_query
from .protocol.parser import (
    AmbientLightEvent,
    ColorEvent,
    DeviceErrorEvent,
    EncoderEvent,
    Event,
    ImuEvent,
    classify_frame,
)
from .transport.base import Transport

logger = logging.getLogger(__name__)

EventCallback = Callable[[Event], None]
FrameCallback = Callable[[Frame], None]
Sleep = Callable[[float], Awaitable[None]]

WAKE_RETRY_DELAY_MS = 150
DEFAULT_TURN_SPEED = 100

COLOR_SENSOR_SETTLE_MS = 300
COLOR_LED_SETTLE_MS = 200
COLOR_NOTIFY_SETTLE_MS = 200
STREAM_CONFIGURE_SETTLE_MS = 150
COLOR_STREAM_FIRST_SAMPLE_MS = 2000
STREAMING_SERVICE_FIRST_SAMPLE_MS = 2500
DEFAULT_STREAM_PERIOD_MS = 100

AMBIENT_TIMEOUT = 2.5
ENCODER_TIMEOUT = 2.5
IMU_TIMEOUT = 2.0
COLOR_TIMEOUT = 2.5


class RvrController:
    """Drives, lights and reads sensors on a Sphero RVR+.

    Usage::

        rvr = RvrController(BLEConnection("RV-A380"))
        if await rvr.connect():
            await rvr.set_main_leds_color(LedColor.GREEN)
            await rvr.drive_forward(80, duration_ms=1000)
            print(await rvr.get_imu())
            await rvr.disconnect()

    Args:
        transport: Byte transport to the robot.
        settings: Timeouts and delays; loaded from the environment if omitted.
        sleep: Awaitable used for every timed pause.
    """

    def __init__(
        self,
        transport: Transport,
        settings: RvrSettings | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._settings = settings or load_settings()
        self._sleep = sleep
        self._buffer = FrameBuffer()
        self._sequence = SequenceCounter()
        self._correlator = ResponseCorrelator()
        self._state = SensorState()
        self._listeners: dict[type, list[EventCallback]] = {}
        self._frame_listeners: list[FrameCallback] = []
        self._transport.set_data_handler(self._on_data)

    @property
    def is_connected(self) -> bool:
        return self._transport.is_connected

    @property
    def settings(self) -> RvrSettings:
        return self._settings

    @property
    def sensors(self) -> SensorState:
        return self._state

    @property
    def sequence(self) -> SequenceCounter:
        return self._sequence

    # ─── CONNECTION ──────────────────────────────────────────────────

    async def connect(self) -> bool:
        """Connect, wake the robot and wait for it to initialise."""
        if not await self._transport.connect():
            return False
        self._buffer.clear()
        await self._wake()
        return True

    async def _wake(self) -> None:
        logger.info("Sending wake command")
        if not await self.send_raw(build_wake(self._sequence.next(), FLAG_NONE)):
            await self.pause(WAKE_RETRY_DELAY_MS)
            logger.info("Wake retry with flag 0x%02X", FLAG_REQUEST)
            await self.send_raw(build_wake(self._sequence.next(), FLAG_REQUEST))
        await self.pause(self._settings.wake_delay_ms)

    async def disconnect(self) -> None:
        self._correlator.cancel_all()
        await self._transport.disconnect()
        self._buffer.clear()

    async def pause(self, ms: float) -> None:
        """Sleep for ``ms`` milliseconds with the configured sleep function."""
        if ms > 0:
            await self._sleep(ms / 1000.0)

    # ─── SENDING ─────────────────────────────────────────────────────

    async def send_raw(self, data: bytes) -> bool:
        """Write pre-built frame bytes. Returns False if not accepted."""
        if not self.is_connected:
            logger.warning("Not connected; dropping %s", bytes(data).hex(" ").upper())
            return False
        return await self._transport.send_command(bytes(data))

    async def send_command(
        self,
        device_id: int,
        command_id: int,
        payload: bytes = b"",
        flag: int = FLAG_REQUEST,
        fmt: FrameFormat = FrameFormat.RAW,
    ) -> bool:
        """Build a frame with the next sequence number and send it."""
        frame = build_frame(flag, device_id, command_id, self._sequence.next(), payload, fmt)
        return await self.send_raw(frame)

    async def send_and_await(
        self, data: bytes, command_id: int, timeout: float | None = None
    ) -> Frame | None:
        """Send ``data`` and wait for the next frame carrying ``command_id``.

        The waiter is registered before writing. Concurrent calls for the
        same command id are answered in the order they were issued.

        Returns:
            The response frame, or None on rejected write or timeout.
        """
        pending = self._correlator.expect(command_id)
        if not await self.send_raw(data):
            self._correlator.discard(pending)
            return None
        if timeout is None:
            timeout = self._settings.response_timeout
        return await self._correlator.wait(pending, timeout)

    async def _send_until_accepted(
        self,
        device_id: int,
        command_id: int,
        candidates: Iterable[Candidate],
        settle_ms: int = 0,
        confirm_ms: int | None = None,
    ) -> bool:
        """Try each candidate encoding in order until one is accepted.

        Acceptance means the transport took the write and, when
        ``confirm_ms`` is given, that a color sample arrived within that
        many milliseconds. It says nothing about whether the robot acted on
        the command.
        """
        for candidate in candidates:
            frame = build_frame(
                candidate.flag, device_id, command_id, self._sequence.next(), candidate.payload
            )
            if confirm_ms is not None:
                future, callback = self._arm(ColorEvent)
                try:
                    if not await self.send_raw(frame):
                        continue
                    if await self._wait_armed(future, confirm_ms / 1000.0) is not None:
                        return True
                finally:
                    self.remove_listener(ColorEvent, callback)
                continue
            if not await self.send_raw(frame):
                continue
            await self.pause(settle_ms)
            logger.debug(
                "CID 0x%02X accepted flag=0x%02X payload=%s",
                command_id, candidate.flag, candidate.payload.hex(" ") or "-",
            )
            return True
        logger.warning("No candidate accepted for CID 0x%02X", command_id)
        return False

    # ─── MOTION ──────────────────────────────────────────────────────

    async def set_motors(self, left: int, right: int) -> bool:
        """Set both wheel speeds (-255..255, clamped)."""
        logger.debug("Motors L%d R%d", left, right)
        return await self.send_raw(build_tank_drive(left, right, self._sequence.next()))

    async def stop(self) -> bool:
        return await self.set_motors(0, 0)

    async def drive(self, left: int, right: int, duration_ms: int | None = None) -> bool:
        """Set wheel speeds; with ``duration_ms``, sleep then stop.

        Cancelling a timed drive does not send the stop.
        """
        ok = await self.set_motors(left, right)
        if duration_ms is None:
            return ok
        await self.pause(max(0, duration_ms))
        stopped = await self.stop()
        return ok and stopped

    async def drive_forward(self, speed: int, duration_ms: int | None = None) -> bool:
        return await self.drive(speed, speed, duration_ms)

    async def drive_backward(self, speed: int, duration_ms: int | None = None) -> bool:
        speed = -abs(speed)
        return await self.drive(speed, speed, duration_ms)

    async def drive_with_turn(
        self, speed: int, turn_ratio: float, duration_ms: int | None = None
    ) -> bool:
        """Drive an arc. ``turn_ratio`` -1.0 is hard left, 1.0 hard right."""
        left, right = arc_wheel_speeds(speed, turn_ratio)
        return await self.drive(left, right, duration_ms)

    async def turn_right(self, degrees: int, speed: int = DEFAULT_TURN_SPEED) -> bool:
        return await self._turn(degrees, speed, clockwise=True)

    async def turn_left(self, degrees: int, speed: int = DEFAULT_TURN_SPEED) -> bool:
        return await self._turn(degrees, speed, clockwise=False)

    async def _turn(self, degrees: int, speed: int, clockwise: bool) -> bool:
        if degrees <= 0:
            return True
        speed = clamp_turn_speed(speed)
        duration = turn_duration_ms(degrees, speed)
        logger.info(
            "Turning %s %d deg at speed %d (%d ms)",
            "right" if clockwise else "left", degrees, speed, duration,
        )
        if clockwise:
            return await self.drive(speed, -speed, duration)
        return await self.drive(-speed, speed, duration)

    # ─── LEDS ────────────────────────────────────────────────────────

    async def set_main_leds(self, red: int, green: int, blue: int) -> bool:
        return await self.send_raw(build_main_led(red, green, blue, self._sequence.next()))

    async def set_main_leds_color(self, color: LedColor) -> bool:
        return await self.set_main_leds(*color.rgb)

    async def turn_off_main_leds(self) -> bool:
        return await self.set_main_leds(0, 0, 0)

    async def blink_main_leds(
        self,
        red: int,
        green: int,
        blue: int,
        cycles: int = 3,
        on_ms: int = 500,
        off_ms: int = 500,
    ) -> bool:
        """Blink ``cycles`` times. No off pause follows the last cycle."""
        ok = True
        for i in range(cycles):
            ok &= await self.set_main_leds(red, green, blue)
            await self.pause(on_ms)
            ok &= await self.turn_off_main_leds()
            if i < cycles - 1:
                await self.pause(off_ms)
        return ok

    async def rainbow_main_leds(self, duration_ms: int = 5000) -> bool:
        step = duration_ms // len(RAINBOW)
        ok = True
        for rgb in RAINBOW:
            ok &= await self.set_main_leds(*rgb)
            await self.pause(step)
        return ok

    async def fade_main_leds(
        self,
        from_color: LedColor,
        to_color: LedColor,
        duration_ms: int = 2000,
        steps: int = 20,
    ) -> bool:
        """Fade in ``steps`` increments, sending both end colors."""
        if steps <= 0:
            raise ValueError(f"steps must be positive, got {steps}")
        step_ms = duration_ms // steps
        ok = True
        for i in range(steps + 1):
            rgb = interpolate(from_color.rgb, to_color.rgb, i / steps)
            ok &= await self.set_main_leds(*rgb)
            await self.pause(step_ms)
        return ok

    async def set_led_color(self, red: int, green: int, blue: int) -> bool:
        """Set the main LEDs through the raw system command."""
        return await self.send_raw(build_rgb_led(red, green, blue, self._sequence.next()))

    async def turn_off_led(self) -> bool:
        return await self.set_led_color(0, 0, 0)

    async def set_underbody_led(self, red: int, green: int, blue: int) -> bool:
        return await self.send_raw(
            build_underbody_led(red, green, blue, self._sequence.next())
        )

    # ─── COLOR SENSOR ────────────────────────────────────────────────

    async def enable_color_sensor(self, settle_ms: int = COLOR_SENSOR_SETTLE_MS) -> bool:
        return await self._send_until_accepted(
            DeviceId.SENSORS, CommandId.CONFIGURE_COLOR, COLOR_SENSOR_ENABLE, settle_ms
        )

    async def enable_color_node(self) -> bool:
        return await self.send_raw(build_enable_color_node(self._sequence.next()))

    async def set_color_sensor_led(self, on: bool) -> bool:
        return await self.send_raw(build_color_sensor_led(on, self._sequence.next()))

    async def set_color_sensor_led_robust(self, on: bool) -> bool:
        return await self._send_until_accepted(
            DeviceId.SENSORS,
            CommandId.COLOR_LED,
            COLOR_LED_ON if on else COLOR_LED_OFF,
            COLOR_LED_SETTLE_MS,
        )

    async def enable_color_detection_notify(self, enable: bool) -> bool:
        payload = b"\x01" if enable else b"\x00"
        return await self.send_raw(
            build_sensor_command(
                CommandId.COLOR_DETECTION_NOTIFY, self._sequence.next(), payload
            )
        )

    async def enable_color_detection_notify_robust(
        self, enable: bool, settle_ms: int = COLOR_NOTIFY_SETTLE_MS
    ) -> bool:
        return await self._send_until_accepted(
            DeviceId.SENSORS,
            CommandId.COLOR_DETECTION_NOTIFY,
            COLOR_DETECTION_ON if enable else COLOR_DETECTION_OFF,
            settle_ms,
        )

    async def start_color_stream(self, period_ms: int = DEFAULT_STREAM_PERIOD_MS) -> bool:
        return await self.send_raw(build_color_stream(period_ms, self._sequence.next()))

    async def start_color_stream_robust(
        self,
        period_ms: int = DEFAULT_STREAM_PERIOD_MS,
        first_sample_ms: int = COLOR_STREAM_FIRST_SAMPLE_MS,
    ) -> bool:
        """Try stream encodings until a color sample actually arrives."""
        return await self._send_until_accepted(
            DeviceId.SENSORS,
            CommandId.COLOR_STREAM,
            color_stream_candidates(period_ms),
            confirm_ms=first_sample_ms,
        )

    async def stop_color_stream(self) -> bool:
        return await self.send_raw(build_stop_color_stream(self._sequence.next()))

    # Streaming service. The payload layouts are unconfirmed; see
    # protocol.commands.

    async def configure_streaming_service(
        self, token: int = 0x01, primary_processor: bool = True
    ) -> bool:
        return await self._send_until_accepted(
            DeviceId.SENSORS,
            CommandId.CONFIGURE_STREAMING_SERVICE,
            configure_streaming_candidates(token, primary_processor),
            STREAM_CONFIGURE_SETTLE_MS,
        )

    async def start_streaming_service(
        self,
        period_ms: int = DEFAULT_STREAM_PERIOD_MS,
        token: int = 0x01,
        first_sample_ms: int = STREAMING_SERVICE_FIRST_SAMPLE_MS,
    ) -> bool:
        return await self._send_until_accepted(
            DeviceId.SENSORS,
            CommandId.START_STREAMING_SERVICE,
            start_streaming_candidates(period_ms, token),
            confirm_ms=first_sample_ms,
        )

    async def stop_streaming_service(self, token: int = 0x01) -> bool:
        return await self._send_until_accepted(
            DeviceId.SENSORS, CommandId.STOP_STREAMING_SERVICE, token_only_candidates(token)
        )

    async def clear_streaming_service(self, token: int = 0x01) -> bool:
        return await self._send_until_accepted(
            DeviceId.SENSORS, CommandId.CLEAR_STREAMING_SERVICE, token_only_candidates(token)
        )

    # ─── CORRELATED GETTERS ──────────────────────────────────────────

    async def send_raw_sensor_command(
        self, command_id: int, timeout: float | None = None
    ) -> Frame | None:
        """Send a short sensor query and return whatever frame answers it."""
        query = build_sensor_query(command_id, self._sequence.next())
        return await self.send_and_await(query, command_id, timeout)

    async def _query(self, command_id: int, kind: type, timeout: float) -> Event | None:
        frame = await self.send_raw_sensor_command(command_id, timeout)
        if frame is None:
            return None
        return classify_frame(frame, kinds=(kind,))

    async def get_ambient_light(self, timeout: float = AMBIENT_TIMEOUT) -> float | None:
        event = await self._query(CommandId.AMBIENT_LIGHT, AmbientLightEvent, timeout)
        return event.lux if event is not None else None

    async def get_encoder_counts(
        self, timeout: float = ENCODER_TIMEOUT
    ) -> tuple[int, int] | None:
        event = await self._query(CommandId.ENCODERS, EncoderEvent, timeout)
        return (event.left, event.right) if event is not None else None

    async def get_imu(self, timeout: float = IMU_TIMEOUT) -> ImuEvent | None:
        return await self._query(CommandId.IMU, ImuEvent, timeout)

    async def get_color(self, timeout: float = COLOR_TIMEOUT) -> ColorEvent | None:
        return await self._query(CommandId.COLOR_STREAM, ColorEvent, timeout)

    # ─── CACHED READINGS ─────────────────────────────────────────────

    def read_color(self) -> ColorReading:
        """Latest streamed color; ``valid`` is False if none has arrived."""
        return self._state.latest_color()

    def read_distance(self) -> DistanceReading:
        return self._state.distance()

    async def reset_distance(self) -> bool:
        """Zero the wheel encoders and forget the cached distance."""
        ok = await self.send_raw(build_reset_encoders(self._sequence.next()))
        if ok:
            self._state.reset_distance()
            logger.info("Distance reset")
        return ok

    def read_all_sensors(self) -> SensorSnapshot:
        return self._state.snapshot()

    def snapshot(self) -> dict:
        return self._state.snapshot().to_dict()

    # ─── EVENTS ──────────────────────────────────────────────────────

    def add_listener(self, event_type: type, callback: EventCallback) -> None:
        """Call ``callback(event)`` for every decoded event of ``event_type``."""
        self._listeners.setdefault(event_type, []).append(callback)

    def remove_listener(self, event_type: type, callback: EventCallback) -> None:
        callbacks = self._listeners.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)
        if not callbacks:
            self._listeners.pop(event_type, None)

    def add_frame_listener(self, callback: FrameCallback) -> None:
        """Call ``callback(frame)`` for every extracted frame, decoded or not."""
        self._frame_listeners.append(callback)

    def remove_frame_listener(self, callback: FrameCallback) -> None:
        if callback in self._frame_listeners:
            self._frame_listeners.remove(callback)

    def _arm(self, event_type: type) -> tuple[asyncio.Future, EventCallback]:
        """Register a one-shot listener resolving a future with the next event."""
        future = asyncio.get_running_loop().create_future()

        def on_event(event: Event) -> None:
            if not future.done():
                future.set_result(event)

        self.add_listener(event_type, on_event)
        return future, on_event

    @staticmethod
    async def _wait_armed(future: asyncio.Future, timeout: float) -> Event | None:
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            return None

    async def wait_for_color(self, timeout: float) -> ColorEvent | None:
        """Wait for the next color event. Returns None on timeout."""
        future, callback = self._arm(ColorEvent)
        try:
            return await self._wait_armed(future, timeout)
        finally:
            self.remove_listener(ColorEvent, callback)

    # ─── RECEIVE PATH ────────────────────────────────────────────────

    def _on_data(self, data: bytes) -> None:
        for raw in self._buffer.feed(data):
            self._handle_frame(Frame(raw))

    def _handle_frame(self, frame: Frame) -> None:
        logger.debug("RX %r", frame)
        for callback in list(self._frame_listeners):
            try:
                callback(frame)
            except Exception:
                logger.exception("Frame listener failed")

        event = classify_frame(frame)
        if event is not None:
            if isinstance(event, DeviceErrorEvent):
                logger.warning(
                    "Device error 0x%02X (DID 0x%02X CID 0x%02X seq %d)",
                    event.error_code, event.device_id, event.command_id, event.sequence,
                )
            else:
                self._state.apply(event)
            self._notify(event)

        self._correlator.resolve(frame)

    def _notify(self, event: Event) -> None:
        for event_type, callbacks in list(self._listeners.items()):
            if not isinstance(event, event_type):
                continue
            for callback in list(callbacks):
                try:
                    callback(event)
                except Exception:
                    logger.exception("Listener for %s failed", event_type.__name__)
