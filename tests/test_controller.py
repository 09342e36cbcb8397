"""Tests for the controller against an in-memory transport."""

import asyncio
import logging

import pytest

from rvr_plus_mcp.controller import RvrController
from rvr_plus_mcp.models.colors import LedColor
from rvr_plus_mcp.protocol.framing import Frame, FrameFormat
from rvr_plus_mcp.protocol.parser import AmbientLightEvent, ColorEvent
from rvr_plus_mcp.utils.checksum import verify

from conftest import FakeTransport, SleepRecorder, int32s, sensor_response

COLOR_SAMPLE = sensor_response(0x0F, bytes([0x10, 0x20, 0x30, 0x02, 0xC8]))


def query_responder(replies):
    """Answer short sensor queries (``8D 18 CID SEQ chk D8``) from a table."""

    def respond(data):
        if len(data) == 6 and data[1] == 0x18:
            return replies.get(data[2])
        return None

    return respond


def motor_payloads(transport):
    return [f[6:10] for f in transport.sent if f[3:5] == bytes([0x16, 0x01])]


# ─── CONNECTION ──────────────────────────────────────────────────────

def test_connect_sends_wake_and_waits(settings):
    transport = FakeTransport()
    sleeps = SleepRecorder()
    rvr = RvrController(transport, settings, sleep=sleeps)
    assert asyncio.run(rvr.connect())
    assert transport.sent[0][1:5] == bytes([0x18, 0x00, 0x13, 0x0D])
    assert len(transport.sent) == 1
    assert sleeps.calls == [1.2]


def test_connect_retries_wake_with_request_flag(settings):
    transport = FakeTransport(accept=False)
    sleeps = SleepRecorder()
    rvr = RvrController(transport, settings, sleep=sleeps)
    assert asyncio.run(rvr.connect())
    assert [f[2] for f in transport.sent] == [0x00, 0x02]
    assert sleeps.calls == [0.15, 1.2]


def test_connect_failure(settings):
    transport = FakeTransport(connect_ok=False)
    rvr = RvrController(transport, settings, sleep=SleepRecorder())
    assert asyncio.run(rvr.connect()) is False
    assert transport.sent == []


def test_send_without_connection_returns_false(settings):
    transport = FakeTransport()
    rvr = RvrController(transport, settings, sleep=SleepRecorder())
    assert asyncio.run(rvr.set_motors(10, 10)) is False
    assert transport.sent == []


def test_disconnect(controller, transport):
    asyncio.run(controller.disconnect())
    assert transport.disconnect_calls == 1
    assert not controller.is_connected


# ─── SENDING ─────────────────────────────────────────────────────────

def test_sequence_advances_per_frame(controller, transport):
    async def run():
        await controller.stop()
        await controller.stop()
        await controller.set_main_leds(1, 2, 3)

    asyncio.run(run())
    assert [transport.sent[0][5], transport.sent[1][5], transport.sent[2][6]] == [0, 1, 2]


def test_send_command_formats(controller, transport):
    async def run():
        await controller.send_command(0x18, 0x27, b"\x01")
        await controller.send_command(0x18, 0x3A, b"\x00\x96", flag=0x11, fmt=FrameFormat.OFFICIAL)

    asyncio.run(run())
    raw, official = transport.sent
    assert raw[1:5] == bytes([0x18, 0x02, 0x18, 0x27])
    assert official[1:6] == bytes([0x3A, 0x11, 0x01, 0x18, 0x3A])
    assert verify(raw) and verify(official)


def test_rejected_write_returns_false(controller, transport):
    transport.accept = False
    assert asyncio.run(controller.set_main_leds(1, 1, 1)) is False


# ─── MOTION ──────────────────────────────────────────────────────────

def test_timed_drive_stops(controller, transport, sleeps):
    assert asyncio.run(controller.drive(100, 120, duration_ms=500))
    assert motor_payloads(transport) == [bytes([1, 100, 1, 120]), bytes(4)]
    assert sleeps.calls == [0.5]


def test_untimed_drive_does_not_stop(controller, transport, sleeps):
    asyncio.run(controller.drive_forward(80))
    assert motor_payloads(transport) == [bytes([1, 80, 1, 80])]
    assert sleeps.calls == []


def test_drive_backward_uses_reverse(controller, transport):
    asyncio.run(controller.drive_backward(60))
    assert motor_payloads(transport) == [bytes([2, 60, 2, 60])]


def test_drive_with_turn(controller, transport):
    asyncio.run(controller.drive_with_turn(200, 0.5, duration_ms=100))
    assert motor_payloads(transport)[0] == bytes([1, 200, 1, 100])


def test_turn_right(controller, transport, sleeps):
    assert asyncio.run(controller.turn_right(90))
    assert motor_payloads(transport) == [bytes([1, 100, 2, 100]), bytes(4)]
    assert sleeps.calls == [pytest.approx(1.08)]


def test_turn_left_clamps_speed(controller, transport):
    asyncio.run(controller.turn_left(45, speed=10))
    assert motor_payloads(transport)[0] == bytes([2, 30, 1, 30])


def test_turn_zero_is_noop(controller, transport):
    assert asyncio.run(controller.turn_right(0))
    assert transport.sent == []


# ─── LEDS ────────────────────────────────────────────────────────────

def test_set_main_leds_color(controller, transport):
    asyncio.run(controller.set_main_leds_color(LedColor.ORANGE))
    frame = transport.sent[0]
    assert frame[1:6] == bytes([0x3A, 0x11, 0x01, 0x1A, 0x2F])
    assert frame[7:10] == bytes([255, 165, 0])


def test_blink_has_no_trailing_off_delay(controller, transport, sleeps):
    assert asyncio.run(controller.blink_main_leds(255, 0, 0, cycles=3, on_ms=100, off_ms=200))
    assert len(transport.sent) == 6
    assert sleeps.calls == [0.1, 0.2, 0.1, 0.2, 0.1]


def test_rainbow_steps(controller, transport, sleeps):
    asyncio.run(controller.rainbow_main_leds(700))
    assert len(transport.sent) == 7
    assert transport.sent[-1][7:10] == bytes([238, 130, 238])
    assert sleeps.calls == [0.1] * 7


def test_fade_includes_both_ends(controller, transport):
    asyncio.run(controller.fade_main_leds(LedColor.OFF, LedColor.WHITE, duration_ms=400, steps=4))
    colors = [f[7:10] for f in transport.sent]
    assert len(colors) == 5
    assert colors[0] == bytes([0, 0, 0])
    assert colors[2] == bytes([127, 127, 127])
    assert colors[-1] == bytes([255, 255, 255])


def test_fade_rejects_zero_steps(controller):
    with pytest.raises(ValueError):
        asyncio.run(controller.fade_main_leds(LedColor.RED, LedColor.BLUE, steps=0))


def test_raw_led_and_underbody(controller, transport):
    async def run():
        await controller.set_led_color(1, 2, 3)
        await controller.turn_off_led()
        await controller.set_underbody_led(255, 255, 255)

    asyncio.run(run())
    assert transport.sent[0][3:5] == bytes([0x11, 0x1A])
    assert transport.sent[1][6:9] == bytes(3)
    assert transport.sent[2][4:6] == bytes([0x1A, 0x45])


# ─── ROBUST ACTIVATION ───────────────────────────────────────────────

def test_robust_stops_at_first_accepted(controller, transport, sleeps):
    assert asyncio.run(controller.enable_color_sensor())
    assert len(transport.sent) == 1
    assert transport.sent[0][2:5] == bytes([0x02, 0x18, 0x27])
    assert transport.sent[0][6:8] == b"\x01\x01"
    assert sleeps.calls == [0.3]


def test_robust_walks_candidates_until_accepted(controller, transport):
    attempts = []

    def accept(data):
        attempts.append(data)
        return len(attempts) == 3

    transport.accept = accept
    assert asyncio.run(controller.set_color_sensor_led_robust(True))
    assert len(transport.sent) == 3
    assert transport.sent[2][6:8] == b"\x01\x64"


def test_robust_all_rejected(controller, transport):
    transport.accept = False
    assert asyncio.run(controller.enable_color_detection_notify_robust(False)) is False
    assert len(transport.sent) == 4


def test_color_stream_robust_needs_a_sample(controller, transport):
    """The second candidate is the first one answered with color data."""

    def respond(data):
        if data[4] == 0x0F and data[6] == 0x01:
            return COLOR_SAMPLE
        return None

    transport.responder = respond
    ok = asyncio.run(controller.start_color_stream_robust(first_sample_ms=20))
    assert ok
    assert len(transport.sent) == 2
    assert controller.read_color().valid


def test_streaming_service_stop_and_clear(controller, transport):
    async def run():
        return (
            await controller.stop_streaming_service(),
            await controller.clear_streaming_service(),
        )

    assert asyncio.run(run()) == (True, True)
    assert transport.sent[0][4] == 0x3B and transport.sent[0][6:7] == b"\x01"
    assert transport.sent[1][4] == 0x3C


def test_configure_streaming_service_settles(controller, sleeps):
    assert asyncio.run(controller.configure_streaming_service())
    assert sleeps.calls == [0.15]


# ─── CORRELATED GETTERS ──────────────────────────────────────────────

def test_get_ambient_light(controller, transport):
    transport.responder = query_responder({0x30: sensor_response(0x30, int32s(45230))})
    assert asyncio.run(controller.get_ambient_light()) == pytest.approx(45.23)
    assert transport.sent[0][:3] == bytes([0x8D, 0x18, 0x30])


def test_get_encoder_counts(controller, transport):
    transport.responder = query_responder(
        {0x50: sensor_response(0x50, int32s(1000, 2000), device_id=0x16)}
    )
    assert asyncio.run(controller.get_encoder_counts()) == (1000, 2000)


def test_get_imu(controller, transport):
    transport.responder = query_responder(
        {0x51: sensor_response(0x51, int32s(0, 0, -9810, 1500, -250, 0))}
    )
    imu = asyncio.run(controller.get_imu())
    assert imu.accel_z == pytest.approx(-9.81)


def test_get_color(controller, transport):
    transport.responder = query_responder({0x0F: COLOR_SAMPLE})
    color = asyncio.run(controller.get_color())
    assert color == ColorEvent(0x10, 0x20, 0x30, 0x02, 0xC8)


def test_getter_timeout_returns_none(controller):
    assert asyncio.run(controller.get_ambient_light(timeout=0.01)) is None


def test_getter_rejected_write_returns_none(controller, transport):
    transport.accept = False
    assert asyncio.run(controller.send_raw_sensor_command(0x30)) is None


def test_send_and_await_uses_settings_timeout(controller, transport):
    transport.responder = query_responder({0x30: sensor_response(0x30, int32s(1))})
    frame = asyncio.run(controller.send_raw_sensor_command(0x30))
    assert isinstance(frame, Frame)
    assert frame.correlation_id == 0x30


def test_concurrent_getters_do_not_steal_responses(controller, transport):
    """Responses for different ids reach the right caller."""

    async def run():
        ambient = asyncio.ensure_future(controller.get_ambient_light(timeout=1.0))
        encoders = asyncio.ensure_future(controller.get_encoder_counts(timeout=1.0))
        await asyncio.sleep(0)
        transport.feed(sensor_response(0x50, int32s(7, 8), device_id=0x16))
        transport.feed(sensor_response(0x30, int32s(2500)))
        return await ambient, await encoders

    ambient, encoders = asyncio.run(run())
    assert ambient == pytest.approx(2.5)
    assert encoders == (7, 8)


# ─── CACHE AND EVENTS ────────────────────────────────────────────────

def test_streamed_frames_update_cache(controller, transport):
    transport.feed(COLOR_SAMPLE[:4])
    transport.feed(COLOR_SAMPLE[4:] + sensor_response(0x50, int32s(100, 300), device_id=0x16))
    color = controller.read_color()
    assert (color.red, color.green, color.blue) == (0x10, 0x20, 0x30)
    assert controller.read_distance().total == pytest.approx(20.0)
    assert controller.snapshot()["color"]["valid"] is True


def test_reset_distance(controller, transport):
    transport.feed(sensor_response(0x50, int32s(100, 300), device_id=0x16))
    assert asyncio.run(controller.reset_distance())
    assert transport.sent[0][3:5] == bytes([0x16, 0x21])
    assert controller.read_distance().total == 0.0


def test_reset_distance_kept_on_failure(controller, transport):
    transport.feed(sensor_response(0x50, int32s(100, 300), device_id=0x16))
    transport.accept = False
    assert asyncio.run(controller.reset_distance()) is False
    assert controller.read_distance().total == pytest.approx(20.0)


def test_listeners(controller, transport):
    events, frames = [], []
    controller.add_listener(AmbientLightEvent, events.append)
    controller.add_frame_listener(frames.append)
    transport.feed(sensor_response(0x30, int32s(1000)) + COLOR_SAMPLE)
    assert events == [AmbientLightEvent(1.0)]
    assert len(frames) == 2

    controller.remove_listener(AmbientLightEvent, events.append)
    controller.remove_frame_listener(frames.append)
    transport.feed(sensor_response(0x30, int32s(2000)))
    assert len(events) == 1
    assert len(frames) == 2


def test_failing_listener_is_logged(controller, transport, caplog):
    def boom(event):
        raise RuntimeError("listener bug")

    seen = []
    controller.add_listener(ColorEvent, boom)
    controller.add_listener(ColorEvent, seen.append)
    with caplog.at_level(logging.ERROR):
        transport.feed(COLOR_SAMPLE)
    assert len(seen) == 1
    assert "Listener for ColorEvent failed" in caplog.text


def test_device_error_is_logged(controller, transport, caplog):
    with caplog.at_level(logging.WARNING):
        transport.feed(bytes([0x8D, 0x28, 0x02, 0x18, 0x3F, 0x07, 0x04, 0x00, 0xD8]))
    assert "Device error 0x04" in caplog.text


def test_wait_for_color(controller, transport):
    async def run():
        waiter = asyncio.ensure_future(controller.wait_for_color(1.0))
        await asyncio.sleep(0)
        transport.feed(COLOR_SAMPLE)
        return await waiter

    assert asyncio.run(run()) == ColorEvent(0x10, 0x20, 0x30, 0x02, 0xC8)


def test_wait_for_color_timeout(controller):
    assert asyncio.run(controller.wait_for_color(0.01)) is None
