"""Shared fixtures: an in-memory transport and a recording sleep."""

import itertools
import struct

import pytest

from rvr_plus_mcp.config import RvrSettings
from rvr_plus_mcp.controller import RvrController
from rvr_plus_mcp.protocol.framing import build_raw_frame


class FakeTransport:
    """Transport double that records writes and can answer them.

    ``responder(data)`` is called for every accepted write; whatever bytes
    it returns are delivered to the data handler before the write returns,
    like a robot that answers instantly.
    """

    def __init__(self, connect_ok=True, accept=True, responder=None):
        self.connect_ok = connect_ok
        self.accept = accept
        self.responder = responder
        self.sent = []
        self.connected = False
        self.handler = None
        self.disconnect_calls = 0

    @property
    def is_connected(self):
        return self.connected

    def set_data_handler(self, handler):
        self.handler = handler

    async def connect(self):
        self.connected = self.connect_ok
        return self.connect_ok

    async def disconnect(self):
        self.disconnect_calls += 1
        self.connected = False

    async def send_command(self, data):
        self.sent.append(bytes(data))
        ok = self.accept(data) if callable(self.accept) else self.accept
        if ok and self.responder is not None:
            reply = self.responder(bytes(data))
            if reply:
                self.feed(reply)
        return ok

    def feed(self, data):
        self.handler(bytes(data))


class SleepRecorder:
    """Stand-in for asyncio.sleep that returns immediately."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)

    @property
    def total(self):
        return sum(self.calls)


def sensor_response(command_id, payload, device_id=0x18, seq=0x01):
    """Raw ``8D 18 02 DID CID SEQ payload chk D8`` frame as the robot sends it."""
    return build_raw_frame(0x02, device_id, command_id, seq, payload)


def int32s(*values):
    return b"".join(struct.pack(">i", v) for v in values)


@pytest.fixture
def transport():
    t = FakeTransport()
    t.connected = True
    return t


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def settings():
    return RvrSettings(response_timeout=0.2, wake_delay_ms=1200)


@pytest.fixture
def controller(transport, settings, sleeps):
    return RvrController(transport, settings, sleep=sleeps)


@pytest.fixture
def counter_clock():
    return itertools.count(1).__next__
