"""Tests for the BLE transport with bleak mocked out."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

from bleak.exc import BleakError

from rvr_plus_mcp.controller import RvrController
from rvr_plus_mcp.transport import BLEConnection, Transport
from rvr_plus_mcp.transport.ble_connection import CMD_CHAR_UUID, matches_device


def _connected(prefer_write_with_response=False, side_effect=None):
    conn = BLEConnection(prefer_write_with_response=prefer_write_with_response)
    client = MagicMock()
    client.is_connected = True
    client.write_gatt_char = AsyncMock(side_effect=side_effect)
    client.disconnect = AsyncMock()
    conn._client = client
    return conn, client


def test_satisfies_transport_contract():
    assert isinstance(BLEConnection(), Transport)


def test_matches_device():
    assert matches_device("RV-A380", "RV-A380")
    assert matches_device("rv-a380 plus", "RV-A380")
    assert matches_device("RVR+ 1234", "other")
    assert matches_device("Sphero Bolt", "other")
    assert not matches_device("Headphones", "RV-A380")
    assert not matches_device(None, "RV-A380")


def test_write_without_response_first():
    conn, client = _connected()
    assert asyncio.run(conn.send_command(b"\x8d\xd8"))
    client.write_gatt_char.assert_awaited_once_with(CMD_CHAR_UUID, b"\x8d\xd8", response=False)


def test_falls_back_to_write_with_response():
    conn, client = _connected(side_effect=[BleakError("not permitted"), None])
    assert asyncio.run(conn.send_command(b"\x8d\xd8"))
    assert [c.kwargs["response"] for c in client.write_gatt_char.await_args_list] == [
        False,
        True,
    ]


def test_preferred_write_with_response():
    conn, client = _connected(prefer_write_with_response=True)
    asyncio.run(conn.send_command(b"\x8d\xd8"))
    assert client.write_gatt_char.await_args.kwargs["response"] is True


def test_both_writes_rejected():
    conn, _ = _connected(side_effect=BleakError("gone"))
    assert asyncio.run(conn.send_command(b"\x8d\xd8")) is False


def test_send_while_disconnected():
    assert asyncio.run(BLEConnection().send_command(b"\x8d\xd8")) is False


def test_notifications_reach_handler():
    conn = BLEConnection()
    received = []
    conn.set_data_handler(received.append)
    conn._on_notify(None, bytearray(b"\x8d\x18"))
    assert received == [b"\x8d\x18"]


def test_handler_errors_are_contained():
    conn = BLEConnection()
    conn.set_data_handler(MagicMock(side_effect=ValueError("bad")))
    conn._on_notify(None, bytearray(b"\x8d"))


def test_disconnect_closes_client():
    conn, client = _connected()
    asyncio.run(conn.disconnect())
    client.disconnect.assert_awaited_once()
    assert not conn.is_connected


def test_write_timeout_returns_false():
    """A link timing out mid-write is a rejected write, not an exception."""
    conn, client = _connected(side_effect=asyncio.TimeoutError())
    assert asyncio.run(conn.send_command(b"\x8d\xd8")) is False
    assert client.write_gatt_char.await_count == 2


def test_os_error_falls_back_to_second_mode():
    conn, _ = _connected(side_effect=[OSError("link lost"), None])
    assert asyncio.run(conn.send_command(b"\x8d\xd8"))


def test_controller_send_survives_write_timeout(settings, sleeps):
    conn, _ = _connected(side_effect=asyncio.TimeoutError())
    rvr = RvrController(conn, settings, sleep=sleeps)
    assert asyncio.run(rvr.set_motors(10, 10)) is False


def test_disconnect_tolerates_os_error():
    conn, client = _connected()
    client.disconnect = AsyncMock(side_effect=OSError("already gone"))
    asyncio.run(conn.disconnect())
    assert not conn.is_connected
