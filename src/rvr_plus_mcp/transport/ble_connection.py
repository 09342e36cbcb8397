"""BLE connection to the Sphero RVR+.

The robot exposes one vendor service with two characteristics: commands are
written to ``CMD_CHAR_UUID`` and responses/sensor data arrive as
notifications on ``NOTIFY_CHAR_UUID``. Some firmwares also notify on the
command characteristic, so both are subscribed when possible.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError

from .base import DataHandler

logger = logging.getLogger(__name__)

SERVICE_UUID = "00010001-574f-4f20-5370-6865726f2121"
CMD_CHAR_UUID = "00010002-574f-4f20-5370-6865726f2121"
NOTIFY_CHAR_UUID = "00010003-574f-4f20-5370-6865726f2121"

DEFAULT_DEVICE_NAME = "RV-A380"
SCAN_TIMEOUT_S = 10.0
NAME_HINTS = ("rvr", "sphero")

WRITE_DELAY_S = 0.010
WRITE_WITH_RESPONSE_DELAY_S = 0.025


@dataclass
class DeviceInfo:
    """What was learned about the robot during discovery."""

    name: str = ""
    address: str = ""
    notify_on_command_char: bool = False


def matches_device(name: str | None, wanted: str) -> bool:
    """True if an advertised name looks like the configured robot."""
    if not name:
        return False
    lowered = name.lower()
    if wanted and wanted.lower() in lowered:
        return True
    return any(hint in lowered for hint in NAME_HINTS)


class BLEConnection:
    """Manages the GATT link to one RVR+.

    Usage::

        conn = BLEConnection("RV-A380")
        conn.set_data_handler(on_bytes)
        if await conn.connect():
            await conn.send_command(frame_bytes)
            await conn.disconnect()
    """

    def __init__(
        self,
        device_name: str = DEFAULT_DEVICE_NAME,
        scan_timeout: float = SCAN_TIMEOUT_S,
        prefer_write_with_response: bool = False,
    ) -> None:
        self._device_name = device_name
        self._scan_timeout = scan_timeout
        self._prefer_response = prefer_write_with_response
        self._client: BleakClient | None = None
        self._handler: DataHandler | None = None
        self._device_info = DeviceInfo()

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    @property
    def device_info(self) -> DeviceInfo:
        return self._device_info

    def set_data_handler(self, handler: DataHandler | None) -> None:
        self._handler = handler

    async def _find_device(self) -> BLEDevice | None:
        logger.info(
            "Scanning for '%s' (timeout %.1fs)", self._device_name, self._scan_timeout
        )
        devices = await BleakScanner.discover(timeout=self._scan_timeout)
        for device in devices:
            logger.debug("Discovered %s (%s)", device.name, device.address)
            if matches_device(device.name, self._device_name):
                return device
        return None

    async def connect(self) -> bool:
        """Scan, connect and subscribe to notifications.

        Returns:
            True once notifications are enabled, False on any failure.
        """
        if self.is_connected:
            return True
        try:
            device = await self._find_device()
            if device is None:
                logger.warning("No RVR found matching '%s'", self._device_name)
                return False

            client = BleakClient(device)
            await client.connect()
            self._client = client
            self._device_info = DeviceInfo(name=device.name or "", address=device.address)

            await client.start_notify(NOTIFY_CHAR_UUID, self._on_notify)
            if self._command_char_notifies(client):
                await client.start_notify(CMD_CHAR_UUID, self._on_notify)
                self._device_info.notify_on_command_char = True
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            logger.warning("BLE connect failed: %s", e)
            await self._teardown()
            return False

        logger.info(
            "Connected to %s (%s)", self._device_info.name, self._device_info.address
        )
        return True

    @staticmethod
    def _command_char_notifies(client: BleakClient) -> bool:
        char = client.services.get_characteristic(CMD_CHAR_UUID)
        return char is not None and "notify" in char.properties

    def _on_notify(self, _sender, data: bytearray) -> None:
        if self._handler is None:
            return
        try:
            self._handler(bytes(data))
        except Exception:
            # Handler errors stay out of bleak's notification dispatch.
            logger.exception("Data handler failed")

    async def send_command(self, data: bytes) -> bool:
        """Write one frame to the command characteristic.

        Write-without-response is tried first, then write-with-response.

        Returns:
            True if either write was accepted.
        """
        if not self.is_connected:
            logger.warning("Send attempted while not connected")
            return False

        modes = (True, False) if self._prefer_response else (False, True)
        for response in modes:
            try:
                await self._client.write_gatt_char(CMD_CHAR_UUID, data, response=response)
            except (BleakError, asyncio.TimeoutError, OSError) as e:
                logger.debug(
                    "Write (response=%s) failed for %s: %s", response, data.hex(" "), e
                )
                continue
            logger.debug("TX %s", data.hex(" ").upper())
            await asyncio.sleep(
                WRITE_WITH_RESPONSE_DELAY_S if response else WRITE_DELAY_S
            )
            return True

        logger.warning("Write rejected: %s", data.hex(" ").upper())
        return False

    async def disconnect(self) -> None:
        if self._client is None:
            return
        await self._teardown()
        logger.info("Disconnected")

    async def _teardown(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            if client.is_connected:
                await client.disconnect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            logger.warning("Error closing BLE link: %s", e)
