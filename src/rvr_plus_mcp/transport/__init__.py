"""Byte transports for the RVR+ protocol."""

from .base import DataHandler, Transport
from .ble_connection import BLEConnection, DeviceInfo

__all__ = ["BLEConnection", "DataHandler", "DeviceInfo", "Transport"]
