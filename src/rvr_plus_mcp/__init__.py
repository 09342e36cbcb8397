"""Sphero RVR+ BLE protocol core and MCP server."""

__version__ = "0.1.0"
