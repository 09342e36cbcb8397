"""MCP server entry point for the Sphero RVR+.

Exposes tools, resources, and prompts via the Model Context Protocol
using the official Python MCP SDK with stdio transport.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from mcp.server.fastmcp import FastMCP

from .config import load_settings
from .controller import RvrController
from .models.colors import LedColor
from .protocol.framing import FrameFormat
from .sensors.color_sensor import ColorSensorManager
from .transport.ble_connection import BLEConnection

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "rvr-plus",
    instructions="MCP server for driving and reading sensors on a Sphero RVR+ over BLE",
)

# Global connection state
_controller: RvrController | None = None
_color_sensor: ColorSensorManager | None = None


def _get_controller() -> RvrController:
    """Get the connected controller, raising if not connected."""
    if _controller is None or not _controller.is_connected:
        raise RuntimeError("Not connected to robot. Use the 'connect' tool first.")
    return _controller


def _get_color_sensor() -> ColorSensorManager:
    global _color_sensor
    rvr = _get_controller()
    if _color_sensor is None:
        _color_sensor = ColorSensorManager(rvr)
    return _color_sensor


def _parse_hex(data: str) -> bytes:
    cleaned = data.replace(" ", "").replace(":", "").replace("-", "")
    return bytes.fromhex(cleaned)


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
async def connect(device_name: str | None = None) -> dict[str, Any]:
    """Connect to an RVR+ over Bluetooth LE and wake it.

    Scans for a device whose name contains ``device_name`` (default from
    RVR_DEVICE_NAME, else "RV-A380"), or "rvr"/"sphero".
    """
    global _controller, _color_sensor
    if _controller is not None and _controller.is_connected:
        return {"connected": True, "message": "Already connected"}

    settings = load_settings(device_name=device_name)
    transport = BLEConnection(
        settings.device_name,
        scan_timeout=settings.scan_timeout,
        prefer_write_with_response=settings.prefer_write_with_response,
    )
    controller = RvrController(transport, settings)
    if not await controller.connect():
        return {"connected": False, "error": f"Could not connect to '{settings.device_name}'"}

    _controller = controller
    _color_sensor = None
    info = transport.device_info
    return {"connected": True, "name": info.name, "address": info.address}


@mcp.tool()
async def disconnect() -> dict[str, bool]:
    """Close the BLE link to the robot."""
    global _controller, _color_sensor
    if _controller is None:
        return {"disconnected": True}
    await _controller.disconnect()
    _controller = None
    _color_sensor = None
    return {"disconnected": True}


# ─── MOTION TOOLS ────────────────────────────────────────────────────

@mcp.tool()
async def drive(left: int, right: int, duration_ms: int | None = None) -> dict[str, Any]:
    """Set wheel speeds (-255..255).

    Args:
        left: Left wheel speed; negative drives backward.
        right: Right wheel speed.
        duration_ms: If given, stop after this many milliseconds.
    """
    rvr = _get_controller()
    ok = await rvr.drive(left, right, duration_ms)
    return {"sent": ok, "left": left, "right": right, "duration_ms": duration_ms}


@mcp.tool()
async def drive_arc(speed: int, turn_ratio: float, duration_ms: int) -> dict[str, Any]:
    """Drive a gradual turn.

    Args:
        speed: Base speed 0-255.
        turn_ratio: -1.0 (hard left) to 1.0 (hard right).
        duration_ms: How long to drive before stopping.
    """
    rvr = _get_controller()
    ok = await rvr.drive_with_turn(speed, turn_ratio, duration_ms)
    return {"sent": ok}


@mcp.tool()
async def turn(degrees: int, direction: str = "right", speed: int = 100) -> dict[str, Any]:
    """Spin in place by an approximate angle (timed, no feedback).

    Args:
        degrees: Rotation amount; 0 does nothing.
        direction: "left" or "right".
        speed: Turn speed, clamped to 30-200.
    """
    direction = direction.lower()
    if direction not in ("left", "right"):
        return {"error": "direction must be 'left' or 'right'"}
    if degrees < 0:
        return {"error": "degrees must be non-negative"}

    rvr = _get_controller()
    if direction == "right":
        ok = await rvr.turn_right(degrees, speed)
    else:
        ok = await rvr.turn_left(degrees, speed)
    return {"sent": ok, "degrees": degrees, "direction": direction}


@mcp.tool()
async def stop() -> dict[str, bool]:
    """Stop both motors."""
    rvr = _get_controller()
    return {"sent": await rvr.stop()}


# ─── LED TOOLS ───────────────────────────────────────────────────────

@mcp.tool()
async def set_leds(
    red: int | None = None,
    green: int | None = None,
    blue: int | None = None,
    color: str | None = None,
) -> dict[str, Any]:
    """Set the main LEDs from RGB values (0-255) or a named color.

    Args:
        red: Red channel.
        green: Green channel.
        blue: Blue channel.
        color: Named color such as "red" or "lime"; overrides RGB.
    """
    if color is not None:
        try:
            red, green, blue = LedColor.from_name(color).rgb
        except ValueError as e:
            return {"error": str(e)}
    if red is None or green is None or blue is None:
        return {"error": "Provide red, green and blue, or a color name"}

    rvr = _get_controller()
    ok = await rvr.set_main_leds(red, green, blue)
    return {"sent": ok, "rgb": [red, green, blue]}


@mcp.tool()
async def set_underbody_led(red: int, green: int, blue: int) -> dict[str, Any]:
    """Set the underbody illumination used by the color sensor."""
    rvr = _get_controller()
    return {"sent": await rvr.set_underbody_led(red, green, blue)}


@mcp.tool()
async def led_effect(
    effect: str,
    color: str = "white",
    to_color: str = "off",
    cycles: int = 3,
    duration_ms: int = 2000,
) -> dict[str, Any]:
    """Run a main-LED animation.

    Args:
        effect: "blink", "rainbow" or "fade".
        color: Blink color, or fade start color.
        to_color: Fade end color.
        cycles: Blink count.
        duration_ms: Rainbow or fade length.
    """
    try:
        start = LedColor.from_name(color)
        end = LedColor.from_name(to_color)
    except ValueError as e:
        return {"error": str(e)}

    rvr = _get_controller()
    effect = effect.lower()
    if effect == "blink":
        ok = await rvr.blink_main_leds(*start.rgb, cycles=cycles)
    elif effect == "rainbow":
        ok = await rvr.rainbow_main_leds(duration_ms)
    elif effect == "fade":
        ok = await rvr.fade_main_leds(start, end, duration_ms)
    else:
        return {"error": f"Unknown effect '{effect}'. Valid: blink, rainbow, fade"}
    return {"sent": ok, "effect": effect}


# ─── SENSOR TOOLS ────────────────────────────────────────────────────

@mcp.tool()
async def read_sensors() -> dict[str, Any]:
    """Return the latest cached value of every sensor.

    Values are filled in by streamed or polled frames; a reading with
    "valid": false has not been received yet.
    """
    rvr = _get_controller()
    return rvr.snapshot()


@mcp.tool()
async def get_ambient_light() -> dict[str, Any]:
    """Query the ambient light sensor (lux)."""
    rvr = _get_controller()
    lux = await rvr.get_ambient_light()
    if lux is None:
        return {"error": "No response from robot"}
    return {"lux": lux}


@mcp.tool()
async def get_encoders() -> dict[str, Any]:
    """Query raw wheel encoder counts."""
    rvr = _get_controller()
    counts = await rvr.get_encoder_counts()
    if counts is None:
        return {"error": "No response from robot"}
    return {"left": counts[0], "right": counts[1]}


@mcp.tool()
async def get_imu() -> dict[str, Any]:
    """Query accelerometer and gyroscope."""
    rvr = _get_controller()
    imu = await rvr.get_imu()
    if imu is None:
        return {"error": "No response from robot"}
    return {
        "accel": [imu.accel_x, imu.accel_y, imu.accel_z],
        "gyro": [imu.gyro_x, imu.gyro_y, imu.gyro_z],
    }


@mcp.tool()
async def activate_color_sensor() -> dict[str, bool]:
    """Run the color sensor activation sequence (takes about 4 seconds)."""
    sensor = _get_color_sensor()
    return {"activated": await sensor.activate()}


@mcp.tool()
async def read_color() -> dict[str, Any]:
    """Take an averaged color reading from the underbody sensor.

    Activates the sensor first if needed.
    """
    sensor = _get_color_sensor()
    reading = await sensor.read_color()
    if reading is None:
        return {"error": "No color samples received"}
    return reading.to_dict()


@mcp.tool()
async def reset_distance() -> dict[str, bool]:
    """Zero the wheel encoders."""
    rvr = _get_controller()
    return {"sent": await rvr.reset_distance()}


# ─── LOW-LEVEL TOOLS ─────────────────────────────────────────────────

@mcp.tool()
async def send_raw_command(
    device_id: int,
    command_id: int,
    payload_hex: str = "",
    flag: int = 0x02,
    official: bool = False,
) -> dict[str, Any]:
    """Send an arbitrary command frame for protocol exploration.

    Args:
        device_id: Target device (e.g. 0x18 sensors, 0x16 drive).
        command_id: Command within the device.
        payload_hex: Payload bytes as hex, e.g. "01 00 03".
        flag: Flag byte.
        official: Use the ``8D 3A flag 01`` layout instead of ``8D 18 flag``.
    """
    try:
        payload = _parse_hex(payload_hex)
    except ValueError:
        return {"error": f"Invalid hex payload: {payload_hex!r}"}

    rvr = _get_controller()
    fmt = FrameFormat.OFFICIAL if official else FrameFormat.RAW
    try:
        ok = await rvr.send_command(device_id, command_id, payload, flag, fmt)
    except ValueError as e:
        return {"error": str(e)}
    return {"sent": ok}


@mcp.tool()
async def query_sensor(command_id: int, timeout: float = 2.5) -> dict[str, Any]:
    """Send a short sensor query and return the raw response frame as hex."""
    rvr = _get_controller()
    frame = await rvr.send_raw_sensor_command(command_id, timeout)
    if frame is None:
        return {"error": "No response from robot"}
    return {"frame": frame.data.hex(" ").upper(), "checksum_valid": frame.checksum_valid}


# ─── MCP RESOURCES ───────────────────────────────────────────────────

@mcp.resource("rvr://device/status")
def resource_device_status() -> str:
    """Connection state and color sensor activation."""
    connected = _controller is not None and _controller.is_connected
    activated = _color_sensor is not None and _color_sensor.is_activated
    return json.dumps({"connected": connected, "color_sensor_active": activated})


@mcp.resource("rvr://sensors/snapshot")
def resource_sensor_snapshot() -> str:
    """Latest cached sensor values."""
    if _controller is None:
        return json.dumps({"connected": False})
    return json.dumps(_controller.snapshot())


@mcp.resource("rvr://catalog/colors")
def resource_color_catalog() -> str:
    """Named LED colors and their RGB values."""
    colors = [{"name": c.name.lower(), "rgb": list(c.rgb)} for c in LedColor]
    return json.dumps({"colors": colors, "count": len(colors)})


# ─── MCP PROMPTS ─────────────────────────────────────────────────────

@mcp.prompt()
def drive_square(side_ms: int = 1500) -> str:
    """Guide the AI to drive the robot around a square.

    Args:
        side_ms: Time to drive each side.
    """
    return f"""Drive the RVR+ in a square.
For each of the four sides:
- Use drive with left=right=80 and duration_ms={side_ms}
- Use turn with degrees=90 and direction="right"

Turns are timed, not measured, so expect the square not to close exactly.
Call read_sensors at the end and report the distance travelled."""


@mcp.prompt()
def survey_floor_colors(samples: int = 5) -> str:
    """Take color readings while moving across the floor."""
    return f"""Call activate_color_sensor once.
Then repeat {samples} times:
- drive forward briefly (drive left=60 right=60 duration_ms=500)
- call read_color and note the RGB value

Summarize which colors were seen and where they changed."""


def main():
    """Run the MCP server with stdio transport."""
    settings = load_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
