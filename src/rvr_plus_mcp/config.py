"""Runtime settings, overridable through ``RVR_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass


def _to_int(value, default):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _to_float(value, default):
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_bool(value, default):
    if value is None:
        return default
    lowered = str(value).strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    return default


@dataclass
class RvrSettings:
    device_name: str = "RV-A380"
    scan_timeout: float = 10.0  # seconds
    response_timeout: float = 2.5  # seconds, correlated getters
    wake_delay_ms: int = 1200  # settle time after the wake command
    prefer_write_with_response: bool = False
    log_level: str = "INFO"


def load_settings(**overrides) -> RvrSettings:
    """Build settings from the environment; keyword arguments take precedence."""
    env = os.environ
    settings = RvrSettings(
        device_name=env.get("RVR_DEVICE_NAME", RvrSettings.device_name),
        scan_timeout=_to_float(env.get("RVR_SCAN_TIMEOUT"), RvrSettings.scan_timeout),
        response_timeout=_to_float(
            env.get("RVR_RESPONSE_TIMEOUT"), RvrSettings.response_timeout
        ),
        wake_delay_ms=max(0, _to_int(env.get("RVR_WAKE_DELAY_MS"), RvrSettings.wake_delay_ms)),
        prefer_write_with_response=_to_bool(
            env.get("RVR_WRITE_WITH_RESPONSE"), RvrSettings.prefer_write_with_response
        ),
        log_level=env.get("RVR_LOG_LEVEL", RvrSettings.log_level).upper(),
    )
    for key, value in overrides.items():
        if not hasattr(settings, key):
            raise TypeError(f"Unknown setting '{key}'")
        if value is not None:
            setattr(settings, key, value)
    return settings
