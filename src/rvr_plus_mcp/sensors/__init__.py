"""Higher-level sensor workflows built on the controller."""

from .color_sensor import ACTIVATION_SEQUENCE, ActivationStep, ColorSensorManager

__all__ = ["ACTIVATION_SEQUENCE", "ActivationStep", "ColorSensorManager"]
