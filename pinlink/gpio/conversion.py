"""Raw ADC sample to physical unit conversions."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from pinlink.gpio.expression import ExpressionEvaluator

ADC_MAX = 4095
ADC_REFERENCE_VOLTS = 3.3

# Sharp GP2Y0A-style IR distance curve.
DISTANCE_COEFFICIENT = 12343.85
DISTANCE_EXPONENT = -1.15


def to_voltage(raw: float) -> float:
    return raw / ADC_MAX * ADC_REFERENCE_VOLTS


def to_percentage(raw: float) -> float:
    return raw / ADC_MAX * 100


def to_light_percent(raw: float) -> float:
    # LDR divider reads high in the dark.
    return 100 - to_percentage(raw)


def to_temperature_c(raw: float) -> float:
    # TMP36: 500 mV offset, 10 mV/°C.
    return (to_voltage(raw) - 0.5) * 100


def to_battery_voltage(raw: float) -> float:
    # 1:2 resistor divider.
    return to_voltage(raw) * 2


def to_distance(raw: float) -> float:
    if raw <= 0:
        return math.inf
    return DISTANCE_COEFFICIENT * math.pow(raw, DISTANCE_EXPONENT)


@dataclass(slots=True)
class ConversionResult:
    """Every fixed conversion for one raw sample, plus an optional custom value."""

    raw: float
    pin: int | None
    voltage: float
    percentage: float
    light_percent: float
    temperature_c: float
    battery_voltage: float
    distance: float
    custom: Any = None
    has_custom: bool = field(default=False, repr=False)

    def bindings(self) -> dict[str, Any]:
        """Names visible to a custom formula."""
        return {
            "val": self.raw,
            "raw": self.raw,
            "pin": self.pin,
            "voltage": self.voltage,
            "percentage": self.percentage,
            "light": self.light_percent,
            "light_percent": self.light_percent,
            "temperature": self.temperature_c,
            "temperature_c": self.temperature_c,
            "battery": self.battery_voltage,
            "battery_voltage": self.battery_voltage,
            "distance": self.distance,
        }

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "raw": self.raw,
            "pin": self.pin,
            "voltage": self.voltage,
            "percentage": self.percentage,
            "light": self.light_percent,
            "temperature": self.temperature_c,
            "battery": self.battery_voltage,
            # JSON has no infinity; raw == 0 reports null.
            "distance": self.distance if math.isfinite(self.distance) else None,
        }
        if self.has_custom:
            data["custom"] = self.custom
        return data


def convert(
    raw: float,
    *,
    pin: int | None = None,
    formula: str | None = None,
    evaluator: ExpressionEvaluator | None = None,
) -> ConversionResult:
    """Run every fixed conversion over `raw` and, if given, a sandboxed custom formula."""
    value = float(raw)
    if value.is_integer():
        value = int(value)
    result = ConversionResult(
        raw=value,
        pin=pin,
        voltage=to_voltage(value),
        percentage=to_percentage(value),
        light_percent=to_light_percent(value),
        temperature_c=to_temperature_c(value),
        battery_voltage=to_battery_voltage(value),
        distance=to_distance(value),
    )
    if formula:
        engine = evaluator or ExpressionEvaluator()
        result.custom = engine.evaluate_formula(formula, result.bindings())
        result.has_custom = True
    return result
