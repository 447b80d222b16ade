import math

import pytest

from pinlink.gpio.conversion import convert, to_distance
from pinlink.gpio.expression import INVALID


def test_full_scale_sample() -> None:
    result = convert(4095)
    assert result.percentage == pytest.approx(100)
    assert result.voltage == pytest.approx(3.3)
    assert result.light_percent == pytest.approx(0)
    assert result.battery_voltage == pytest.approx(6.6)
    assert result.temperature_c == pytest.approx(280)


def test_zero_sample_and_infinite_distance() -> None:
    result = convert(0)
    assert result.percentage == 0
    assert result.voltage == 0
    assert result.light_percent == 100
    assert result.temperature_c == pytest.approx(-50)
    assert math.isinf(result.distance)
    assert result.to_dict()["distance"] is None


def test_distance_curve() -> None:
    assert to_distance(1) == pytest.approx(12343.85)
    assert to_distance(1000) == pytest.approx(12343.85 * 1000 ** -1.15)


def test_custom_formula_sees_computed_fields() -> None:
    result = convert(2048, pin=4, formula="val * 2 + pin")
    assert result.custom == 2048 * 2 + 4
    data = result.to_dict()
    assert data["custom"] == 4100
    assert data["raw"] == 2048
    assert data["pin"] == 4

    result = convert(4095, formula="voltage > 3 && percentage == 100")
    assert result.custom is True


def test_bad_formula_yields_invalid_marker() -> None:
    assert convert(100, formula="val +").custom == INVALID
    assert convert(100, formula="__import__('os').getcwd()").custom == INVALID
    assert convert(0, formula="1 / val").custom == INVALID


def test_no_formula_omits_custom() -> None:
    data = convert(12.0).to_dict()
    assert "custom" not in data
    assert data["raw"] == 12
    assert isinstance(data["raw"], int)
