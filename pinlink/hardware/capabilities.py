"""Static capability map for the ESP32-S3 style 40-pin GPIO bank."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from types import MappingProxyType
from typing import Any, Mapping

PIN_MIN = 0
PIN_MAX = 39

ANALOG_PINS = frozenset(range(1, 11))  # ADC1
TOUCH_PINS = frozenset(range(1, 15))
DAC_PINS = frozenset({17, 18})
NO_PWM_PINS = frozenset({28, 29, 30, 31})
NO_PULL_PINS = frozenset({0})

SPECIAL_NOTES: Mapping[int, str] = MappingProxyType(
    {
        0: "Boot mode (strap pin)",
        1: "Console output (UART0_TXD)",
        2: "Built-in LED on some boards",
        3: "Console input (UART0_RXD)",
        4: "Camera (SIOD)",
        5: "Camera (VSYNC)",
        6: "Flash (SPI) - DO NOT USE",
        7: "Flash (SPI) - DO NOT USE",
        8: "Flash (SPI) - DO NOT USE",
        9: "Flash (SPI) - DO NOT USE",
        10: "Flash (SPI) - DO NOT USE",
        11: "Flash (SPI) - DO NOT USE",
        14: "Camera (XCLK)",
        15: "Camera (Y9)",
        16: "Camera (Y8)",
        17: "Camera (Y7), DAC1",
        18: "Camera (Y6), DAC2",
        19: "Camera (Y5)",
        20: "Camera (Y4)",
        21: "Camera (Y3)",
        35: "Camera (Y2)",
        36: "Camera (Y1), ADC1_CH0",
        37: "Camera (Y0), ADC1_CH1",
        38: "Camera (PCLK), ADC1_CH2",
        39: "Camera (HREF), ADC1_CH3",
    }
)


@dataclass(frozen=True, slots=True)
class PinCapability:
    """Electrical functions supported by one pin."""

    pin: int
    digital: bool = True
    analog: bool = False
    pwm: bool = False
    touch: bool = False
    dac: bool = False
    default_mode: str = "input"
    pullup: bool = False
    pulldown: bool = False
    voltage: float = 3.3
    max_current_ma: int = 40
    note: str | None = None

    @property
    def name(self) -> str:
        return f"GPIO{self.pin}"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["name"] = self.name
        return data

    def flags(self) -> dict[str, bool]:
        return {
            "digital": self.digital,
            "analog": self.analog,
            "pwm": self.pwm,
            "touch": self.touch,
            "dac": self.dac,
        }


def is_valid_pin(pin: Any) -> bool:
    return isinstance(pin, int) and not isinstance(pin, bool) and PIN_MIN <= pin <= PIN_MAX


def _build_capability(pin: int) -> PinCapability:
    has_pull = pin not in NO_PULL_PINS
    return PinCapability(
        pin=pin,
        digital=True,
        analog=pin in ANALOG_PINS,
        pwm=pin not in NO_PWM_PINS,
        touch=pin in TOUCH_PINS,
        dac=pin in DAC_PINS,
        pullup=has_pull,
        pulldown=has_pull,
        note=SPECIAL_NOTES.get(pin),
    )


_CAPABILITIES: tuple[PinCapability, ...] = tuple(
    _build_capability(pin) for pin in range(PIN_MIN, PIN_MAX + 1)
)


def capabilities_of(pin: int) -> PinCapability:
    """Return the capability record for `pin`; unknown pins are digital-only."""
    if is_valid_pin(pin):
        return _CAPABILITIES[pin]
    try:
        index = int(pin)
    except (TypeError, ValueError):
        index = -1
    return PinCapability(pin=index)


def all_capabilities() -> tuple[PinCapability, ...]:
    return _CAPABILITIES


def special_note(pin: int) -> str | None:
    """Advisory note for boot, flash and camera pins. Never blocks use."""
    return SPECIAL_NOTES.get(pin)
