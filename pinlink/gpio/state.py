"""Per-device pin state cache: config, current value and bounded history."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, Iterable

from pinlink.utils.helpers import iso_now

DEFAULT_HISTORY_LIMIT = 100


class PinMode(StrEnum):
    INPUT = "input"
    OUTPUT = "output"
    INPUT_PULLUP = "input_pullup"
    INPUT_PULLDOWN = "input_pulldown"
    OPEN_DRAIN = "open_drain"


class PinPull(StrEnum):
    NONE = "none"
    UP = "up"
    DOWN = "down"


class WriteKind(StrEnum):
    DIGITAL = "digital"
    PWM = "pwm"
    DAC = "dac"


@dataclass(frozen=True, slots=True)
class PinConfig:
    mode: str = PinMode.INPUT.value
    pull: str = PinPull.NONE.value
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    timestamp: str
    value: Any
    type: str | None = None
    mode: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"timestamp": self.timestamp, "value": self.value}
        if self.type is not None:
            data["type"] = self.type
        if self.mode is not None:
            data["mode"] = self.mode
        return data


@dataclass(frozen=True, slots=True)
class PinSnapshot:
    """Consistent copy of one pin's state taken under the device lock."""

    pin: int
    config: PinConfig
    value: Any
    history: tuple[HistoryEntry, ...]

    def recent(self, limit: int) -> list[dict[str, Any]]:
        items = self.history[-limit:] if limit > 0 else ()
        return [entry.to_dict() for entry in items]


@dataclass(slots=True)
class _DeviceState:
    history_limit: int
    lock: threading.RLock = field(default_factory=threading.RLock)
    configs: dict[int, PinConfig] = field(default_factory=dict)
    values: dict[int, Any] = field(default_factory=dict)
    history: dict[int, deque[HistoryEntry]] = field(default_factory=dict)

    def history_for(self, pin: int) -> deque[HistoryEntry]:
        buf = self.history.get(pin)
        if buf is None:
            buf = deque(maxlen=self.history_limit)
            self.history[pin] = buf
        return buf


class PinStateCache:
    """Ephemeral, in-process state store partitioned by device id.

    Each mutator updates the current value and the history buffer under the
    device lock, so a reader never sees one without the other.
    """

    def __init__(self, *, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.history_limit = max(1, int(history_limit))
        self._devices: dict[str, _DeviceState] = {}
        self._devices_lock = threading.Lock()

    def get_or_create(self, device_id: str) -> _DeviceState:
        device = self._devices.get(device_id)
        if device is not None:
            return device
        with self._devices_lock:
            device = self._devices.get(device_id)
            if device is None:
                device = _DeviceState(history_limit=self.history_limit)
                self._devices[device_id] = device
            return device

    def has_device(self, device_id: str) -> bool:
        return device_id in self._devices

    def get(self, device_id: str, pin: int) -> PinSnapshot:
        device = self.get_or_create(device_id)
        with device.lock:
            return PinSnapshot(
                pin=pin,
                config=device.configs.get(pin, PinConfig()),
                value=device.values.get(pin, 0),
                history=tuple(device.history.get(pin, ())),
            )

    def value(self, device_id: str, pin: int) -> Any:
        device = self.get_or_create(device_id)
        with device.lock:
            return device.values.get(pin, 0)

    def set(
        self,
        device_id: str,
        pin: int,
        value: Any,
        kind: str | None = WriteKind.DIGITAL.value,
        *,
        mode: str | None = None,
    ) -> HistoryEntry:
        """Record a new current value and append it to the pin's history."""
        entry = HistoryEntry(timestamp=iso_now(), value=value, type=kind, mode=mode)
        device = self.get_or_create(device_id)
        with device.lock:
            device.values[pin] = value
            device.history_for(pin).append(entry)
        return entry

    def update_value(self, device_id: str, pin: int, value: Any) -> None:
        """Refresh the current value from a read; reads are not history."""
        device = self.get_or_create(device_id)
        with device.lock:
            device.values[pin] = value

    def set_config(self, device_id: str, pin: int, mode: str, pull: str | None = None) -> PinConfig:
        device = self.get_or_create(device_id)
        with device.lock:
            previous = device.configs.get(pin, PinConfig())
            config = PinConfig(
                mode=str(mode),
                pull=str(pull) if pull is not None else previous.pull,
                updated_at=iso_now(),
            )
            device.configs[pin] = config
        return config

    def bulk_update(self, device_id: str, pins: Iterable[dict[str, Any]]) -> int:
        """Apply a device status report: one value + history entry per listed pin."""
        device = self.get_or_create(device_id)
        count = 0
        with device.lock:
            for item in pins:
                if not isinstance(item, dict):
                    continue
                try:
                    pin = int(item.get("pin"))
                except (TypeError, ValueError):
                    continue
                value = item.get("value", 0)
                mode = item.get("mode")
                device.values[pin] = value
                device.history_for(pin).append(
                    HistoryEntry(
                        timestamp=iso_now(),
                        value=value,
                        mode=str(mode) if mode is not None else None,
                    )
                )
                count += 1
        return count

    def local_pins(self, device_id: str) -> list[dict[str, Any]]:
        """Cached pin values for the offline status view."""
        device = self.get_or_create(device_id)
        with device.lock:
            return [
                {
                    "pin": pin,
                    "value": value,
                    "config": device.configs.get(pin, PinConfig()).to_dict(),
                }
                for pin, value in sorted(device.values.items())
            ]

    def history(self, device_id: str, pin: int) -> list[HistoryEntry]:
        device = self.get_or_create(device_id)
        with device.lock:
            return list(device.history.get(pin, ()))
