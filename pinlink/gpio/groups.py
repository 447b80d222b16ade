"""Named pin groups and the per-pin fan-out writer."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from loguru import logger

from pinlink.gpio.errors import GpioError, NotFoundError, ValidationError
from pinlink.hardware.capabilities import is_valid_pin
from pinlink.utils.helpers import iso_now

if TYPE_CHECKING:
    from pinlink.gpio.gateway import CommandGateway


@dataclass(slots=True)
class PinGroup:
    name: str
    pins: list[int]
    created_at: str = field(default_factory=iso_now)
    updated_at: str = field(default_factory=iso_now)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["pins"] = list(self.pins)
        return data


@dataclass(slots=True)
class PinWriteResult:
    pin: int
    success: bool
    value: Any = None
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"pin": self.pin, "success": self.success}
        if self.success:
            data["value"] = self.value
        else:
            data["error"] = self.error
            data["error_code"] = self.error_code
        return data


def _normalize_pins(pins: Iterable[Any]) -> list[int]:
    normalized: list[int] = []
    for item in pins:
        try:
            pin = int(item)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"invalid pin in group: {item!r}") from e
        if isinstance(item, bool) or not is_valid_pin(pin) or (isinstance(item, float) and not item.is_integer()):
            raise ValidationError(f"pin out of range: {item!r}")
        normalized.append(pin)
    return normalized


def _normalize_values(values: Mapping[Any, Any]) -> dict[int, Any]:
    # JSON object keys arrive as strings.
    normalized: dict[int, Any] = {}
    for key, value in values.items():
        try:
            normalized[int(key)] = value
        except (TypeError, ValueError):
            logger.debug(f"ignoring non-numeric group value key {key!r}")
    return normalized


class GroupRegistry:
    """Per-device named pin sets.

    Pins keep the caller's order and duplicates are stored as given; the
    writer addresses each distinct pin once, in first-occurrence order.
    """

    def __init__(self, gateway: CommandGateway | None = None) -> None:
        self.gateway = gateway
        self._groups: dict[str, dict[str, PinGroup]] = {}
        self._lock = threading.Lock()

    def _device_groups(self, device_id: str) -> dict[str, PinGroup]:
        with self._lock:
            return self._groups.setdefault(device_id, {})

    def create_group(self, device_id: str, name: str, pins: Iterable[Any]) -> PinGroup:
        """Create or overwrite a group; an existing group keeps its created_at."""
        group_name = str(name or "").strip()
        if not group_name:
            raise ValidationError("group name is required")
        pin_list = _normalize_pins(pins)
        groups = self._device_groups(device_id)
        with self._lock:
            existing = groups.get(group_name)
            group = PinGroup(name=group_name, pins=pin_list)
            if existing is not None:
                group.created_at = existing.created_at
            groups[group_name] = group
        logger.info(f"GPIO group created: {group_name} with pins {','.join(str(p) for p in pin_list)}")
        return group

    def get_group(self, device_id: str, name: str) -> PinGroup:
        group = self._device_groups(device_id).get(str(name))
        if group is None:
            raise NotFoundError("Group not found", group=str(name))
        return group

    def list_groups(self, device_id: str) -> list[PinGroup]:
        groups = self._device_groups(device_id)
        with self._lock:
            return list(groups.values())

    def delete_group(self, device_id: str, name: str) -> None:
        groups = self._device_groups(device_id)
        with self._lock:
            if groups.pop(str(name), None) is None:
                raise NotFoundError("Group not found", group=str(name))
        logger.info(f"GPIO group deleted: {name}")

    async def write_group(
        self,
        device_id: str,
        name: str,
        values_by_pin: Mapping[Any, Any],
        *,
        kind: str = "digital",
    ) -> list[PinWriteResult]:
        """Write each listed pin that has a value; one independent command per pin."""
        if self.gateway is None:
            raise RuntimeError("GroupRegistry has no gateway bound")
        group = self.get_group(device_id, name)
        values = _normalize_values(values_by_pin)
        results: list[PinWriteResult] = []
        seen: set[int] = set()
        for pin in group.pins:
            if pin in seen or pin not in values:
                continue
            seen.add(pin)
            raw = values[pin]
            pin_kind = kind
            if isinstance(raw, Mapping):
                pin_kind = str(raw.get("type") or kind)
                raw = raw.get("value")
            try:
                outcome = await self.gateway.write(device_id, pin, raw, pin_kind)
            except GpioError as e:
                results.append(PinWriteResult(pin=pin, success=False, error=e.message, error_code=e.error_code))
                continue
            if outcome.ok:
                results.append(PinWriteResult(pin=pin, success=True, value=outcome.data.get("value")))
            else:
                results.append(
                    PinWriteResult(
                        pin=pin,
                        success=False,
                        error=outcome.message,
                        error_code=outcome.error_code,
                    )
                )
        failed = sum(1 for r in results if not r.success)
        logger.info(f"GPIO group {group.name} write: {len(results) - failed} ok, {failed} failed")
        return results
