"""Command and reply envelopes exchanged with GPIO devices."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pinlink.utils.helpers import now_ms


class GpioCommand(StrEnum):
    """Command names understood by the device firmware."""

    STATUS = "gpio-status"
    MODE = "gpio-mode"
    WRITE = "gpio-write"
    READ = "gpio-read"


def new_message_id(command: str) -> str:
    """Correlation id echoed back by the device in its reply."""
    return f"{command}_{now_ms()}_{uuid.uuid4().hex[:6]}"


@dataclass(slots=True)
class CommandEnvelope:
    """Outbound command; the payload is flattened next to the correlation fields."""

    device_id: str
    command: str
    payload: dict[str, Any] = field(default_factory=dict)
    message_id: str = ""
    timestamp: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        if not self.message_id:
            self.message_id = new_message_id(self.command)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.payload)
        data["messageId"] = self.message_id
        data["timestamp"] = self.timestamp
        return data


@dataclass(slots=True)
class CommandReply:
    """Normalized device reply."""

    message_id: str
    device_id: str
    success: bool
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def value(self) -> Any:
        return self.data.get("value")

    @property
    def pins(self) -> list[dict[str, Any]]:
        pins = self.data.get("pins")
        return list(pins) if isinstance(pins, list) else []

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, default_device_id: str = "") -> "CommandReply":
        message_id = str(data.get("messageId") or data.get("message_id") or "").strip()
        device_id = str(data.get("deviceId") or data.get("device_id") or default_device_id or "").strip()
        raw_success = data.get("success", True)
        if isinstance(raw_success, str):
            success = raw_success.strip().lower() in {"1", "true", "yes", "ok"}
        else:
            success = bool(raw_success)
        message = str(data.get("message") or data.get("error") or "")
        return cls(
            message_id=message_id,
            device_id=device_id,
            success=success,
            message=message,
            data=dict(data),
        )

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.data)
        data["success"] = self.success
        if self.message:
            data["message"] = self.message
        return data
