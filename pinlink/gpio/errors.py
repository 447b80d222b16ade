"""Error taxonomy shared by the gateway, registries and the control API."""

from __future__ import annotations

from typing import Any


class GpioError(Exception):
    """Base error carrying a stable machine-readable code."""

    error_code: str = "internal"

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = dict(details)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": False, "message": self.message, "error_code": self.error_code}
        if self.details:
            data.update(self.details)
        return data


class ValidationError(GpioError):
    """Malformed input from a caller."""

    error_code = "invalid"


class OfflineError(GpioError):
    """The transport is not connected; nothing was sent."""

    error_code = "offline"


class CommandTimeoutError(GpioError):
    """No correlated reply arrived before the deadline."""

    error_code = "timeout"


class DeviceError(GpioError):
    """The device replied with an explicit failure."""

    error_code = "device_error"


class NotFoundError(GpioError):
    """Unknown group, rule or pin."""

    error_code = "not_found"


class EvaluationError(GpioError):
    """An expression could not be parsed or evaluated in the sandbox."""

    error_code = "evaluation"
