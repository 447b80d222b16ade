"""GPIO application service: validated operations with structured outcomes."""

from __future__ import annotations

import functools
from typing import Any, Awaitable, Callable, Mapping

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from pinlink.config.schema import Config
from pinlink.gpio.conversion import ADC_MAX, convert
from pinlink.gpio.errors import GpioError, ValidationError
from pinlink.gpio.expression import ExpressionEvaluator
from pinlink.gpio.gateway import MAX_ANALOG_VALUE, CommandGateway
from pinlink.gpio.groups import GroupRegistry
from pinlink.gpio.rules import RuleStore
from pinlink.gpio.scheduler import ResetScheduler
from pinlink.gpio.state import PinMode, PinPull, PinStateCache, WriteKind
from pinlink.hardware.adapter.base import GpioTransport
from pinlink.hardware.capabilities import PIN_MAX, PIN_MIN, all_capabilities, capabilities_of

MAX_DURATION_MS = 3_600_000

ServiceResult = dict[str, Any]
ServiceCall = Callable[..., Awaitable[ServiceResult]]


class _DeviceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    device_id: str | None = Field(default=None, alias="deviceId")


class PinModeRequest(_DeviceRequest):
    pin: int = Field(ge=PIN_MIN, le=PIN_MAX)
    mode: PinMode
    pull: PinPull | None = None


class PinWriteRequest(_DeviceRequest):
    pin: int = Field(ge=PIN_MIN, le=PIN_MAX)
    value: bool | int
    type: WriteKind = WriteKind.DIGITAL
    duration: int | None = Field(default=None, ge=0, le=MAX_DURATION_MS)

    @field_validator("value", mode="before")
    @classmethod
    def _check_value(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if not isinstance(value, int):
            raise ValueError("value must be a boolean or an integer")
        if value < 0 or value > MAX_ANALOG_VALUE:
            raise ValueError(f"value must be within 0..{MAX_ANALOG_VALUE}")
        return value


class PinReadRequest(_DeviceRequest):
    pin: int = Field(ge=PIN_MIN, le=PIN_MAX)
    type: str = "digital"


class GroupCreateRequest(_DeviceRequest):
    name: str = Field(min_length=1)
    pins: list[int]

    @field_validator("pins")
    @classmethod
    def _check_pins(cls, pins: list[int]) -> list[int]:
        for pin in pins:
            if pin < PIN_MIN or pin > PIN_MAX:
                raise ValueError(f"pin out of range: {pin}")
        return pins


class GroupWriteRequest(_DeviceRequest):
    values: dict[str, Any]
    type: WriteKind = WriteKind.DIGITAL


class RuleCreateRequest(_DeviceRequest):
    name: str = Field(min_length=1)
    condition: str = Field(min_length=1)
    action: str = Field(min_length=1)
    enabled: bool = True


class RuleUpdateRequest(_DeviceRequest):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str | None = Field(default=None, min_length=1)
    condition: str | None = Field(default=None, min_length=1)
    action: str | None = Field(default=None, min_length=1)
    enabled: bool | None = None


class RuleTestRequest(BaseModel):
    condition: str = Field(min_length=1)
    values: dict[str, Any]


class CalculateRequest(BaseModel):
    pin: int
    value: float = Field(ge=0, le=ADC_MAX, allow_inf_nan=False)
    formula: str | None = None


def _validation_errors(error: PydanticValidationError) -> list[dict[str, str]]:
    return [
        {"field": ".".join(str(part) for part in item.get("loc", ())), "message": str(item.get("msg", ""))}
        for item in error.errors()
    ]


def service_operation(label: str) -> Callable[[ServiceCall], ServiceCall]:
    """Turn every failure inside a service call into a structured result."""

    def decorator(func: ServiceCall) -> ServiceCall:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> ServiceResult:
            try:
                return await func(*args, **kwargs)
            except PydanticValidationError as e:
                return {
                    "success": False,
                    "message": "Validation failed",
                    "error_code": ValidationError.error_code,
                    "errors": _validation_errors(e),
                }
            except GpioError as e:
                return e.to_dict()
            except Exception as e:
                logger.exception(f"GPIO {label} error")
                return {
                    "success": False,
                    "message": f"Failed to {label}: {e}",
                    "error_code": GpioError.error_code,
                }

        return wrapper

    return decorator


class GpioService:
    """Front door for the control API; one instance per process."""

    def __init__(
        self,
        *,
        gateway: CommandGateway,
        groups: GroupRegistry | None = None,
        rules: RuleStore | None = None,
        default_device_id: str = "esp32-s3-1",
        history_preview: int = 10,
    ) -> None:
        self.gateway = gateway
        self.cache = gateway.cache
        self.groups = groups or GroupRegistry(gateway)
        if self.groups.gateway is None:
            self.groups.gateway = gateway
        self.rules = rules or RuleStore()
        self.default_device_id = str(default_device_id or "esp32-s3-1")
        self.history_preview = max(0, int(history_preview))

    @classmethod
    def from_config(cls, config: Config, *, transport: GpioTransport) -> "GpioService":
        cache = PinStateCache(history_limit=config.gpio.history_limit)
        gateway = CommandGateway(
            transport,
            cache,
            scheduler=ResetScheduler(),
            command_timeout_ms=config.gpio.command_timeout_ms,
            reset_timeout_ms=config.gpio.reset_timeout_ms,
        )
        logger.info(
            "GPIO service ready "
            f"adapter={transport.name} device={config.gpio.default_device_id} "
            f"timeout={config.gpio.command_timeout_ms}ms history={cache.history_limit}"
        )
        return cls(
            gateway=gateway,
            rules=RuleStore(ExpressionEvaluator()),
            default_device_id=config.gpio.default_device_id,
            history_preview=config.gpio.history_preview,
        )

    @property
    def online(self) -> bool:
        return self.gateway.online

    def device_id(self, payload: Mapping[str, Any] | None) -> str:
        payload = payload or {}
        value = payload.get("deviceId") or payload.get("device_id")
        return str(value or "").strip() or self.default_device_id

    @service_operation("get GPIO status")
    async def status(self, payload: dict[str, Any] | None = None) -> ServiceResult:
        device_id = self.device_id(payload)
        result = await self.gateway.status(device_id)
        return {
            "success": True,
            "data": {
                "pins": result.data.get("pins", []),
                "groups": [group.to_dict() for group in self.groups.list_groups(device_id)],
                "rules": [rule.to_dict() for rule in self.rules.list(device_id)],
                "online": bool(result.data.get("online")),
            },
        }

    @service_operation("get pin info")
    async def pin_info(self, pin: Any, payload: dict[str, Any] | None = None) -> ServiceResult:
        pin_number = _parse_pin(pin)
        device_id = self.device_id(payload)
        snapshot = self.cache.get(device_id, pin_number)
        capability = capabilities_of(pin_number)
        return {
            "success": True,
            "data": {
                "pin": pin_number,
                "config": snapshot.config.to_dict(),
                "capabilities": capability.flags(),
                "note": capability.note,
                "currentValue": snapshot.value,
                "history": snapshot.recent(self.history_preview),
            },
        }

    @service_operation("configure pin")
    async def set_mode(self, payload: dict[str, Any]) -> ServiceResult:
        request = PinModeRequest.model_validate(payload or {})
        device_id = request.device_id or self.default_device_id
        result = await self.gateway.set_mode(
            device_id,
            request.pin,
            request.mode.value,
            request.pull.value if request.pull is not None else None,
        )
        return result.to_dict()

    @service_operation("write pin")
    async def write(self, payload: dict[str, Any]) -> ServiceResult:
        request = PinWriteRequest.model_validate(payload or {})
        device_id = request.device_id or self.default_device_id
        result = await self.gateway.write(
            device_id,
            request.pin,
            request.value,
            request.type.value,
            duration_ms=request.duration or None,
        )
        return result.to_dict()

    @service_operation("read pin")
    async def read(self, pin: Any, payload: dict[str, Any] | None = None) -> ServiceResult:
        data = dict(payload or {})
        data["pin"] = pin
        request = PinReadRequest.model_validate(data)
        device_id = request.device_id or self.default_device_id
        result = await self.gateway.read(device_id, request.pin, request.type)
        return result.to_dict()

    @service_operation("create group")
    async def create_group(self, payload: dict[str, Any]) -> ServiceResult:
        request = GroupCreateRequest.model_validate(payload or {})
        device_id = request.device_id or self.default_device_id
        group = self.groups.create_group(device_id, request.name, request.pins)
        return {
            "success": True,
            "message": f'Group "{group.name}" created',
            "data": group.to_dict(),
        }

    @service_operation("list groups")
    async def list_groups(self, payload: dict[str, Any] | None = None) -> ServiceResult:
        device_id = self.device_id(payload)
        return {"success": True, "data": [group.to_dict() for group in self.groups.list_groups(device_id)]}

    @service_operation("write to group")
    async def write_group(self, name: str, payload: dict[str, Any]) -> ServiceResult:
        request = GroupWriteRequest.model_validate(payload or {})
        device_id = request.device_id or self.default_device_id
        results = await self.groups.write_group(device_id, name, request.values, kind=request.type.value)
        return {
            "success": True,
            "message": f'Group "{name}" updated',
            "data": [item.to_dict() for item in results],
        }

    @service_operation("list rules")
    async def list_rules(self, payload: dict[str, Any] | None = None) -> ServiceResult:
        device_id = self.device_id(payload)
        return {"success": True, "data": [rule.to_dict() for rule in self.rules.list(device_id)]}

    @service_operation("create rule")
    async def create_rule(self, payload: dict[str, Any]) -> ServiceResult:
        request = RuleCreateRequest.model_validate(payload or {})
        device_id = request.device_id or self.default_device_id
        rule = self.rules.create(
            device_id,
            name=request.name,
            condition=request.condition,
            action=request.action,
            enabled=request.enabled,
        )
        return {"success": True, "message": f'Rule "{rule.name}" created', "data": rule.to_dict()}

    @service_operation("update rule")
    async def update_rule(
        self,
        rule_id: str,
        updates: dict[str, Any],
        payload: dict[str, Any] | None = None,
    ) -> ServiceResult:
        if not isinstance(updates, dict):
            raise ValidationError("rule update must be a JSON object")
        request = RuleUpdateRequest.model_validate(updates)
        device_id = self.device_id(payload) if payload else self.device_id(updates)
        supplied = request.model_fields_set | set(request.model_extra or {})
        changes = {
            key: value
            for key, value in request.model_dump(exclude={"device_id"}).items()
            if key in supplied
        }
        rule = self.rules.update(device_id, rule_id, changes)
        return {"success": True, "message": "Rule updated", "data": rule.to_dict()}

    @service_operation("delete rule")
    async def delete_rule(self, rule_id: str, payload: dict[str, Any] | None = None) -> ServiceResult:
        device_id = self.device_id(payload)
        self.rules.delete(device_id, rule_id)
        return {"success": True, "message": "Rule deleted"}

    @service_operation("test condition")
    async def test_rule(self, payload: dict[str, Any]) -> ServiceResult:
        request = RuleTestRequest.model_validate(payload or {})
        result = self.rules.test(request.condition, request.values)
        return {
            "success": True,
            "data": {"result": result, "condition": request.condition, "values": request.values},
        }

    @service_operation("calculate")
    async def calculate(self, payload: dict[str, Any]) -> ServiceResult:
        request = CalculateRequest.model_validate(payload or {})
        result = convert(request.value, pin=request.pin, formula=request.formula, evaluator=self.rules.evaluator)
        return {"success": True, "data": result.to_dict()}

    @service_operation("list capabilities")
    async def capabilities(self) -> ServiceResult:
        return {"success": True, "data": [cap.to_dict() for cap in all_capabilities()]}

    async def shutdown(self) -> None:
        await self.gateway.shutdown()


def _parse_pin(value: Any) -> int:
    try:
        pin = int(str(value).strip())
    except (TypeError, ValueError) as e:
        raise ValidationError(f"invalid pin: {value!r}") from e
    if pin < PIN_MIN or pin > PIN_MAX:
        raise ValidationError(f"pin out of range: {pin}")
    return pin
