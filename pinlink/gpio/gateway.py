"""Command gateway: turns pin operations into correlated device commands.

Every operation checks the transport first. While offline nothing is sent:
writes and mode changes fail with ``offline``, while reads and status fall
back to the state cache. The cache only records changes the device has
acknowledged.
"""

from __future__ import annotations

import asyncio
import itertools
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, AsyncIterator

from loguru import logger

from pinlink.gpio.errors import (
    CommandTimeoutError,
    DeviceError,
    OfflineError,
    ValidationError,
)
from pinlink.gpio.scheduler import PinKey, ResetScheduler
from pinlink.gpio.state import PinMode, PinPull, PinStateCache, WriteKind
from pinlink.hardware.adapter.base import GpioTransport
from pinlink.hardware.protocol import CommandReply, GpioCommand
from pinlink.utils.helpers import iso_now

MAX_ANALOG_VALUE = 255


class CommandStatus(StrEnum):
    OK = "ok"
    OFFLINE = "offline"
    TIMED_OUT = "timed_out"
    DEVICE_ERROR = "device_error"


_STATUS_ERROR_CODES = {
    CommandStatus.OFFLINE: OfflineError.error_code,
    CommandStatus.TIMED_OUT: CommandTimeoutError.error_code,
    CommandStatus.DEVICE_ERROR: DeviceError.error_code,
}


@dataclass(slots=True)
class CommandResult:
    """Outcome of one gateway operation."""

    status: CommandStatus
    device_id: str
    command: str
    message: str = ""
    reply: CommandReply | None = None
    data: dict[str, Any] = field(default_factory=dict)
    cached: bool = False

    @property
    def ok(self) -> bool:
        return self.status == CommandStatus.OK

    @property
    def error_code(self) -> str | None:
        return _STATUS_ERROR_CODES.get(self.status)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.ok}
        if self.message:
            out["message"] = self.message
        if self.data:
            out["data"] = dict(self.data)
        if not self.ok:
            out["error_code"] = self.error_code
        return out


def coerce_write_value(value: Any, kind: str) -> int:
    """Wire value for a write: digital collapses to 0/1, pwm/dac stay 0..255."""
    if kind == WriteKind.DIGITAL:
        return 1 if value else 0
    if isinstance(value, bool):
        return int(value)
    if not isinstance(value, (int, float)):
        raise ValidationError(f"value must be a number for {kind} writes")
    number = int(value)
    if number < 0 or number > MAX_ANALOG_VALUE:
        raise ValidationError(f"value must be within 0..{MAX_ANALOG_VALUE}")
    return number


@dataclass(slots=True)
class _PinSlot:
    """Per-pin lock plus the generation of the last acknowledged write.

    A slot lives only while someone holds or waits on it, or while an
    auto-reset is pending for the pin.
    """

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0
    generation: int = 0


class CommandGateway:
    """Correlated request/response front end over a `GpioTransport`."""

    def __init__(
        self,
        transport: GpioTransport,
        cache: PinStateCache,
        *,
        scheduler: ResetScheduler | None = None,
        command_timeout_ms: int = 5000,
        reset_timeout_ms: int = 5000,
    ) -> None:
        self.transport = transport
        self.cache = cache
        self.scheduler = scheduler or ResetScheduler()
        self.command_timeout_ms = max(1, int(command_timeout_ms))
        self.reset_timeout_ms = max(1, int(reset_timeout_ms))
        self._slots: dict[PinKey, _PinSlot] = {}
        self._generation_seq = itertools.count(1)

    @property
    def online(self) -> bool:
        return bool(self.transport.connected)

    @property
    def active_pin_slots(self) -> int:
        return len(self._slots)

    async def dispatch(
        self,
        device_id: str,
        command: str,
        payload: dict[str, Any] | None = None,
        *,
        expect_reply: bool = True,
        timeout_ms: int | None = None,
    ) -> CommandResult:
        """Send one command and classify the outcome. Never raises for transport failures."""
        command = str(command)
        if not self.transport.connected:
            return CommandResult(CommandStatus.OFFLINE, device_id, command, message="MQTT not connected")
        timeout = self.command_timeout_ms if timeout_ms is None else max(1, int(timeout_ms))
        try:
            reply = await self.transport.publish_command(
                device_id,
                command,
                payload or {},
                expect_reply=expect_reply,
                timeout_ms=timeout,
            )
        except OfflineError as e:
            return CommandResult(CommandStatus.OFFLINE, device_id, command, message=e.message)
        except CommandTimeoutError as e:
            logger.warning(f"{command} to {device_id} timed out after {timeout}ms")
            return CommandResult(CommandStatus.TIMED_OUT, device_id, command, message=e.message)
        except DeviceError as e:
            logger.warning(f"{command} to {device_id} failed: {e.message}")
            return CommandResult(CommandStatus.DEVICE_ERROR, device_id, command, message=e.message)
        except Exception as e:
            logger.exception(f"{command} to {device_id} raised unexpectedly")
            return CommandResult(CommandStatus.DEVICE_ERROR, device_id, command, message=str(e))
        return CommandResult(CommandStatus.OK, device_id, command, reply=reply, message=reply.message)

    async def write(
        self,
        device_id: str,
        pin: int,
        value: Any,
        kind: str = WriteKind.DIGITAL.value,
        *,
        duration_ms: int | None = None,
        timeout_ms: int | None = None,
    ) -> CommandResult:
        """Write a pin value; on ack record it and optionally schedule an auto-reset."""
        kind = self._normalize_kind(kind)
        wire_value = coerce_write_value(value, kind)
        payload: dict[str, Any] = {"pin": pin, "value": wire_value, "type": kind}
        if duration_ms:
            payload["duration"] = int(duration_ms)

        key = (device_id, int(pin))
        async with self._pin_slot(key) as slot:
            result = await self.dispatch(
                device_id,
                GpioCommand.WRITE,
                payload,
                expect_reply=True,
                timeout_ms=timeout_ms,
            )
            if result.ok:
                self.cache.set(device_id, pin, wire_value, kind)
                generation = self._bump_generation(slot)
                # Scheduled before the slot is released so it is not pruned.
                self.scheduler.cancel(device_id, pin)
                if duration_ms:
                    delay = int(duration_ms)
                    self.scheduler.schedule(
                        device_id,
                        pin,
                        delay,
                        lambda: self._auto_reset(device_id, pin, generation, delay),
                    )

        result.data = {"pin": pin, "value": wire_value, "type": kind}
        if duration_ms:
            result.data["duration"] = int(duration_ms)
        if not result.ok:
            return result

        result.message = f"Pin {pin} set to {wire_value}"
        logger.info(f"GPIO pin {pin} written with value {wire_value} ({kind}) device={device_id}")
        return result

    async def read(
        self,
        device_id: str,
        pin: int,
        kind: str = "digital",
        *,
        timeout_ms: int | None = None,
    ) -> CommandResult:
        """Read a pin; offline or timed-out reads answer from the cache."""
        if not self.transport.connected:
            return self._cached_read(device_id, pin, kind, message="MQTT not connected, cached value")
        result = await self.dispatch(
            device_id,
            GpioCommand.READ,
            {"pin": pin, "type": kind},
            expect_reply=True,
            timeout_ms=timeout_ms,
        )
        if result.status in (CommandStatus.OFFLINE, CommandStatus.TIMED_OUT):
            return self._cached_read(device_id, pin, kind, message=result.message)
        if not result.ok:
            return result
        reply = result.reply
        value = reply.value if reply is not None else None
        if value is None:
            value = 0
        self.cache.update_value(device_id, pin, value)
        result.data = {
            "pin": pin,
            "value": value,
            "type": kind,
            "raw": reply.data.get("raw") if reply else None,
            "voltage": reply.data.get("voltage") if reply else None,
            "timestamp": (reply.data.get("timestamp") if reply else None) or iso_now(),
        }
        return result

    async def set_mode(
        self,
        device_id: str,
        pin: int,
        mode: str,
        pull: str | None = None,
        *,
        timeout_ms: int | None = None,
    ) -> CommandResult:
        """Configure a pin's mode; the cached config changes only after the device acks."""
        try:
            mode = PinMode(str(mode)).value
            pull = PinPull(str(pull)).value if pull is not None else None
        except ValueError as e:
            raise ValidationError(str(e)) from e
        payload: dict[str, Any] = {"pin": pin, "mode": mode}
        if pull is not None:
            payload["pull"] = pull
        key = (device_id, int(pin))
        async with self._pin_slot(key):
            result = await self.dispatch(
                device_id,
                GpioCommand.MODE,
                payload,
                expect_reply=True,
                timeout_ms=timeout_ms,
            )
            if result.ok:
                self.cache.set_config(device_id, pin, mode, pull)
        result.data = {"pin": pin, "mode": mode, "pull": pull}
        if result.ok:
            result.message = f"Pin {pin} configured as {mode}"
            logger.info(f"GPIO pin {pin} mode set to {mode} device={device_id}")
        return result

    async def status(self, device_id: str, *, timeout_ms: int | None = None) -> CommandResult:
        """Fetch every pin from the device, or the cached view when that fails."""
        result = await self.dispatch(
            device_id,
            GpioCommand.STATUS,
            {},
            expect_reply=True,
            timeout_ms=timeout_ms,
        )
        if result.ok and result.reply is not None:
            pins = result.reply.pins
            self.cache.bulk_update(device_id, pins)
            result.data = {"pins": pins, "online": True}
            return result
        return CommandResult(
            CommandStatus.OK,
            device_id,
            GpioCommand.STATUS.value,
            message=result.message,
            data={"pins": self.cache.local_pins(device_id), "online": False},
            cached=True,
        )

    async def shutdown(self) -> None:
        await self.scheduler.cancel_all()

    async def _auto_reset(self, device_id: str, pin: int, generation: int, duration_ms: int) -> None:
        key = (device_id, int(pin))
        async with self._pin_slot(key) as slot:
            if slot.generation != generation:
                logger.debug(f"skipping stale auto-reset device={device_id} pin={pin}")
                return
            result = await self.dispatch(
                device_id,
                GpioCommand.WRITE,
                {"pin": pin, "value": 0, "type": WriteKind.DIGITAL.value},
                expect_reply=True,
                timeout_ms=self.reset_timeout_ms,
            )
            if result.ok:
                self.cache.set(device_id, pin, 0, WriteKind.DIGITAL.value)
                self._bump_generation(slot)
        if result.ok:
            logger.info(f"GPIO pin {pin} auto-reset after {duration_ms}ms device={device_id}")
        else:
            logger.warning(f"Auto-reset failed device={device_id} pin={pin}: {result.message}")

    def _cached_read(self, device_id: str, pin: int, kind: str, *, message: str) -> CommandResult:
        return CommandResult(
            CommandStatus.OK,
            device_id,
            GpioCommand.READ.value,
            message=message,
            data={
                "pin": pin,
                "value": self.cache.value(device_id, pin),
                "type": kind,
                "cached": True,
                "timestamp": iso_now(),
            },
            cached=True,
        )

    @asynccontextmanager
    async def _pin_slot(self, key: PinKey) -> AsyncIterator[_PinSlot]:
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots.setdefault(key, _PinSlot())
        slot.users += 1
        try:
            async with slot.lock:
                yield slot
        finally:
            slot.users -= 1
            if slot.users == 0 and self.scheduler.get(*key) is None and self._slots.get(key) is slot:
                del self._slots[key]

    def _bump_generation(self, slot: _PinSlot) -> int:
        slot.generation = next(self._generation_seq)
        return slot.generation

    @staticmethod
    def _normalize_kind(kind: str | None) -> str:
        try:
            return WriteKind(str(kind or WriteKind.DIGITAL.value)).value
        except ValueError as e:
            raise ValidationError(f"type must be one of digital, pwm, dac: {kind!r}") from e
