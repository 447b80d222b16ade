"""In-memory transport used for local simulation and tests."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from pinlink.gpio.errors import OfflineError
from pinlink.hardware.adapter.base import GpioTransport
from pinlink.hardware.protocol import CommandEnvelope, CommandReply, GpioCommand

Responder = Callable[[CommandEnvelope], dict[str, Any] | None]


class MockTransport(GpioTransport):
    """Simulated device bank that answers commands from an in-memory pin map.

    Tests can take the link offline, fail or drop chosen commands, delay
    replies, or install a custom responder.
    """

    name = "mock"
    transport = "in-memory"

    def __init__(
        self,
        *,
        connected: bool = True,
        reply_delay_s: float = 0.0,
        responder: Responder | None = None,
    ) -> None:
        super().__init__()
        self._connected = connected
        self.reply_delay_s = reply_delay_s
        self.responder = responder
        self.sent: list[CommandEnvelope] = []
        self.fail_commands: dict[str, str] = {}
        self.fail_pins: dict[int, str] = {}
        self.drop_commands: set[str] = set()
        self.pin_values: dict[tuple[str, int], Any] = {}
        self.pin_modes: dict[tuple[str, int], str] = {}

    @property
    def connected(self) -> bool:
        return self._connected

    def set_connected(self, connected: bool) -> None:
        self._connected = bool(connected)

    async def start(self) -> None:
        self._connected = True

    async def stop(self) -> None:
        self._connected = False
        self._fail_pending(OfflineError("mock transport stopped"))

    async def _send(self, envelope: CommandEnvelope) -> None:
        self.sent.append(envelope)
        if envelope.command in self.drop_commands:
            return
        reply = self._build_reply(envelope)
        if reply is None:
            return
        reply.setdefault("messageId", envelope.message_id)
        reply.setdefault("deviceId", envelope.device_id)
        loop = asyncio.get_running_loop()
        if self.reply_delay_s > 0:
            loop.call_later(self.reply_delay_s, self.deliver_reply, reply)
        else:
            loop.call_soon(self.deliver_reply, reply)

    def deliver_reply(self, data: dict[str, Any]) -> bool:
        """Feed a raw reply as if it arrived from the device."""
        return self._resolve_reply(CommandReply.from_dict(data))

    def commands(self, command: str | None = None) -> list[CommandEnvelope]:
        if command is None:
            return list(self.sent)
        return [env for env in self.sent if env.command == command]

    def _build_reply(self, envelope: CommandEnvelope) -> dict[str, Any] | None:
        if self.responder is not None:
            return self.responder(envelope)
        if envelope.command in self.fail_commands:
            return {"success": False, "message": self.fail_commands[envelope.command]}
        payload = envelope.payload
        try:
            pin = int(payload.get("pin", -1))
        except (TypeError, ValueError):
            pin = -1
        if pin in self.fail_pins:
            return {"success": False, "message": self.fail_pins[pin]}

        key = (envelope.device_id, pin)
        if envelope.command == GpioCommand.WRITE:
            self.pin_values[key] = payload.get("value")
            return {"success": True, "pin": pin, "value": payload.get("value")}
        if envelope.command == GpioCommand.MODE:
            self.pin_modes[key] = str(payload.get("mode") or "input")
            return {"success": True, "pin": pin, "mode": self.pin_modes[key]}
        if envelope.command == GpioCommand.READ:
            value = self.pin_values.get(key, 0)
            return {"success": True, "pin": pin, "value": value, "raw": value}
        if envelope.command == GpioCommand.STATUS:
            pins = [
                {"pin": p, "value": v, "mode": self.pin_modes.get((dev, p), "input")}
                for (dev, p), v in sorted(self.pin_values.items())
                if dev == envelope.device_id
            ]
            return {"success": True, "pins": pins}
        return {"success": False, "message": f"unknown command {envelope.command}"}
