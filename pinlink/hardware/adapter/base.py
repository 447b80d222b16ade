"""Transport contract used by the command gateway."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from loguru import logger

from pinlink.gpio.errors import CommandTimeoutError, DeviceError, OfflineError
from pinlink.hardware.protocol import CommandEnvelope, CommandReply


class GpioTransport(ABC):
    """Asynchronous, possibly-disconnected command channel to devices.

    Replies are correlated to commands by message id. A reply that arrives
    after its caller stopped waiting has no pending entry and is dropped.
    """

    name: str = "base"
    transport: str = "unknown"

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[CommandReply]] = {}
        self.late_replies = 0

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Whether commands can currently be sent."""

    @abstractmethod
    async def start(self) -> None:
        """Start transport resources."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop transport resources."""

    @abstractmethod
    async def _send(self, envelope: CommandEnvelope) -> None:
        """Put one command on the wire."""

    async def publish_command(
        self,
        device_id: str,
        command: str,
        payload: dict[str, Any] | None = None,
        *,
        expect_reply: bool = True,
        timeout_ms: int = 5000,
    ) -> CommandReply:
        """Send `command` and, if `expect_reply`, wait for the correlated reply."""
        if not self.connected:
            raise OfflineError(f"{self.name} transport not connected")
        envelope = CommandEnvelope(device_id=device_id, command=str(command), payload=dict(payload or {}))
        future: asyncio.Future[CommandReply] | None = None
        if expect_reply:
            future = asyncio.get_running_loop().create_future()
            self._pending[envelope.message_id] = future
        try:
            await self._send(envelope)
        except Exception:
            self._pending.pop(envelope.message_id, None)
            raise
        if future is None:
            return CommandReply(
                message_id=envelope.message_id,
                device_id=device_id,
                success=True,
                message="published",
            )
        try:
            reply = await asyncio.wait_for(future, timeout=max(1, int(timeout_ms)) / 1000)
        except asyncio.TimeoutError as e:
            raise CommandTimeoutError(f"Command timeout after {timeout_ms}ms", command=str(command)) from e
        finally:
            self._pending.pop(envelope.message_id, None)
        if not reply.success:
            raise DeviceError(reply.message or f"{command} failed on device", command=str(command))
        return reply

    def pending_count(self) -> int:
        return len(self._pending)

    def _resolve_reply(self, reply: CommandReply) -> bool:
        """Complete the waiting caller. Returns False when nobody is waiting."""
        future = self._pending.pop(reply.message_id, None) if reply.message_id else None
        if future is None or future.done():
            if reply.message_id:
                self.late_replies += 1
                logger.debug(f"{self.name} dropped uncorrelated reply message_id={reply.message_id}")
            return False
        future.set_result(reply)
        return True

    def _fail_pending(self, error: Exception) -> int:
        failed = 0
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)
                failed += 1
        return failed
