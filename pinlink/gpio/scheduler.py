"""Cancellable delayed tasks keyed by (device_id, pin)."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from loguru import logger

from pinlink.utils.helpers import now_ms

PinKey = tuple[str, int]


@dataclass(slots=True)
class ScheduledReset:
    """Handle for one pending delayed action."""

    key: PinKey
    delay_ms: int
    created_at_ms: int = field(default_factory=now_ms)
    task: asyncio.Task | None = None

    @property
    def due_at_ms(self) -> int:
        return self.created_at_ms + self.delay_ms

    @property
    def pending(self) -> bool:
        return self.task is not None and not self.task.done()

    def cancel(self) -> bool:
        if not self.pending:
            return False
        self.task.cancel()
        return True


class ResetScheduler:
    """Runs at most one delayed action per pin.

    Scheduling a new action for a pin, or calling `cancel`, drops the pending
    one. Action failures are logged and never reach the caller that
    scheduled them.
    """

    def __init__(self) -> None:
        self._tasks: dict[PinKey, ScheduledReset] = {}

    def schedule(
        self,
        device_id: str,
        pin: int,
        delay_ms: int,
        action: Callable[[], Awaitable[object]],
    ) -> ScheduledReset:
        key = (device_id, int(pin))
        self.cancel(device_id, pin)
        handle = ScheduledReset(key=key, delay_ms=max(0, int(delay_ms)))
        handle.task = asyncio.get_running_loop().create_task(self._run(handle, action))
        self._tasks[key] = handle
        return handle

    def cancel(self, device_id: str, pin: int) -> bool:
        handle = self._tasks.pop((device_id, int(pin)), None)
        if handle is None:
            return False
        cancelled = handle.cancel()
        if cancelled:
            logger.debug(f"cancelled pending reset device={device_id} pin={pin}")
        return cancelled

    def get(self, device_id: str, pin: int) -> ScheduledReset | None:
        handle = self._tasks.get((device_id, int(pin)))
        return handle if handle is not None and handle.pending else None

    def pending_count(self) -> int:
        return sum(1 for handle in self._tasks.values() if handle.pending)

    async def cancel_all(self) -> None:
        handles = list(self._tasks.values())
        self._tasks.clear()
        for handle in handles:
            handle.cancel()
        tasks = [h.task for h in handles if h.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, handle: ScheduledReset, action: Callable[[], Awaitable[object]]) -> None:
        await asyncio.sleep(handle.delay_ms / 1000)
        # Fired: release the slot so the action's own write cannot cancel it.
        if self._tasks.get(handle.key) is handle:
            self._tasks.pop(handle.key, None)
        try:
            await action()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            device_id, pin = handle.key
            logger.warning(f"Auto-reset failed device={device_id} pin={pin}: {e}")
