from __future__ import annotations

import asyncio

from .errors import TaskCancelledError


class CancellationScope:
    """Cooperative cancellation signal owned by one task.

    The orchestrator consults it between steps and before retry waits; workers
    receive it explicitly and may poll it. It never interrupts a running step.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "Cancellation requested") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskCancelledError(self._reason or "Cancellation requested")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, raising early if cancellation arrives."""
        self.raise_if_cancelled()
        if delay <= 0:
            await asyncio.sleep(0)
            self.raise_if_cancelled()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()


__all__ = ["CancellationScope"]
