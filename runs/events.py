"""Bounded channel carrying pipeline log/progress events to the run store.

The pipeline awaits ``log()`` / ``progress()``; a separate sink task runs
``drain()`` and persists each event. When the queue is full, producers wait,
so a slow store throttles the pipeline instead of growing memory.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

log = structlog.get_logger(__name__)

DEFAULT_CAPACITY = 256


@dataclass
class RunEvent:
    kind: str                      # "log" or "progress"
    data: Dict[str, Any] = field(default_factory=dict)


_CLOSED = RunEvent(kind="closed")


class RunEventChannel:
    """Single-consumer event queue for one run."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._queue: "asyncio.Queue[RunEvent]" = asyncio.Queue(maxsize=capacity)
        self._closed = False

    async def log(self, msg: str, level: str = "info", **extra: Any) -> None:
        await self._put(RunEvent("log", {"level": level, "msg": msg, **extra}))

    async def progress(self, progress: Dict[str, Any]) -> None:
        await self._put(RunEvent("progress", dict(progress)))

    async def _put(self, event: RunEvent) -> None:
        if self._closed:
            return
        await self._queue.put(event)

    async def close(self) -> None:
        """Signal the consumer that no more events follow."""
        if not self._closed:
            self._closed = True
            await self._queue.put(_CLOSED)

    async def drain(
        self,
        on_log: Callable[[Dict[str, Any]], Awaitable[None]],
        on_progress: Callable[[Dict[str, Any]], Awaitable[None]],
        run_id: Optional[str] = None,
    ) -> int:
        """Consume events until close(); returns the number handled.

        A failing handler is logged to the process log and the event dropped;
        the producer is never affected.
        """
        handled = 0
        while True:
            event = await self._queue.get()
            if event is _CLOSED:
                return handled
            handler = on_log if event.kind == "log" else on_progress
            try:
                await handler(event.data)
                handled += 1
            except Exception:
                log.exception("run event sink failed", run_id=run_id, kind=event.kind)
