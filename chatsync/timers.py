"""One-shot asyncio timers.

Callbacks are coroutines run on the event loop that armed them. Arming a
timer always cancels the pending run first, so a callback never overlaps
a rearmed copy of itself.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Timer:
    def __init__(self, delay_ms: int, callback: Callable[[], Awaitable[None]], name: str = "timer"):
        self.delay_ms = delay_ms
        self.name = name
        self._callback = callback
        self._task: Optional[asyncio.Task] = None

    @property
    def armed(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def _run(self) -> None:
        await asyncio.sleep(self.delay_ms / 1000)
        # fired: from here on cancel() must not interrupt the callback
        self._task = None
        try:
            await self._callback()
        except Exception:
            logger.exception("%s callback failed", self.name)


class Debouncer(Generic[T]):
    """Delivers only the last value pushed within a quiet window."""

    def __init__(self, delay_ms: int, handler: Callable[[T], Awaitable[None]], name: str = "debounce"):
        self._handler = handler
        self._pending: Optional[T] = None
        self._timer = Timer(delay_ms, self._fire, name=name)

    @property
    def pending(self) -> bool:
        return self._timer.armed

    def push(self, value: T) -> None:
        self._pending = value
        self._timer.start()

    def cancel(self) -> None:
        self._timer.cancel()
        self._pending = None

    async def _fire(self) -> None:
        value, self._pending = self._pending, None
        await self._handler(value)
