"""Named periodic and one-shot timers on the asyncio event loop."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Protocol

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]
Clock = Callable[[], datetime]


class Scheduler(Protocol):
    def every(self, name: str, interval: timedelta, callback: TimerCallback) -> None: ...

    def at(self, name: str, when: datetime, callback: TimerCallback) -> None: ...

    def cancel(self, name: str) -> None: ...

    def cancel_all(self) -> None: ...


def next_midnight(now: datetime) -> datetime:
    tomorrow = now + timedelta(days=1)
    return tomorrow.replace(hour=0, minute=0, second=0, microsecond=0)


class AsyncioScheduler:
    """Runs timer callbacks as tasks on the running loop.

    Registering a name that is already scheduled replaces the old timer. A
    callback that raises is logged and, for periodic timers, runs again on the
    next interval.
    """

    def __init__(self, clock: Clock = datetime.now) -> None:
        self._clock = clock
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def every(self, name: str, interval: timedelta, callback: TimerCallback) -> None:
        seconds = interval.total_seconds()
        if seconds <= 0:
            raise ValueError(f"timer {name!r} needs a positive interval")
        self._replace(name, self._periodic(name, seconds, callback))

    def at(self, name: str, when: datetime, callback: TimerCallback) -> None:
        self._replace(name, self._one_shot(name, when, callback))

    def cancel(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is not None and not task.done():
            task.cancel()

    def cancel_all(self) -> None:
        for name in list(self._tasks):
            self.cancel(name)

    def _replace(self, name: str, coro: Awaitable[None]) -> None:
        self.cancel(name)
        self._tasks[name] = asyncio.get_running_loop().create_task(coro, name=f"timer:{name}")

    async def _periodic(self, name: str, seconds: float, callback: TimerCallback) -> None:
        while True:
            await asyncio.sleep(seconds)
            await _run_callback(name, callback)

    async def _one_shot(self, name: str, when: datetime, callback: TimerCallback) -> None:
        delay = (when - self._clock()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        current: Optional[asyncio.Task[None]] = asyncio.current_task()
        if self._tasks.get(name) is current:
            # Drop ourselves first so the callback may re-arm the same name.
            del self._tasks[name]
        await _run_callback(name, callback)


async def _run_callback(name: str, callback: TimerCallback) -> None:
    try:
        await callback()
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Timer %s failed", name)
