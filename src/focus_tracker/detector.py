"""Per-context activity detection and time sampling."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from .config import ElapsedPolicy, TrackerSettings
from .models import ActivitySample
from .scheduler import Clock, Scheduler

logger = logging.getLogger(__name__)

SampleSink = Callable[[ActivitySample], Awaitable[None]]

INPUT_EVENTS = frozenset({"mousemove", "keypress", "scroll", "click", "focus"})


@dataclass(slots=True)
class DetectorState:
    last_activity_at: datetime
    last_emit_at: datetime
    is_active: bool = True
    visible: bool = True
    closed: bool = False


class ActivityDetector:
    """Turns input and visibility signals of one browsing context into samples.

    The idle check and the emit run on separate timers; every sample goes to
    ``sink``. A sink failure drops that sample only, the next emit carries on.
    """

    def __init__(
        self,
        domain: str,
        sink: SampleSink,
        settings: Optional[TrackerSettings] = None,
        *,
        clock: Clock = datetime.now,
        url: Optional[str] = None,
        title: Optional[str] = None,
    ) -> None:
        self.domain = domain
        self.url = url
        self.title = title
        self.settings = settings or TrackerSettings()
        self._sink = sink
        self._clock = clock
        now = clock()
        self._state = DetectorState(last_activity_at=now, last_emit_at=now)
        self._timer_names: tuple[str, ...] = ()

    @property
    def is_active(self) -> bool:
        return self._state.is_active

    @property
    def closed(self) -> bool:
        return self._state.closed

    def handle_event(self, kind: str) -> None:
        if kind in INPUT_EVENTS:
            self._state.last_activity_at = self._clock()
            self._state.is_active = True
        elif kind == "blur":
            self._state.is_active = False
        elif kind == "visibilitychange:hidden":
            self._state.visible = False
        elif kind == "visibilitychange:visible":
            self._state.visible = True
        else:
            logger.debug("Ignoring unknown event %r for %s", kind, self.domain)

    def check_idle(self) -> bool:
        """Mark the context idle once input has been quiet for too long."""
        idle_for = self._clock() - self._state.last_activity_at
        if idle_for > self.settings.idle_threshold:
            self._state.is_active = False
        return not self._state.is_active

    async def emit(self) -> Optional[ActivitySample]:
        if self._state.closed:
            return None
        now = self._clock()
        delta = self._credited(now)
        self._state.last_emit_at = now
        if not (self._state.is_active and self._state.visible):
            return None
        return await self._send(now, delta)

    async def teardown(self) -> Optional[ActivitySample]:
        """Emit the final sample (whatever the activity state) and close."""
        if self._state.closed:
            return None
        now = self._clock()
        delta = self._credited(now)
        self._state.last_emit_at = now
        self._state.closed = True
        return await self._send(now, delta)

    def attach(self, scheduler: Scheduler, prefix: str) -> None:
        idle_name = f"{prefix}:idleCheck"
        emit_name = f"{prefix}:emit"
        scheduler.every(idle_name, self.settings.idle_check_interval, self._idle_tick)
        scheduler.every(emit_name, self.settings.emit_interval, self._emit_tick)
        self._timer_names = (idle_name, emit_name)

    def detach(self, scheduler: Scheduler) -> None:
        for name in self._timer_names:
            scheduler.cancel(name)
        self._timer_names = ()

    async def _idle_tick(self) -> None:
        self.check_idle()

    async def _emit_tick(self) -> None:
        await self.emit()

    def _credited(self, now: datetime) -> float:
        if self.settings.elapsed_policy is ElapsedPolicy.MEASURED:
            elapsed = now - self._state.last_emit_at
            elapsed = min(max(elapsed, timedelta(0)), self.settings.idle_threshold)
            return elapsed.total_seconds()
        return self.settings.emit_interval.total_seconds()

    async def _send(self, now: datetime, delta: float) -> Optional[ActivitySample]:
        sample = ActivitySample(
            domain=self.domain,
            active_delta=delta,
            observed_at=now,
            url=self.url,
            title=self.title,
        )
        try:
            await self._sink(sample)
        except Exception:
            logger.warning(
                "Dropping %.0fs sample for %s; delivery failed", delta, self.domain, exc_info=True
            )
            return None
        return sample
