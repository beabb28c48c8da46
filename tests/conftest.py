"""
Shared fixtures for the focus tracker tests.

Time is driven by ``FakeClock`` and timers by ``ManualScheduler`` so that
idle detection, focus expiry and the midnight report can be stepped through
deterministically.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import pytest

from focus_tracker.blocking import InMemoryRuleBackend
from focus_tracker.config import TrackerSettings
from focus_tracker.coordinator import Coordinator
from focus_tracker.notifications import LogNotifier
from focus_tracker.remote import InMemoryRemoteStore
from focus_tracker.scheduler import TimerCallback
from focus_tracker.store import MemoryKeyValueStore

START = datetime(2024, 3, 5, 9, 0, 0)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@dataclass
class ScheduledTimer:
    callback: TimerCallback
    interval: Optional[timedelta] = None
    when: Optional[datetime] = None


class ManualScheduler:
    """Records timers; tests fire them by name."""

    def __init__(self) -> None:
        self.timers: dict[str, ScheduledTimer] = {}

    def every(self, name: str, interval: timedelta, callback: TimerCallback) -> None:
        self.timers[name] = ScheduledTimer(callback, interval=interval)

    def at(self, name: str, when: datetime, callback: TimerCallback) -> None:
        self.timers[name] = ScheduledTimer(callback, when=when)

    def cancel(self, name: str) -> None:
        self.timers.pop(name, None)

    def cancel_all(self) -> None:
        self.timers.clear()

    async def fire(self, name: str) -> None:
        timer = self.timers[name]
        if timer.when is not None:
            del self.timers[name]
        await timer.callback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def backend() -> InMemoryRuleBackend:
    return InMemoryRuleBackend()


@pytest.fixture
def notifier() -> LogNotifier:
    return LogNotifier()


@pytest.fixture
def remote() -> InMemoryRemoteStore:
    return InMemoryRemoteStore()


@pytest.fixture
def make_coordinator(store, backend, scheduler, notifier, clock):
    """Build a coordinator over in-memory collaborators; not started."""

    def factory(
        *,
        remote: Optional[InMemoryRemoteStore] = None,
        settings: Optional[TrackerSettings] = None,
    ) -> Coordinator:
        return Coordinator(
            store,
            settings=settings or TrackerSettings(),
            remote=remote,
            rule_backend=backend,
            scheduler=scheduler,
            notifier=notifier,
            clock=clock,
        )

    return factory
