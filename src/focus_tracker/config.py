"""Configuration models and helpers for the focus tracker."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional


class ElapsedPolicy(str, enum.Enum):
    """How much time an emitted activity sample is credited with."""

    FIXED = "fixed"
    MEASURED = "measured"


DEFAULT_PRODUCTIVE_SITES = ("github.com", "stackoverflow.com", "docs.google.com")
DEFAULT_DISTRACTING_SITES = ("facebook.com", "twitter.com", "youtube.com", "reddit.com")

MIN_FOCUS_MINUTES = 1
MAX_FOCUS_MINUTES = 180


@dataclass(slots=True)
class TrackerSettings:
    """Runtime configuration for the tracker and its timers."""

    idle_check_interval: timedelta = timedelta(seconds=5)
    idle_threshold: timedelta = timedelta(seconds=30)
    emit_interval: timedelta = timedelta(seconds=10)
    focus_check_interval: timedelta = timedelta(minutes=1)
    sync_interval: Optional[timedelta] = timedelta(minutes=15)
    sync_stale_after: timedelta = timedelta(hours=1)
    remote_timeout: timedelta = timedelta(seconds=10)
    report_retention: int = 30
    sync_lookback_days: int = 30
    elapsed_policy: ElapsedPolicy = ElapsedPolicy.FIXED
    remote_url: Optional[str] = None
    owner: Optional[str] = None

    @classmethod
    def from_options(
        cls,
        idle_seconds: float = 30.0,
        emit_seconds: float = 10.0,
        sync_minutes: float | None = 15.0,
        remote_url: str | None = None,
        owner: str | None = None,
        remote_timeout_seconds: float = 10.0,
        elapsed_policy: str = ElapsedPolicy.FIXED.value,
    ) -> "TrackerSettings":
        sync_interval = (
            timedelta(minutes=sync_minutes) if sync_minutes and sync_minutes > 0 else None
        )
        return cls(
            idle_threshold=timedelta(seconds=idle_seconds),
            emit_interval=timedelta(seconds=emit_seconds),
            idle_check_interval=timedelta(seconds=max(min(emit_seconds / 2, 5.0), 1.0)),
            sync_interval=sync_interval,
            remote_url=remote_url or None,
            owner=owner or None,
            remote_timeout=timedelta(seconds=remote_timeout_seconds),
            elapsed_policy=ElapsedPolicy(elapsed_policy),
        )
