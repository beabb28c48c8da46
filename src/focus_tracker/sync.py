"""Reconciliation of local state with the remote activity store."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from .errors import RemoteUnavailable
from .models import DailyReport, Preferences, RemoteStatus, date_key
from .remote import LedgerSlice, RemoteStore, merge_slices
from .scheduler import Clock

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncEnvelope:
    """Everything the client sends in one exchange."""

    ledger: dict[str, dict[str, float]]
    preferences: Preferences
    client_timestamp: datetime
    reports: list[DailyReport] = field(default_factory=list)


@dataclass(slots=True)
class MergeResult:
    ledger: dict[str, dict[str, float]]
    preferences: Preferences
    local_changes: list[str]
    preferences_changed: bool
    push_entries: dict[str, dict[str, float]]
    push_preferences: bool


@dataclass(slots=True)
class SyncResult:
    ok: bool
    synced_at: Optional[datetime] = None
    merge: Optional[MergeResult] = None
    error: Optional[str] = None


def merge_preferences(
    local: Preferences, remote: Optional[Preferences]
) -> tuple[Preferences, bool, bool]:
    """Last writer wins on ``updated_at``; returns (winner, local_changed, push)."""
    if remote is None:
        return local.copy(), False, True
    if local.same_lists(remote):
        return local.copy(), False, _newer(local.updated_at, remote.updated_at)
    if _newer(remote.updated_at, local.updated_at):
        return remote.copy(), True, False
    return local.copy(), False, True


def reconcile(
    local: LedgerSlice,
    remote: LedgerSlice,
    local_preferences: Preferences,
    remote_preferences: Optional[Preferences],
) -> MergeResult:
    """Merge both copies cell by cell with ``max``; never sums."""
    merged = merge_slices(local, remote)
    local_changes = sorted(
        day
        for day, sites in merged.items()
        if any(seconds > local.get(day, {}).get(domain, 0) for domain, seconds in sites.items())
    )
    push: dict[str, dict[str, float]] = {}
    for day, sites in merged.items():
        remote_day = remote.get(day, {})
        for domain, seconds in sites.items():
            if seconds > remote_day.get(domain, 0):
                push.setdefault(day, {})[domain] = seconds

    preferences, preferences_changed, push_preferences = merge_preferences(
        local_preferences, remote_preferences
    )
    return MergeResult(
        ledger=merged,
        preferences=preferences,
        local_changes=local_changes,
        preferences_changed=preferences_changed,
        push_entries=push,
        push_preferences=push_preferences,
    )


class SyncReconciler:
    """Runs one pull-merge-push exchange against the remote store.

    The reconciler never touches local state itself; it returns the merged
    result and the coordinator commits it. Any failure (unreachable store,
    timeout, rejected write) yields ``ok=False`` and nothing to commit.
    """

    def __init__(
        self,
        remote: Optional[RemoteStore],
        *,
        clock: Clock = datetime.now,
        timeout: timedelta = timedelta(seconds=10),
        lookback_days: int = 30,
    ) -> None:
        self.remote = remote
        self._clock = clock
        self._timeout = timeout
        self._lookback = timedelta(days=lookback_days)

    @property
    def configured(self) -> bool:
        return self.remote is not None

    async def sync(self, envelope: SyncEnvelope) -> SyncResult:
        if self.remote is None:
            return SyncResult(ok=False, error="no remote store configured")
        try:
            merge = await asyncio.wait_for(
                self._exchange(self.remote, envelope), self._timeout.total_seconds()
            )
        except asyncio.TimeoutError:
            logger.warning("Sync timed out after %ss", self._timeout.total_seconds())
            return SyncResult(ok=False, error="remote store timed out")
        except RemoteUnavailable as exc:
            logger.warning("Sync failed; local data kept: %s", exc)
            return SyncResult(ok=False, error=str(exc))
        return SyncResult(ok=True, synced_at=self._clock(), merge=merge)

    async def status(self) -> Optional[RemoteStatus]:
        if self.remote is None:
            return None
        try:
            return await asyncio.wait_for(self.remote.status(), self._timeout.total_seconds())
        except (asyncio.TimeoutError, RemoteUnavailable) as exc:
            logger.warning("Could not read remote sync status: %s", exc)
            return None

    async def publish_report(self, report: DailyReport) -> None:
        if self.remote is None:
            raise RemoteUnavailable("no remote store configured")
        try:
            await asyncio.wait_for(
                self.remote.upsert_report(report), self._timeout.total_seconds()
            )
        except asyncio.TimeoutError as exc:
            raise RemoteUnavailable("report upload timed out") from exc

    async def aclose(self) -> None:
        if self.remote is not None:
            await self.remote.aclose()

    async def _exchange(self, remote: RemoteStore, envelope: SyncEnvelope) -> MergeResult:
        start, end = self._window(envelope.ledger, envelope.client_timestamp)
        remote_ledger = await remote.fetch_entries(start, end)
        remote_preferences = await remote.fetch_preferences()
        merge = reconcile(
            envelope.ledger,
            remote_ledger,
            envelope.preferences,
            remote_preferences,
        )
        if merge.push_entries:
            await remote.upsert_entries(merge.push_entries)
        if merge.push_preferences:
            await remote.store_preferences(merge.preferences)
        for report in envelope.reports:
            await remote.upsert_report(report)
        await remote.mark_synced(envelope.client_timestamp)
        logger.info(
            "Synced: %d day(s) updated locally, %d day(s) pushed, preferences %s",
            len(merge.local_changes),
            len(merge.push_entries),
            "pulled" if merge.preferences_changed else ("pushed" if merge.push_preferences else "unchanged"),
        )
        return merge

    def _window(self, ledger: LedgerSlice, now: datetime) -> tuple[str, str]:
        start = date_key(now - self._lookback)
        if ledger:
            start = min(start, min(ledger))
        end = max([date_key(now), *ledger]) if ledger else date_key(now)
        return start, end


def _newer(candidate: Optional[datetime], other: Optional[datetime]) -> bool:
    if candidate is None:
        return False
    if other is None:
        return True
    return candidate > other
