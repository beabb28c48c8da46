"""The background coordinator that owns all tracker state."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from .blocking import BlockingPolicyEngine, RuleBackend
from .config import TrackerSettings
from .detector import ActivityDetector
from .errors import StorageError, ValidationError
from .focus import FocusSessionMachine
from .ledger import TimeLedger
from .models import (
    ActivitySample,
    BlockingState,
    DailyReport,
    Decision,
    FocusSession,
    Preferences,
    RemoteStatus,
    SiteList,
    SyncStatus,
    date_key,
)
from .normalization import host_from_url, normalize_domain
from .notifications import LogNotifier, Notifier
from .remote import RemoteStore, is_stale
from .reporting import DailyReportGenerator
from .scheduler import AsyncioScheduler, Clock, Scheduler, next_midnight
from .state import FocusSessionPayload, StateDocument, parse_state_document
from .store import (
    BLOCKED_SITES,
    BLOCKING_ENABLED,
    DISTRACTING_SITES,
    FOCUS_SESSION,
    LAST_SYNC,
    PREFERENCES_UPDATED_AT,
    PRODUCTIVE_SITES,
    STATE_KEYS,
    KeyValueStore,
)
from .sync import SyncEnvelope, SyncReconciler

logger = logging.getLogger(__name__)

FOCUS_CHECK_TIMER = "focusCheck"
DAILY_REPORT_TIMER = "dailyReport"
SYNC_TIMER = "sync"

_SITE_KEYS = {
    SiteList.BLOCKED: BLOCKED_SITES,
    SiteList.PRODUCTIVE: PRODUCTIVE_SITES,
    SiteList.DISTRACTING: DISTRACTING_SITES,
}


class Coordinator:
    """Single owner of the ledger, blocking policy, focus session and reports.

    Call ``start()`` once the event loop is running and ``shutdown()`` before
    it stops. Commands and timer handlers run one at a time; ``decide()``
    never waits on anything.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        settings: Optional[TrackerSettings] = None,
        remote: Optional[RemoteStore] = None,
        rule_backend: Optional[RuleBackend] = None,
        scheduler: Optional[Scheduler] = None,
        notifier: Optional[Notifier] = None,
        clock: Clock = datetime.now,
    ) -> None:
        self.settings = settings or TrackerSettings()
        self.store = store
        self.clock = clock
        self.notifier = notifier or LogNotifier()
        self.scheduler = scheduler or AsyncioScheduler(clock)
        self.preferences = Preferences()
        self.sync_status = SyncStatus()
        self.ledger = TimeLedger(store)
        self.engine = BlockingPolicyEngine(rule_backend)
        self.focus = FocusSessionMachine(self.engine, store, self.notifier, clock=clock)
        self.reconciler = SyncReconciler(
            remote,
            clock=clock,
            timeout=self.settings.remote_timeout,
            lookback_days=self.settings.sync_lookback_days,
        )
        self.reports = DailyReportGenerator(
            self.ledger,
            lambda: self.preferences,
            store,
            self.notifier,
            publish=self.reconciler.publish_report if remote is not None else None,
            clock=clock,
            retention=self.settings.report_retention,
        )
        self._gate = asyncio.Lock()
        self._contexts: dict[str, ActivityDetector] = {}
        self._report_due: Optional[datetime] = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        async with self._gate:
            await self._load()
            await self.engine.recompute_rules()
            await self.focus.tick()
            self._schedule()
            self._started = True
        logger.info(
            "Coordinator started: %d day(s) tracked, blocking %s",
            len(self.ledger.dates()),
            "on" if self.engine.state.active else "off",
        )

    async def shutdown(self) -> None:
        if not self._started:
            return
        self.scheduler.cancel_all()
        for context_id in list(self._contexts):
            await self.close_context(context_id)
        async with self._gate:
            if not await self.ledger.flush():
                logger.error("Ledger could not be flushed on shutdown")
            await self.reconciler.aclose()
            await self.store.close()
            self._started = False
        logger.info("Coordinator stopped.")

    # -- tracking ----------------------------------------------------------

    async def record_sample(self, sample: ActivitySample) -> float:
        domain = normalize_domain(sample.domain)
        if sample.active_delta < 0:
            raise ValidationError("activity delta must not be negative")
        async with self._gate:
            total = await self.ledger.record(
                date_key(_naive(sample.observed_at)), domain, sample.active_delta
            )
        logger.debug("Recorded %.0fs on %s (%.0fs today)", sample.active_delta, domain, total)
        return total

    async def open_context(
        self,
        context_id: str,
        url: str,
        *,
        title: Optional[str] = None,
    ) -> ActivityDetector:
        """Start tracking a browsing context; a navigation replaces the old one."""
        domain = host_from_url(url)
        if domain is None or not url.lower().startswith(("http://", "https://")):
            raise ValidationError(f"only web pages are tracked, got {url!r}")
        await self.close_context(context_id)
        detector = ActivityDetector(
            domain,
            self.record_sample,
            self.settings,
            clock=self.clock,
            url=url,
            title=title,
        )
        detector.attach(self.scheduler, f"context:{context_id}")
        self._contexts[context_id] = detector
        return detector

    def context(self, context_id: str) -> Optional[ActivityDetector]:
        return self._contexts.get(context_id)

    async def close_context(self, context_id: str) -> Optional[ActivitySample]:
        detector = self._contexts.pop(context_id, None)
        if detector is None:
            return None
        detector.detach(self.scheduler)
        return await detector.teardown()

    # -- blocking ----------------------------------------------------------

    def decide(self, url: str) -> Decision:
        return self.engine.decide(url)

    async def toggle_blocking(self, enabled: bool) -> BlockingState:
        async with self._gate:
            self.engine.set_manual_enabled(enabled)
            await self._write({BLOCKING_ENABLED: enabled})
            await self.engine.recompute_rules()
        return self.engine.state

    async def add_site(self, which: SiteList, domain: str) -> list[str]:
        cleaned = normalize_domain(domain)
        async with self._gate:
            sites = self.preferences.sites(which)
            if cleaned not in sites:
                sites.append(cleaned)
                await self._preferences_changed(which)
            return list(sites)

    async def remove_site(self, which: SiteList, domain: str) -> list[str]:
        cleaned = normalize_domain(domain)
        async with self._gate:
            sites = self.preferences.sites(which)
            if cleaned in sites:
                sites.remove(cleaned)
                await self._preferences_changed(which)
            return list(sites)

    async def set_sites(self, which: SiteList, domains: Iterable[str]) -> list[str]:
        cleaned: list[str] = []
        for domain in domains:
            value = normalize_domain(domain)
            if value not in cleaned:
                cleaned.append(value)
        async with self._gate:
            sites = self.preferences.sites(which)
            if sites != cleaned:
                sites[:] = cleaned
                await self._preferences_changed(which)
            return list(sites)

    # -- focus -------------------------------------------------------------

    async def start_focus(self, duration_minutes: int) -> FocusSession:
        async with self._gate:
            return await self.focus.start(duration_minutes)

    async def stop_focus(self) -> bool:
        async with self._gate:
            return await self.focus.stop()

    # -- reports and sync --------------------------------------------------

    async def generate_report(self, date: Optional[str] = None) -> DailyReport:
        async with self._gate:
            return await self.reports.generate(date)

    async def request_sync(self) -> SyncStatus:
        async with self._gate:
            await self._sync()
        return self.status()

    # -- queries -----------------------------------------------------------

    def today(self) -> dict[str, float]:
        return self.ledger.snapshot(date_key(self.clock()))

    def blocking_state(self) -> BlockingState:
        return self.engine.state

    def focus_status(self) -> dict[str, Any]:
        session = self.focus.session
        return {
            "active": self.focus.active,
            "endTime": session.end_time.isoformat() if session else None,
            "durationMinutes": session.duration_minutes if session else None,
            "remainingSeconds": int(self.focus.remaining().total_seconds()),
        }

    def recent_reports(self, limit: int = 7) -> list[DailyReport]:
        return self.reports.recent(limit)

    async def remote_status(self) -> Optional[RemoteStatus]:
        return await self.reconciler.status()

    def status(self) -> SyncStatus:
        stale = is_stale(self.sync_status.last_sync, self.clock(), self.settings.sync_stale_after)
        return SyncStatus(
            last_sync=self.sync_status.last_sync,
            sync_needed=stale or self.sync_status.last_error is not None,
            last_error=self.sync_status.last_error,
        )

    # -- export / import ---------------------------------------------------

    async def export_state(self) -> StateDocument:
        session = self.focus.session
        return StateDocument(
            time_ledger=self.ledger.to_document(),
            blocked_sites=list(self.preferences.blocked_sites),
            productive_sites=list(self.preferences.productive_sites),
            distracting_sites=list(self.preferences.distracting_sites),
            preferences_updated_at=self.preferences.updated_at,
            blocking_enabled=self.engine.state.manual_enabled,
            focus_session=FocusSessionPayload.model_validate(session.to_dict()) if session else None,
            last_sync=self.sync_status.last_sync,
            daily_reports=self.reports.to_document(),
            export_date=self.clock(),
        )

    async def import_state(self, data: Any) -> StateDocument:
        """Replace local state with a previously exported document."""
        document = data if isinstance(data, StateDocument) else parse_state_document(data)
        try:
            reports = [DailyReport.from_dict(item) for item in document.daily_reports.values()]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"invalid report in state document: {exc}") from exc
        sites = {
            SiteList.BLOCKED: [normalize_domain(site) for site in document.blocked_sites],
            SiteList.PRODUCTIVE: [normalize_domain(site) for site in document.productive_sites],
            SiteList.DISTRACTING: [normalize_domain(site) for site in document.distracting_sites],
        }
        session = document.focus_session.to_session() if document.focus_session else None

        async with self._gate:
            await self.ledger.replace(document.time_ledger)
            self.preferences = Preferences(
                productive_sites=sites[SiteList.PRODUCTIVE],
                distracting_sites=sites[SiteList.DISTRACTING],
                blocked_sites=sites[SiteList.BLOCKED],
                updated_at=_naive(document.preferences_updated_at) or self.clock(),
            )
            self.sync_status = SyncStatus(last_sync=_naive(document.last_sync))
            await self.reports.replace(reports)
            self.engine.set_blocked_domains(self.preferences.blocked_sites)
            self.engine.set_manual_enabled(document.blocking_enabled)
            self.focus.restore(session)
            await self._write(
                {
                    **self._preferences_document(),
                    BLOCKING_ENABLED: document.blocking_enabled,
                    FOCUS_SESSION: session.to_dict() if session and session.active else None,
                    LAST_SYNC: _iso(self.sync_status.last_sync),
                }
            )
            await self.engine.recompute_rules()
            await self.focus.tick()
        logger.info("Imported state with %d day(s) of activity", len(self.ledger.dates()))
        return document

    # -- internals ---------------------------------------------------------

    async def _load(self) -> None:
        try:
            values = await self.store.get_many(STATE_KEYS)
            await self.ledger.load()
            await self.reports.load()
        except StorageError as exc:
            logger.warning("Could not read stored state, starting from defaults: %s", exc)
            values = {}
        defaults = Preferences()
        self.preferences = Preferences(
            productive_sites=list(values.get(PRODUCTIVE_SITES, defaults.productive_sites)),
            distracting_sites=list(values.get(DISTRACTING_SITES, defaults.distracting_sites)),
            blocked_sites=list(values.get(BLOCKED_SITES, defaults.blocked_sites)),
            updated_at=_parse(values.get(PREFERENCES_UPDATED_AT)),
        )
        self.sync_status = SyncStatus(last_sync=_parse(values.get(LAST_SYNC)))
        self.engine.set_blocked_domains(self.preferences.blocked_sites)
        self.engine.set_manual_enabled(bool(values.get(BLOCKING_ENABLED, False)))
        session_data = values.get(FOCUS_SESSION)
        session = None
        if session_data:
            try:
                session = FocusSession.from_dict(session_data)
            except (KeyError, TypeError, ValueError):
                logger.warning("Discarding unreadable stored focus session")
        self.focus.restore(session)

    def _schedule(self) -> None:
        self.scheduler.every(
            FOCUS_CHECK_TIMER, self.settings.focus_check_interval, self._on_focus_check
        )
        self._arm_daily_report(next_midnight(self.clock()))
        if self.reconciler.configured and self.settings.sync_interval:
            self.scheduler.every(SYNC_TIMER, self.settings.sync_interval, self._on_sync_timer)

    def _arm_daily_report(self, due: datetime) -> None:
        self._report_due = due
        self.scheduler.at(DAILY_REPORT_TIMER, due, self._on_daily_report)

    async def _on_focus_check(self) -> None:
        async with self._gate:
            await self.focus.tick()
            if self.engine.pending:
                await self.engine.recompute_rules()

    async def _on_daily_report(self) -> None:
        # Report on the day that ended at the scheduled midnight, even if the
        # timer fires early or late.
        due = self._report_due or next_midnight(self.clock())
        try:
            async with self._gate:
                await self.reports.generate(date_key(due - timedelta(days=1)))
        finally:
            self._arm_daily_report(max(due + timedelta(days=1), next_midnight(self.clock())))

    async def _on_sync_timer(self) -> None:
        async with self._gate:
            await self._sync()

    async def _sync(self) -> None:
        pending_reports = self.reports.unpublished()
        envelope = SyncEnvelope(
            ledger=self.ledger.to_document(),
            preferences=self.preferences.copy(),
            client_timestamp=self.clock(),
            reports=pending_reports,
        )
        result = await self.reconciler.sync(envelope)
        if not result.ok or result.merge is None:
            self.sync_status.sync_needed = True
            self.sync_status.last_error = result.error
            return

        merge = result.merge
        changed = await self.ledger.merge_max(merge.ledger)
        if merge.preferences_changed:
            self.preferences = merge.preferences
            self.engine.set_blocked_domains(self.preferences.blocked_sites)
            await self._write(self._preferences_document())
            await self.engine.recompute_rules()
        self.reports.mark_published(report.date for report in pending_reports)
        await self.reports.refresh(changed)
        self.sync_status = SyncStatus(last_sync=result.synced_at, sync_needed=False)
        await self._write({LAST_SYNC: _iso(result.synced_at)})

    async def _preferences_changed(self, which: SiteList) -> None:
        self.preferences.updated_at = self.clock()
        await self._write(
            {
                _SITE_KEYS[which]: list(self.preferences.sites(which)),
                PREFERENCES_UPDATED_AT: _iso(self.preferences.updated_at),
            }
        )
        if which is SiteList.BLOCKED:
            self.engine.set_blocked_domains(self.preferences.blocked_sites)
            await self.engine.recompute_rules()

    def _preferences_document(self) -> dict[str, Any]:
        return {
            BLOCKED_SITES: list(self.preferences.blocked_sites),
            PRODUCTIVE_SITES: list(self.preferences.productive_sites),
            DISTRACTING_SITES: list(self.preferences.distracting_sites),
            PREFERENCES_UPDATED_AT: _iso(self.preferences.updated_at),
        }

    async def _write(self, values: dict[str, Any]) -> None:
        try:
            await self.store.set_many(values)
        except StorageError as exc:
            logger.warning("Could not persist %s: %s", ", ".join(sorted(values)), exc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value
