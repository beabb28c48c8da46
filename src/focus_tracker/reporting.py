"""Daily productivity reports and console summaries."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, Mapping, Optional

from .errors import FocusTrackerError, StorageError
from .ledger import TimeLedger
from .models import Category, DailyReport, Preferences, TopSite, date_key
from .normalization import classify_domain
from .notifications import Notifier
from .scheduler import Clock
from .store import DAILY_REPORTS, KeyValueStore

logger = logging.getLogger(__name__)

TOP_SITES_LIMIT = 10

PreferencesProvider = Callable[[], Preferences]
ReportPublisher = Callable[[DailyReport], Awaitable[None]]


def productivity_score(productive_time: float, total_time: float) -> int:
    """Percentage of productive time, rounded half up; 0 for an empty day."""
    if total_time <= 0:
        return 0
    return int(math.floor(100 * productive_time / total_time + 0.5))


def build_report(
    date: str,
    site_data: Mapping[str, float],
    preferences: Preferences,
    *,
    generated_at: Optional[datetime] = None,
) -> DailyReport:
    total = productive = distracting = 0.0
    categories: dict[str, Category] = {}
    for domain, seconds in site_data.items():
        category = classify_domain(
            domain, preferences.productive_sites, preferences.distracting_sites
        )
        categories[domain] = category
        total += seconds
        if category is Category.PRODUCTIVE:
            productive += seconds
        elif category is Category.DISTRACTING:
            distracting += seconds

    top = sorted(site_data.items(), key=lambda item: item[1], reverse=True)[:TOP_SITES_LIMIT]
    return DailyReport(
        date=date,
        total_time=_tidy(total),
        productive_time=_tidy(productive),
        distracting_time=_tidy(distracting),
        productivity_score=productivity_score(productive, total),
        site_data=dict(site_data),
        top_sites=[TopSite(domain, seconds, categories[domain]) for domain, seconds in top],
        generated_at=generated_at,
    )


class DailyReportGenerator:
    """Builds, stores and forwards one report per calendar day.

    Reports are stored by date, so generating the same day twice replaces the
    earlier report instead of adding a second one.
    """

    def __init__(
        self,
        ledger: TimeLedger,
        preferences: PreferencesProvider,
        store: KeyValueStore,
        notifier: Notifier,
        *,
        publish: Optional[ReportPublisher] = None,
        clock: Clock = datetime.now,
        retention: int = 30,
    ) -> None:
        self._ledger = ledger
        self._preferences = preferences
        self._store = store
        self._notifier = notifier
        self._publish = publish
        self._clock = clock
        self._retention = retention
        self._reports: dict[str, DailyReport] = {}
        self._unpublished: set[str] = set()

    async def load(self) -> None:
        raw = await self._store.get(DAILY_REPORTS, {}) or {}
        self._reports = {}
        for day, data in raw.items():
            try:
                self._reports[day] = DailyReport.from_dict(data)
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping unreadable stored report for %s", day)

    async def generate(self, date: Optional[str] = None, *, notify: bool = True) -> DailyReport:
        """Report on ``date`` (default: yesterday) and store it."""
        target = date or date_key(self._clock() - timedelta(days=1))
        report = build_report(
            target,
            self._ledger.snapshot(target),
            self._preferences(),
            generated_at=self._clock(),
        )
        await self._save(report)
        logger.info(
            "Report for %s: %s total, %d%% productive",
            target,
            format_duration(report.total_time),
            report.productivity_score,
        )
        if notify:
            self._notifier.notify(
                "Daily Productivity Report",
                f"Yesterday: {format_short_duration(report.total_time)} total, "
                f"{report.productivity_score}% productive",
            )
        await self._forward(report)
        return report

    async def refresh(self, dates: Iterable[str]) -> list[DailyReport]:
        """Rebuild already stored reports whose ledger slice has changed."""
        refreshed = []
        for day in dates:
            if day in self._reports:
                refreshed.append(await self.generate(day, notify=False))
        return refreshed

    def get(self, date: str) -> Optional[DailyReport]:
        return self._reports.get(date)

    def recent(self, limit: int = 7) -> list[DailyReport]:
        ordered = sorted(self._reports.values(), key=lambda report: report.date, reverse=True)
        return ordered[: max(limit, 0)]

    def all(self) -> list[DailyReport]:
        return sorted(self._reports.values(), key=lambda report: report.date)

    def unpublished(self) -> list[DailyReport]:
        """Stored reports the remote store has not accepted yet."""
        return [self._reports[day] for day in sorted(self._unpublished) if day in self._reports]

    def mark_published(self, dates: Iterable[str]) -> None:
        self._unpublished.difference_update(dates)

    def to_document(self) -> dict[str, dict]:
        return {day: report.to_dict() for day, report in sorted(self._reports.items())}

    async def replace(self, reports: Iterable[DailyReport]) -> None:
        self._reports = {report.date: report for report in reports}
        self._unpublished = set(self._reports)
        self._trim()
        await self._write()

    async def _save(self, report: DailyReport) -> None:
        self._reports[report.date] = report
        self._trim()
        await self._write()

    def _trim(self) -> None:
        excess = len(self._reports) - self._retention
        for day in sorted(self._reports)[: max(excess, 0)]:
            del self._reports[day]

    async def _write(self) -> None:
        try:
            await self._store.set(DAILY_REPORTS, self.to_document())
        except StorageError as exc:
            logger.warning("Could not persist daily reports: %s", exc)

    async def _forward(self, report: DailyReport) -> None:
        if self._publish is None:
            self._unpublished.add(report.date)
            return
        try:
            await self._publish(report)
        except FocusTrackerError as exc:
            self._unpublished.add(report.date)
            logger.warning("Report for %s kept locally; upload failed: %s", report.date, exc)
        else:
            self._unpublished.discard(report.date)


class SummaryPrinter:
    """Render human-readable summaries in the console."""

    def __init__(self, ledger: TimeLedger, preferences: Preferences) -> None:
        self.ledger = ledger
        self.preferences = preferences

    def print_daily_summary(self, day: datetime) -> None:
        key = date_key(day)
        site_data = self.ledger.snapshot(key)
        if not site_data:
            print("No activity recorded for the selected day.")
            return

        report = build_report(key, site_data, self.preferences)
        print(f"Summary for {key}")
        print("-" * 40)
        print(f"Total time:       {format_duration(report.total_time)}")
        print(f"Productive time:  {format_duration(report.productive_time)}")
        print(f"Distracting time: {format_duration(report.distracting_time)}")
        print(f"Productivity:     {report.productivity_score}%")
        print()
        print("Top sites:")
        for site in report.top_sites:
            print(f"  {site.domain:<30} {format_duration(site.time_spent)}  {site.category.value}")

    def print_report(self, report: DailyReport) -> None:
        print(
            f"{report.date}: {format_short_duration(report.total_time)} total, "
            f"{format_short_duration(report.productive_time)} productive, "
            f"{format_short_duration(report.distracting_time)} distracting, "
            f"score {report.productivity_score}%"
        )


def format_duration(seconds: float) -> str:
    total_seconds = int(round(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def format_short_duration(seconds: float) -> str:
    hours, remainder = divmod(int(seconds), 3600)
    minutes = remainder // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def _tidy(value: float) -> float:
    return int(value) if float(value).is_integer() else value
