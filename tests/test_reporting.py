from __future__ import annotations

import pytest

from focus_tracker.errors import RemoteUnavailable
from focus_tracker.ledger import TimeLedger
from focus_tracker.models import Category, DailyReport, Preferences
from focus_tracker.reporting import (
    DailyReportGenerator,
    build_report,
    format_duration,
    format_short_duration,
    productivity_score,
)
from focus_tracker.store import DAILY_REPORTS


def test_report_totals_and_score():
    report = build_report(
        "2024-03-04", {"github.com": 600, "youtube.com": 300}, Preferences()
    )

    assert report.total_time == 900
    assert report.productive_time == 600
    assert report.distracting_time == 300
    assert report.productivity_score == 67
    assert [site.domain for site in report.top_sites] == ["github.com", "youtube.com"]
    assert report.top_sites[1].category is Category.DISTRACTING


def test_empty_day_scores_zero():
    assert build_report("2024-03-04", {}, Preferences()).productivity_score == 0


def test_score_rounds_half_up():
    assert productivity_score(1, 8) == 13
    assert productivity_score(1, 200) == 1


def test_duration_formatting():
    assert format_duration(3725) == "01:02:05"
    assert format_short_duration(3725) == "1h 2m"
    assert format_short_duration(59) == "0m"


def test_report_document_round_trip():
    report = build_report("2024-03-04", {"github.com": 600}, Preferences())

    assert DailyReport.from_dict(report.to_dict()) == report


class TestGenerator:
    def setup_method(self):
        self.published = []
        self.fail_publish = False

    async def publish(self, report):
        if self.fail_publish:
            raise RemoteUnavailable("offline")
        self.published.append(report.date)

    def make(self, store, notifier, clock, **kwargs):
        self.ledger = TimeLedger(store)
        return DailyReportGenerator(
            self.ledger,
            Preferences,
            store,
            notifier,
            publish=self.publish,
            clock=clock,
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_defaults_to_yesterday_and_notifies(self, store, notifier, clock):
        generator = self.make(store, notifier, clock)
        await self.ledger.record("2024-03-04", "github.com", 5400)
        await self.ledger.record("2024-03-04", "youtube.com", 1800)

        report = await generator.generate()

        assert report.date == "2024-03-04"
        assert report.productivity_score == 75
        assert self.published == ["2024-03-04"]
        last = notifier.recent()[-1]
        assert last.title == "Daily Productivity Report"
        assert last.message == "Yesterday: 2h 0m total, 75% productive"

    @pytest.mark.asyncio
    async def test_regenerating_a_date_overwrites(self, store, notifier, clock):
        generator = self.make(store, notifier, clock)
        await self.ledger.record("2024-03-04", "github.com", 60)
        await generator.generate("2024-03-04")
        await self.ledger.record("2024-03-04", "github.com", 60)
        await generator.generate("2024-03-04")

        assert len(generator.all()) == 1
        assert generator.get("2024-03-04").total_time == 120
        stored = await store.get(DAILY_REPORTS)
        assert list(stored) == ["2024-03-04"]

    @pytest.mark.asyncio
    async def test_retention_drops_oldest_reports(self, store, notifier, clock):
        generator = self.make(store, notifier, clock, retention=2)
        for day in ("2024-03-01", "2024-03-02", "2024-03-03"):
            await generator.generate(day, notify=False)

        assert [report.date for report in generator.all()] == ["2024-03-02", "2024-03-03"]

    @pytest.mark.asyncio
    async def test_failed_upload_is_kept_for_the_next_sync(self, store, notifier, clock):
        generator = self.make(store, notifier, clock)
        self.fail_publish = True

        await generator.generate("2024-03-04")

        assert [report.date for report in generator.unpublished()] == ["2024-03-04"]
        generator.mark_published(["2024-03-04"])
        assert generator.unpublished() == []

    @pytest.mark.asyncio
    async def test_refresh_only_rebuilds_stored_reports(self, store, notifier, clock):
        generator = self.make(store, notifier, clock)
        await generator.generate("2024-03-04", notify=False)
        await self.ledger.record("2024-03-04", "github.com", 300)

        refreshed = await generator.refresh(["2024-03-04", "2024-03-01"])

        assert [report.date for report in refreshed] == ["2024-03-04"]
        assert generator.get("2024-03-04").total_time == 300
        assert generator.get("2024-03-01") is None
