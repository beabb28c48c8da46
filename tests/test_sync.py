from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta

import httpx
import pytest

from focus_tracker.errors import RemoteUnavailable
from focus_tracker.models import DailyReport, Preferences
from focus_tracker.remote import HttpRemoteStore, InMemoryRemoteStore, is_stale
from focus_tracker.sync import SyncEnvelope, SyncReconciler, merge_preferences, reconcile

T0 = datetime(2024, 3, 5, 9, 0)


def prefs(blocked, at):
    return Preferences(blocked_sites=list(blocked), updated_at=at)


class TestReconcile:
    def test_cells_merge_by_max_either_way(self):
        local = {"2024-03-05": {"github.com": 120}}
        remote = {"2024-03-05": {"github.com": 200}}

        assert reconcile(local, remote, Preferences(), None).ledger["2024-03-05"]["github.com"] == 200
        assert reconcile(remote, local, Preferences(), None).ledger["2024-03-05"]["github.com"] == 200

    def test_only_cells_ahead_of_remote_are_pushed(self):
        local = {"2024-03-05": {"github.com": 300, "reddit.com": 10}}
        remote = {"2024-03-05": {"github.com": 200, "reddit.com": 50}}

        merge = reconcile(local, remote, Preferences(), None)

        assert merge.push_entries == {"2024-03-05": {"github.com": 300}}
        assert merge.local_changes == ["2024-03-05"]

    def test_newer_remote_preferences_replace_local(self):
        winner, changed, push = merge_preferences(
            prefs(["a.com"], T0), prefs(["b.com"], T0 + timedelta(minutes=1))
        )

        assert winner.blocked_sites == ["b.com"]
        assert changed and not push

    def test_newer_local_preferences_are_pushed(self):
        winner, changed, push = merge_preferences(
            prefs(["a.com"], T0 + timedelta(minutes=1)), prefs(["b.com"], T0)
        )

        assert winner.blocked_sites == ["a.com"]
        assert push and not changed


class TestReconciler:
    def setup_method(self):
        self.remote = InMemoryRemoteStore(
            entries={"2024-03-04": {"github.com": 200}},
        )
        self.reconciler = SyncReconciler(self.remote, clock=lambda: T0)

    def envelope(self, ledger):
        return SyncEnvelope(ledger=ledger, preferences=prefs([], T0), client_timestamp=T0)

    @pytest.mark.asyncio
    async def test_sync_merges_and_pushes(self):
        result = await self.reconciler.sync(self.envelope({"2024-03-05": {"reddit.com": 30}}))

        assert result.ok
        assert result.merge.ledger == {
            "2024-03-04": {"github.com": 200},
            "2024-03-05": {"reddit.com": 30},
        }
        assert self.remote.entries["2024-03-05"] == {"reddit.com": 30}
        assert self.remote.last_sync == T0

    @pytest.mark.asyncio
    async def test_second_sync_has_nothing_to_move(self):
        first = await self.reconciler.sync(self.envelope({"2024-03-05": {"reddit.com": 30}}))
        second = await self.reconciler.sync(self.envelope(first.merge.ledger))

        assert second.merge.ledger == first.merge.ledger
        assert second.merge.local_changes == []
        assert second.merge.push_entries == {}
        assert not second.merge.preferences_changed

    @pytest.mark.asyncio
    async def test_unreachable_remote_is_not_fatal(self):
        self.remote.reachable = False

        result = await self.reconciler.sync(self.envelope({"2024-03-05": {"reddit.com": 30}}))

        assert not result.ok
        assert result.merge is None
        assert "unreachable" in result.error

    @pytest.mark.asyncio
    async def test_slow_remote_times_out(self):
        class SlowRemote(InMemoryRemoteStore):
            async def fetch_entries(self, start, end):
                await asyncio.sleep(1)
                return {}

        reconciler = SyncReconciler(
            SlowRemote(), clock=lambda: T0, timeout=timedelta(milliseconds=10)
        )

        result = await reconciler.sync(self.envelope({}))

        assert not result.ok
        assert result.error == "remote store timed out"

    @pytest.mark.asyncio
    async def test_without_remote_sync_reports_not_configured(self):
        result = await SyncReconciler(None).sync(self.envelope({}))

        assert not result.ok
        assert result.error == "no remote store configured"


def test_staleness_after_one_hour():
    assert is_stale(None, T0)
    assert not is_stale(T0, T0 + timedelta(minutes=59))
    assert is_stale(T0, T0 + timedelta(minutes=61))


class TestHttpRemoteStore:
    def client(self, handler):
        return httpx.AsyncClient(base_url="http://remote.test", transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_fetch_entries_groups_rows_by_day(self):
        def handler(request):
            assert request.url.path == "/api/time/entries"
            assert request.url.params["startDate"] == "2024-03-01"
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "data": [
                        {"date": "2024-03-04", "domain": "github.com", "timeSpent": 120},
                        {"date": "2024-03-04", "domain": "reddit.com", "timeSpent": 30},
                    ],
                },
            )

        store = HttpRemoteStore("http://remote.test", client=self.client(handler))

        entries = await store.fetch_entries("2024-03-01", "2024-03-05")

        assert entries == {"2024-03-04": {"github.com": 120, "reddit.com": 30}}
        await store.aclose()

    @pytest.mark.asyncio
    async def test_server_errors_become_remote_unavailable(self):
        store = HttpRemoteStore(
            "http://remote.test",
            client=self.client(lambda request: httpx.Response(503, json={})),
        )

        with pytest.raises(RemoteUnavailable):
            await store.upsert_entries({"2024-03-04": {"github.com": 1}})
        await store.aclose()

    @pytest.mark.asyncio
    async def test_unsuccessful_payload_becomes_remote_unavailable(self):
        store = HttpRemoteStore(
            "http://remote.test",
            client=self.client(
                lambda request: httpx.Response(200, json={"success": False, "error": "nope"})
            ),
        )

        with pytest.raises(RemoteUnavailable, match="nope"):
            await store.status()
        await store.aclose()


PREFERENCE_KEYS = ("blockedSites", "productiveSites", "distractingSites")


class ActivityBackend:
    """The activity backend's routes, served through ``httpx.MockTransport``.

    Preferences are only readable back when ``serves_preferences`` is set;
    otherwise that route answers 404 like every other unknown path.
    """

    def __init__(self, *, serves_preferences=False):
        self.serves_preferences = serves_preferences
        self.entries = {}
        self.preferences = {}
        self.reports = []
        self.requests = []

    def client(self):
        return httpx.AsyncClient(base_url="http://remote.test", transport=httpx.MockTransport(self))

    def bodies(self, method, path):
        return [body for m, p, body in self.requests if (m, p) == (method, path)]

    def __call__(self, request):
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, path, body))

        if request.method == "GET" and path == "/api/time/entries":
            start, end = request.url.params["startDate"], request.url.params["endDate"]
            data = [
                {"date": day, "domain": domain, "timeSpent": seconds}
                for (day, domain), seconds in self.entries.items()
                if start <= day <= end
            ]
            return httpx.Response(200, json={"success": True, "data": data})
        if request.method == "POST" and path == "/api/sync":
            for day, sites in (body.get("timeData") or {}).items():
                for domain, seconds in sites.items():
                    self.entries[(day, domain)] = max(self.entries.get((day, domain), 0), seconds)
            user = body.get("userId")
            if user and any(key in body for key in PREFERENCE_KEYS):
                stored = self.preferences.setdefault(user, {})
                stored.update({key: body[key] for key in PREFERENCE_KEYS if key in body})
                stored["updatedAt"] = body.get("updatedAt")
            return httpx.Response(200, json={"success": True, "message": "Data synced successfully"})
        if request.method == "POST" and path == "/api/daily-report":
            self.reports.append(body)
            return httpx.Response(201, json={"success": True})
        if request.method == "GET" and path.startswith("/api/sync/status"):
            return httpx.Response(200, json={"success": True, "data": {"lastSync": None, "syncNeeded": True}})
        if (
            self.serves_preferences
            and request.method == "GET"
            and path.startswith("/api/sync/preferences/")
        ):
            user = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"success": True, "data": self.preferences.get(user)})
        return httpx.Response(404, json={"success": False, "error": "Route not found"})


class TestHttpRemoteStoreAgainstBackend:
    def setup_method(self):
        self.backend = ActivityBackend()

    def store(self, owner=None):
        return HttpRemoteStore("http://remote.test", owner=owner, client=self.backend.client())

    @pytest.mark.asyncio
    async def test_upsert_entries_posts_time_data_under_the_owner(self):
        store = self.store(owner="u1")

        await store.upsert_entries({"2024-03-05": {"github.com": 120}})

        assert self.backend.bodies("POST", "/api/sync") == [
            {"timeData": {"2024-03-05": {"github.com": 120}}, "userId": "u1"}
        ]
        await store.aclose()

    @pytest.mark.asyncio
    async def test_empty_upsert_sends_nothing(self):
        store = self.store()

        await store.upsert_entries({})

        assert self.backend.requests == []
        await store.aclose()

    @pytest.mark.asyncio
    async def test_reports_are_posted_with_camel_case_fields(self):
        store = self.store(owner="u1")
        report = DailyReport(
            date="2024-03-04",
            total_time=900,
            productive_time=600,
            distracting_time=300,
            productivity_score=67,
            site_data={"github.com": 600, "youtube.com": 300},
        )

        await store.upsert_report(report)

        (body,) = self.backend.reports
        assert body["date"] == "2024-03-04"
        assert body["productivityScore"] == 67
        assert body["userId"] == "u1"
        await store.aclose()

    @pytest.mark.asyncio
    async def test_preferences_without_owner_still_travel_in_the_sync_body(self):
        store = self.store()

        await store.store_preferences(prefs(["reddit.com"], T0))

        (body,) = self.backend.bodies("POST", "/api/sync")
        assert body["blockedSites"] == ["reddit.com"]
        assert "userId" not in body
        await store.aclose()

    @pytest.mark.asyncio
    async def test_missing_preferences_route_means_no_remote_preferences(self):
        store = self.store(owner="u1")

        assert await store.fetch_preferences() is None
        assert self.backend.requests[-1][:2] == ("GET", "/api/sync/preferences/u1")
        await store.aclose()

    @pytest.mark.asyncio
    async def test_other_missing_routes_are_still_errors(self):
        store = self.store(owner="u1")

        with pytest.raises(RemoteUnavailable):
            await store._request("GET", "/api/unknown")
        await store.aclose()

    @pytest.mark.asyncio
    async def test_full_sync_with_owner_pushes_entries_and_preferences(self):
        self.backend.entries[("2024-03-04", "github.com")] = 200
        store = self.store(owner="u1")
        reconciler = SyncReconciler(store, clock=lambda: T0)

        result = await reconciler.sync(
            SyncEnvelope(
                ledger={"2024-03-05": {"reddit.com": 30}},
                preferences=prefs(["reddit.com"], T0),
                client_timestamp=T0,
            )
        )

        assert result.ok, result.error
        assert result.merge.ledger == {
            "2024-03-04": {"github.com": 200},
            "2024-03-05": {"reddit.com": 30},
        }
        assert self.backend.entries[("2024-03-05", "reddit.com")] == 30
        assert self.backend.preferences["u1"]["blockedSites"] == ["reddit.com"]
        await store.aclose()

    @pytest.mark.asyncio
    async def test_full_sync_without_owner_carries_preferences(self):
        store = self.store()
        reconciler = SyncReconciler(store, clock=lambda: T0)

        result = await reconciler.sync(
            SyncEnvelope(ledger={}, preferences=prefs(["reddit.com"], T0), client_timestamp=T0)
        )

        assert result.ok, result.error
        assert [body.get("blockedSites") for body in self.backend.bodies("POST", "/api/sync")] == [
            ["reddit.com"]
        ]
        await store.aclose()

    @pytest.mark.asyncio
    async def test_newer_remote_preferences_are_adopted_over_http(self):
        self.backend.serves_preferences = True
        self.backend.preferences["u1"] = {
            "blockedSites": ["twitter.com"],
            "productiveSites": [],
            "distractingSites": [],
            "updatedAt": "2024-03-05T10:00:00",
        }
        store = self.store(owner="u1")
        reconciler = SyncReconciler(store, clock=lambda: T0)

        result = await reconciler.sync(
            SyncEnvelope(ledger={}, preferences=prefs(["reddit.com"], T0), client_timestamp=T0)
        )

        assert result.ok, result.error
        assert result.merge.preferences_changed
        assert result.merge.preferences.blocked_sites == ["twitter.com"]
        assert self.backend.bodies("POST", "/api/sync") == []
        await store.aclose()
