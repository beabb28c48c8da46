"""Clients for the remote activity store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Protocol

import httpx

from .errors import RemoteUnavailable
from .models import DailyReport, Preferences, RemoteStatus

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(hours=1)

LedgerSlice = Mapping[str, Mapping[str, float]]


class RemoteStore(Protocol):
    async def fetch_entries(self, start: str, end: str) -> dict[str, dict[str, float]]:
        """Time entries with ``start <= date <= end``."""
        ...

    async def upsert_entries(self, entries: LedgerSlice) -> None:
        """Store each cell as ``max(existing, incoming)``."""
        ...

    async def upsert_report(self, report: DailyReport) -> None: ...

    async def fetch_preferences(self) -> Optional[Preferences]: ...

    async def store_preferences(self, preferences: Preferences) -> None: ...

    async def mark_synced(self, when: datetime) -> None: ...

    async def status(self) -> RemoteStatus: ...

    async def aclose(self) -> None: ...


@dataclass
class InMemoryRemoteStore:
    """Remote store kept in process memory, for offline use and tests."""

    entries: dict[str, dict[str, float]] = field(default_factory=dict)
    reports: dict[str, DailyReport] = field(default_factory=dict)
    preferences: Optional[Preferences] = None
    last_sync: Optional[datetime] = None
    latest_entry: Optional[datetime] = None
    latest_report: Optional[datetime] = None
    reachable: bool = True
    calls: list[str] = field(default_factory=list)

    def _check(self, call: str) -> None:
        self.calls.append(call)
        if not self.reachable:
            raise RemoteUnavailable(f"remote store unreachable during {call}")

    async def fetch_entries(self, start: str, end: str) -> dict[str, dict[str, float]]:
        self._check("fetch_entries")
        return {
            day: dict(sites)
            for day, sites in self.entries.items()
            if start <= day <= end
        }

    async def upsert_entries(self, entries: LedgerSlice) -> None:
        self._check("upsert_entries")
        for day, sites in entries.items():
            stored = self.entries.setdefault(day, {})
            for domain, seconds in sites.items():
                stored[domain] = max(stored.get(domain, 0), seconds)
        if entries:
            self.latest_entry = datetime.now()

    async def upsert_report(self, report: DailyReport) -> None:
        self._check("upsert_report")
        self.reports[report.date] = report
        self.latest_report = datetime.now()

    async def fetch_preferences(self) -> Optional[Preferences]:
        self._check("fetch_preferences")
        return self.preferences.copy() if self.preferences else None

    async def store_preferences(self, preferences: Preferences) -> None:
        self._check("store_preferences")
        self.preferences = preferences.copy()

    async def mark_synced(self, when: datetime) -> None:
        self._check("mark_synced")
        self.last_sync = when

    async def status(self) -> RemoteStatus:
        self._check("status")
        return RemoteStatus(
            last_sync=self.last_sync,
            latest_entry=self.latest_entry,
            latest_report=self.latest_report,
            sync_needed=is_stale(self.last_sync, datetime.now()),
        )

    async def aclose(self) -> None:
        pass


class HttpRemoteStore:
    """JSON-over-HTTP client for the activity backend.

    Every transport error, timeout or 5xx answer is raised as
    ``RemoteUnavailable`` so callers can treat them all as transient.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: timedelta = timedelta(seconds=10),
        owner: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.owner = owner
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout.total_seconds()),
            headers={"Content-Type": "application/json"},
        )

    async def fetch_entries(self, start: str, end: str) -> dict[str, dict[str, float]]:
        params = {"startDate": start, "endDate": end}
        if self.owner:
            params["userId"] = self.owner
        payload = await self._request("GET", "/api/time/entries", params=params)
        entries: dict[str, dict[str, float]] = {}
        for item in payload.get("data") or []:
            day = item.get("date")
            domain = item.get("domain")
            seconds = item.get("timeSpent")
            if not day or not domain or not isinstance(seconds, (int, float)):
                continue
            stored = entries.setdefault(day, {})
            stored[domain] = max(stored.get(domain, 0), seconds)
        return entries

    async def upsert_entries(self, entries: LedgerSlice) -> None:
        if not entries:
            return
        body: dict[str, Any] = {"timeData": {day: dict(sites) for day, sites in entries.items()}}
        if self.owner:
            body["userId"] = self.owner
        await self._request("POST", "/api/sync", json=body)

    async def upsert_report(self, report: DailyReport) -> None:
        body = report.to_dict()
        if self.owner:
            body["userId"] = self.owner
        await self._request("POST", "/api/daily-report", json=body)

    async def fetch_preferences(self) -> Optional[Preferences]:
        """Preferences stored under ``owner``; None when the backend keeps none.

        Backends that only accept preferences through ``POST /api/sync``
        answer 404 here, which means local preferences are pushed instead.
        """
        if not self.owner:
            return None
        payload = await self._request(
            "GET", f"/api/sync/preferences/{self.owner}", missing_ok=True
        )
        data = payload.get("data")
        if not data:
            return None
        updated = data.get("updatedAt")
        return Preferences(
            productive_sites=list(data.get("productiveSites") or []),
            distracting_sites=list(data.get("distractingSites") or []),
            blocked_sites=list(data.get("blockedSites") or []),
            updated_at=_parse_timestamp(updated),
        )

    async def store_preferences(self, preferences: Preferences) -> None:
        body: dict[str, Any] = {
            "productiveSites": preferences.productive_sites,
            "distractingSites": preferences.distracting_sites,
            "blockedSites": preferences.blocked_sites,
            "updatedAt": preferences.updated_at.isoformat() if preferences.updated_at else None,
        }
        if self.owner:
            body["userId"] = self.owner
        await self._request("POST", "/api/sync", json=body)

    async def mark_synced(self, when: datetime) -> None:
        # The backend stamps lastSync itself whenever it accepts a sync payload.
        logger.debug("Remote sync acknowledged at %s", when.isoformat())

    async def status(self) -> RemoteStatus:
        path = f"/api/sync/status/{self.owner}" if self.owner else "/api/sync/status"
        payload = await self._request("GET", path)
        data = payload.get("data") or {}
        return RemoteStatus(
            last_sync=_parse_timestamp(data.get("lastSync")),
            latest_entry=_parse_timestamp(data.get("latestTimeEntry")),
            latest_report=_parse_timestamp(data.get("latestReport")),
            sync_needed=bool(data.get("syncNeeded", True)),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self, method: str, path: str, *, missing_ok: bool = False, **kwargs: Any
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteUnavailable(f"{method} {path} failed: {exc}") from exc
        if missing_ok and response.status_code == 404:
            logger.debug("%s %s not served by the remote store", method, path)
            return {}
        if response.status_code >= 500:
            raise RemoteUnavailable(f"{method} {path} returned {response.status_code}")
        try:
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPStatusError, ValueError) as exc:
            raise RemoteUnavailable(f"{method} {path} rejected: {exc}") from exc
        if isinstance(payload, dict) and payload.get("success") is False:
            raise RemoteUnavailable(f"{method} {path}: {payload.get('error', 'unknown error')}")
        return payload if isinstance(payload, dict) else {"data": payload}


def is_stale(last_sync: Optional[datetime], now: datetime, stale_after: timedelta = STALE_AFTER) -> bool:
    if last_sync is None:
        return True
    return now - last_sync > stale_after


def build_remote_store(
    url: Optional[str], *, timeout: timedelta, owner: Optional[str] = None
) -> Optional[RemoteStore]:
    if not url:
        return None
    return HttpRemoteStore(url, timeout=timeout, owner=owner)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def merge_slices(*slices: LedgerSlice) -> dict[str, dict[str, float]]:
    merged: dict[str, dict[str, float]] = {}
    for part in slices:
        for day, sites in part.items():
            stored = merged.setdefault(day, {})
            for domain, seconds in sites.items():
                stored[domain] = max(stored.get(domain, 0), seconds)
    return merged
