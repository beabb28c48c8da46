"""FastAPI application that exposes the tracker to the UI and content scripts."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from .config import TrackerSettings
from .coordinator import Coordinator
from .errors import ValidationError
from .models import ActivitySample, DailyReport, SiteList, date_key, parse_date_key
from .notifications import LogNotifier
from .paths import get_state_path
from .remote import build_remote_store
from .store import SQLiteKeyValueStore

logger = logging.getLogger(__name__)


class ActivityPayload(BaseModel):
    domain: str
    time_spent: float = Field(alias="timeSpent", ge=0)
    url: Optional[str] = None
    title: Optional[str] = None
    timestamp: Optional[datetime] = None

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ContextPayload(BaseModel):
    url: str
    title: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class ContextEventPayload(BaseModel):
    type: str

    model_config = ConfigDict(extra="forbid")


class BlockingPayload(BaseModel):
    enabled: bool

    model_config = ConfigDict(extra="forbid")


class SitePayload(BaseModel):
    domain: str

    model_config = ConfigDict(extra="forbid")


class SiteListPayload(BaseModel):
    sites: List[str]

    model_config = ConfigDict(extra="forbid")


class FocusPayload(BaseModel):
    duration_minutes: int = Field(alias="durationMinutes")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ReportRequest(BaseModel):
    date: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


def build_coordinator(
    *,
    state_path: Optional[Path] = None,
    settings: Optional[TrackerSettings] = None,
) -> Coordinator:
    resolved_settings = settings or TrackerSettings()
    store = SQLiteKeyValueStore(Path(state_path or get_state_path()))
    remote = build_remote_store(
        resolved_settings.remote_url,
        timeout=resolved_settings.remote_timeout,
        owner=resolved_settings.owner,
    )
    return Coordinator(store, settings=resolved_settings, remote=remote)


def create_app(
    *,
    coordinator: Optional[Coordinator] = None,
    state_path: Optional[Path] = None,
    settings: Optional[TrackerSettings] = None,
) -> FastAPI:
    """Instantiate the FastAPI application."""
    tracker = coordinator or build_coordinator(state_path=state_path, settings=settings)

    app = FastAPI(title="Focus Tracker", version="0.3.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.coordinator = tracker

    @app.on_event("startup")
    async def _startup() -> None:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        await tracker.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await tracker.shutdown()

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        sync = coord.status()
        return {
            "running": coord.started,
            "remote_configured": coord.reconciler.configured,
            "last_sync": _isoformat(sync.last_sync),
            "sync_needed": sync.sync_needed,
            "last_error": sync.last_error,
            "idle_seconds": coord.settings.idle_threshold.total_seconds(),
            "emit_seconds": coord.settings.emit_interval.total_seconds(),
        }

    @app.get("/api/ledger")
    def ledger(
        request: Request,
        date: Optional[str] = Query(
            default=None,
            description="Date in YYYY-MM-DD format. Defaults to today.",
        ),
    ) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        day = _parse_date(date) if date else date_key(coord.clock())
        sites = coord.ledger.snapshot(day)
        return {
            "date": day,
            "total_seconds": coord.ledger.total(day),
            "sites": dict(sorted(sites.items(), key=lambda item: item[1], reverse=True)),
        }

    @app.post("/api/activity")
    async def record_activity(payload: ActivityPayload, request: Request) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        sample = ActivitySample(
            domain=payload.domain,
            active_delta=payload.time_spent,
            observed_at=payload.timestamp or coord.clock(),
            url=payload.url,
            title=payload.title,
        )
        try:
            total = await coord.record_sample(sample)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"domain": sample.domain, "total_seconds": total}

    @app.put("/api/contexts/{context_id}")
    async def open_context(
        context_id: str, payload: ContextPayload, request: Request
    ) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        try:
            detector = await coord.open_context(context_id, payload.url, title=payload.title)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"context_id": context_id, "domain": detector.domain}

    @app.post("/api/contexts/{context_id}/events")
    def context_event(
        context_id: str, payload: ContextEventPayload, request: Request
    ) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        detector = coord.context(context_id)
        if detector is None:
            raise HTTPException(status_code=404, detail="Context not found")
        detector.handle_event(payload.type)
        return {"context_id": context_id, "active": detector.is_active}

    @app.delete("/api/contexts/{context_id}")
    async def close_context(context_id: str, request: Request) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        if coord.context(context_id) is None:
            raise HTTPException(status_code=404, detail="Context not found")
        sample = await coord.close_context(context_id)
        return {
            "context_id": context_id,
            "final_seconds": sample.active_delta if sample else 0,
        }

    @app.get("/api/blocking")
    def blocking(request: Request) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        return _blocking_payload(coord)

    @app.post("/api/blocking")
    async def toggle_blocking(payload: BlockingPayload, request: Request) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        await coord.toggle_blocking(payload.enabled)
        return _blocking_payload(coord)

    @app.get("/api/decide")
    def decide(request: Request, url: str = Query(..., description="URL being opened.")) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        return {"url": url, "decision": coord.decide(url).value}

    @app.get("/api/sites/{which}")
    def list_sites(which: SiteList, request: Request) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        return {"list": which.value, "sites": list(coord.preferences.sites(which))}

    @app.post("/api/sites/{which}")
    async def add_site(which: SiteList, payload: SitePayload, request: Request) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        try:
            sites = await coord.add_site(which, payload.domain)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"list": which.value, "sites": sites}

    @app.put("/api/sites/{which}")
    async def replace_sites(
        which: SiteList, payload: SiteListPayload, request: Request
    ) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        try:
            sites = await coord.set_sites(which, payload.sites)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"list": which.value, "sites": sites}

    @app.delete("/api/sites/{which}/{domain}")
    async def remove_site(which: SiteList, domain: str, request: Request) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        try:
            sites = await coord.remove_site(which, domain)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"list": which.value, "sites": sites}

    @app.get("/api/focus")
    def focus_status(request: Request) -> Dict[str, Any]:
        return request.app.state.coordinator.focus_status()

    @app.post("/api/focus")
    async def start_focus(payload: FocusPayload, request: Request) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        try:
            await coord.start_focus(payload.duration_minutes)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return coord.focus_status()

    @app.delete("/api/focus")
    async def stop_focus(request: Request) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        stopped = await coord.stop_focus()
        return {"stopped": stopped, **coord.focus_status()}

    @app.get("/api/reports")
    def reports(
        request: Request,
        limit: int = Query(default=7, ge=1, le=90, description="Number of reports."),
    ) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        return {"reports": [report.to_dict() for report in coord.recent_reports(limit)]}

    @app.post("/api/reports")
    async def generate_report(payload: ReportRequest, request: Request) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        day = _parse_date(payload.date) if payload.date else None
        report: DailyReport = await coord.generate_report(day)
        return report.to_dict()

    @app.post("/api/sync")
    async def sync(request: Request) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        if not coord.reconciler.configured:
            raise HTTPException(status_code=409, detail="No remote store configured")
        result = await coord.request_sync()
        return {
            "last_sync": _isoformat(result.last_sync),
            "sync_needed": result.sync_needed,
            "last_error": result.last_error,
        }

    @app.get("/api/sync/status")
    async def remote_sync_status(request: Request) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        if not coord.reconciler.configured:
            raise HTTPException(status_code=409, detail="No remote store configured")
        remote = await coord.remote_status()
        if remote is None:
            raise HTTPException(status_code=503, detail="Remote store unavailable")
        return {
            "last_sync": _isoformat(remote.last_sync),
            "latest_entry": _isoformat(remote.latest_entry),
            "latest_report": _isoformat(remote.latest_report),
            "sync_needed": remote.sync_needed,
        }

    @app.get("/api/export")
    async def export_state(request: Request) -> Dict[str, Any]:
        document = await request.app.state.coordinator.export_state()
        return document.model_dump(mode="json", by_alias=True)

    @app.post("/api/import")
    async def import_state(payload: Dict[str, Any], request: Request) -> Dict[str, Any]:
        coord: Coordinator = request.app.state.coordinator
        try:
            document = await coord.import_state(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"imported_days": len(document.time_ledger)}

    @app.get("/api/notifications")
    def notifications(request: Request) -> Dict[str, Any]:
        notifier = request.app.state.coordinator.notifier
        recent = notifier.recent() if isinstance(notifier, LogNotifier) else []
        return {
            "notifications": [
                {
                    "title": item.title,
                    "message": item.message,
                    "created_at": item.created_at.isoformat(),
                }
                for item in recent
            ]
        }

    return app


def _parse_date(value: str) -> str:
    try:
        return date_key(parse_date_key(value))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date format") from exc


def _blocking_payload(coord: Coordinator) -> Dict[str, Any]:
    state = coord.blocking_state()
    return {
        "manual_enabled": state.manual_enabled,
        "focus_active": coord.focus.active,
        "active": state.active,
        "blocked_sites": list(coord.preferences.blocked_sites),
        "rules": [
            {"id": rule.id, "domain": rule.domain, "url_filter": rule.url_filter}
            for rule in coord.engine.effective_rules.rules
        ],
    }


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
