"""Command-line interface for the focus tracker."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import typer

from .config import ElapsedPolicy, TrackerSettings
from .coordinator import Coordinator
from .errors import ValidationError
from .models import date_key
from .paths import get_log_path, get_state_path
from .reporting import SummaryPrinter
from .server_runner import run_server
from .webapp import build_coordinator

app = typer.Typer(help="Per-site time tracking, focus blocking and sync.")

T = TypeVar("T")

StateOption = typer.Option(
    None,
    "--state",
    path_type=Path,
    help="Location of the local state database.",
)
RemoteOption = typer.Option(
    None,
    "--remote-url",
    envvar="FOCUS_TRACKER_REMOTE_URL",
    help="Base URL of the remote activity store.",
)
OwnerOption = typer.Option(
    None,
    "--owner",
    envvar="FOCUS_TRACKER_OWNER",
    help="User id the remote store files this tracker's data and preferences under.",
)


@app.callback(no_args_is_help=True)
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs."),
    log_file: bool = typer.Option(
        False, "--log-file", help="Also append logs to tracker.log in the data directory."
    ),
) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(get_log_path(), encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=handlers,
    )


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the API."),
    port: int = typer.Option(8765, "--port", min=1, max=65535, help="TCP port for the API."),
    state_path: Optional[Path] = StateOption,
    remote_url: Optional[str] = RemoteOption,
    owner: Optional[str] = OwnerOption,
    idle_seconds: float = typer.Option(
        30.0, "--idle-threshold", min=5.0, help="Seconds without input before a tab is idle."
    ),
    emit_seconds: float = typer.Option(
        10.0, "--interval", min=1.0, help="Seconds between activity samples."
    ),
    sync_minutes: float = typer.Option(
        15.0, "--sync-interval", min=0.0, help="Minutes between automatic syncs (0 disables)."
    ),
    elapsed_policy: ElapsedPolicy = typer.Option(
        ElapsedPolicy.FIXED,
        "--elapsed-policy",
        help="Credit each sample with the fixed interval or the measured elapsed time.",
    ),
    open_browser: bool = typer.Option(
        False,
        "--open-browser/--no-open-browser",
        help="Open the API docs in your default browser.",
    ),
) -> None:
    """Run the tracker service and its local API."""
    settings = TrackerSettings.from_options(
        idle_seconds=idle_seconds,
        emit_seconds=emit_seconds,
        sync_minutes=sync_minutes,
        remote_url=remote_url,
        owner=owner,
        elapsed_policy=elapsed_policy.value,
    )
    run_server(
        host=host,
        port=port,
        state_path=state_path or get_state_path(),
        settings=settings,
        open_browser=open_browser,
    )


@app.command()
def summary(
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Date (YYYY-MM-DD) to summarize. Defaults to today.",
    ),
    state_path: Optional[Path] = StateOption,
) -> None:
    """Print the tracked time for a specific day."""
    target = _parse_day(date) if date else datetime.now()

    async def action(coord: Coordinator) -> None:
        SummaryPrinter(coord.ledger, coord.preferences).print_daily_summary(target)

    _with_coordinator(state_path, None, action)


@app.command()
def report(
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Date (YYYY-MM-DD) to report on. Defaults to yesterday.",
    ),
    state_path: Optional[Path] = StateOption,
    remote_url: Optional[str] = RemoteOption,
    owner: Optional[str] = OwnerOption,
) -> None:
    """Generate (or regenerate) the daily report for a day."""
    day = date_key(_parse_day(date)) if date else None

    async def action(coord: Coordinator) -> None:
        generated = await coord.generate_report(day)
        SummaryPrinter(coord.ledger, coord.preferences).print_report(generated)

    _with_coordinator(state_path, remote_url, action, owner=owner)


@app.command()
def sync(
    state_path: Optional[Path] = StateOption,
    remote_url: Optional[str] = RemoteOption,
    owner: Optional[str] = OwnerOption,
) -> None:
    """Reconcile local activity with the remote store once."""
    if not remote_url:
        typer.echo("No remote store configured; pass --remote-url.", err=True)
        raise typer.Exit(code=2)

    async def action(coord: Coordinator) -> bool:
        status = await coord.request_sync()
        if status.last_error:
            typer.echo(f"Sync failed: {status.last_error}", err=True)
            return False
        typer.echo(f"Synced at {status.last_sync:%Y-%m-%d %H:%M:%S}")
        return True

    if not _with_coordinator(state_path, remote_url, action, owner=owner):
        raise typer.Exit(code=1)


@app.command("export")
def export_state(
    output: Path = typer.Argument(..., help="File to write the state document to."),
    state_path: Optional[Path] = StateOption,
) -> None:
    """Export all local state as one JSON document."""

    async def action(coord: Coordinator) -> str:
        return (await coord.export_state()).to_json()

    output.write_text(_with_coordinator(state_path, None, action), encoding="utf-8")
    typer.echo(f"Wrote {output}")


@app.command("import")
def import_state(
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="State document to load."),
    state_path: Optional[Path] = StateOption,
) -> None:
    """Replace local state with a previously exported document."""
    try:
        data: Any = json.loads(source.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        typer.echo(f"{source} is not valid JSON: {exc}", err=True)
        raise typer.Exit(code=2) from exc

    async def action(coord: Coordinator) -> int:
        document = await coord.import_state(data)
        return len(document.time_ledger)

    try:
        days = _with_coordinator(state_path, None, action)
    except ValidationError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc
    typer.echo(f"Imported {days} day(s) of activity")


@app.command()
def decide(
    url: str = typer.Argument(..., help="URL to check against the blocking policy."),
    state_path: Optional[Path] = StateOption,
) -> None:
    """Show whether navigating to URL would be blocked right now."""

    async def action(coord: Coordinator) -> str:
        return coord.decide(url).value

    typer.echo(_with_coordinator(state_path, None, action))


def _with_coordinator(
    state_path: Optional[Path],
    remote_url: Optional[str],
    action: Callable[[Coordinator], Awaitable[T]],
    *,
    owner: Optional[str] = None,
) -> T:
    settings = TrackerSettings(remote_url=remote_url, owner=owner or None, sync_interval=None)

    async def runner() -> T:
        coord = build_coordinator(state_path=state_path or get_state_path(), settings=settings)
        await coord.start()
        try:
            return await action(coord)
        finally:
            await coord.shutdown()

    return asyncio.run(runner())


def _parse_day(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise typer.BadParameter("expected YYYY-MM-DD") from exc
