"""Command-line interface surface for developer tooling."""

from __future__ import annotations

import asyncio
import atexit
import json
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from .assets import AssetCacheManager, load_manifest
from .cache_storage import CacheStorage
from .config import get_settings
from .connectivity import get_connection_status
from .db import close_database, get_database_manager, get_database_path, reset_database_state
from .errors import OfflineStoreError, UpgradeBlocked
from .http import build_http_app
from .store import student_store, teacher_store
from .sync import SyncStateTracker

# aiosqlite worker threads can keep the interpreter alive if the engine is never disposed.
atexit.register(reset_database_state)

console = Console()

app = typer.Typer(help="Offline capture store and asset cache utilities.", no_args_is_help=True)
reports_app = typer.Typer(help="Incident reports and their sync state")
students_app = typer.Typer(help="Cached student directory")
teachers_app = typer.Typer(help="Cached teacher directory")
assets_app = typer.Typer(help="Offline asset cache generations")

app.add_typer(reports_app, name="reports")
app.add_typer(students_app, name="students")
app.add_typer(teachers_app, name="teachers")
app.add_typer(assets_app, name="assets")


def _run_async(coro: Any) -> Any:
    """Run a coroutine and dispose of the database in the same event loop.

    Errors from the store are printed and turned into a non-zero exit.
    """

    async def _runner() -> Any:
        try:
            return await coro
        finally:
            await close_database()

    try:
        return asyncio.run(_runner())
    except UpgradeBlocked as exc:
        console.print(f"[yellow]{exc}[/]")
        console.print("[yellow]Close other sessions of this application, then try again.[/]")
        raise typer.Exit(code=3) from exc
    except OfflineStoreError as exc:
        console.print(f"[red]{exc.kind.value}:[/] {exc}")
        raise typer.Exit(code=1) from exc
    finally:
        reset_database_state()


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        console.print(f"[red]Could not read {path}:[/] {exc}")
        raise typer.Exit(code=2) from exc


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, help="Host interface. Defaults to HTTP_HOST setting."),
    port: Optional[int] = typer.Option(None, help="Port. Defaults to HTTP_PORT setting."),
) -> None:
    """Serve the application through the offline asset cache."""
    settings = get_settings()
    resolved_host = host or settings.http.host
    resolved_port = port or settings.http.port
    console.print(f"[cyan]Worker host[/] http://{resolved_host}:{resolved_port}/ -> {settings.assets.origin}")
    uvicorn.run(build_http_app(settings), host=resolved_host, port=resolved_port, log_level=settings.log_level.lower())


@app.command("init-db")
def init_db_command() -> None:
    """Open (creating or upgrading) the local database."""

    async def _init() -> Any:
        return await get_database_manager().acquire()

    handle = _run_async(_init())
    console.print(f"[green]Database ready[/] (schema v{handle.version}) at {handle.path or get_settings().database.url}")


@app.command("destroy-db")
def destroy_db(yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt.")) -> None:
    """Delete the local database; all unsynced reports are lost."""
    if not yes and not typer.confirm("Delete the local database including unsynced reports?"):
        raise typer.Exit(code=1)
    _run_async(get_database_manager().destroy())
    console.print("[green]Database deleted.[/]")


@app.command("status")
def status() -> None:
    """Show database contents, cache generations and connectivity."""
    settings = get_settings()

    async def _status() -> dict[str, Any]:
        manager = get_database_manager()
        handle = await manager.acquire()
        tracker = SyncStateTracker(manager=manager)
        pending = await tracker.list_pending()
        return {
            "version": handle.version,
            "reports": await tracker.store.count(),
            "pending": len(pending),
            "students": await student_store(manager).count(),
            "teachers": await teacher_store(manager).count(),
            "caches": await CacheStorage(settings.assets.cache_root).keys(),
            "connection": await get_connection_status(settings),
        }

    info = _run_async(_status())
    table = Table(title="offline-capture status", show_lines=False)
    table.add_column("Item")
    table.add_column("Value")
    table.add_row("database", str(get_database_path(settings) or settings.database.url))
    table.add_row("schema version", str(info["version"]))
    table.add_row("reports", f"{info['reports']} ({info['pending']} pending)")
    table.add_row("students", str(info["students"]))
    table.add_row("teachers", str(info["teachers"]))
    table.add_row("caches", ", ".join(info["caches"]) or "-")
    table.add_row("online", "yes" if info["connection"]["online"] else "no")
    console.print(table)


@reports_app.command("add")
def reports_add(
    payload: Optional[str] = typer.Argument(None, help="Report payload as a JSON object."),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Read the payload from a JSON file."),
) -> None:
    """Store a new pending report."""
    if file is not None:
        data = _read_json(file)
    else:
        try:
            data = json.loads(payload or "{}")
        except ValueError as exc:
            console.print(f"[red]Invalid JSON payload:[/] {exc}")
            raise typer.Exit(code=2) from exc
    if not isinstance(data, dict):
        console.print("[red]Report payload must be a JSON object.[/]")
        raise typer.Exit(code=2)
    report = _run_async(SyncStateTracker().create_report(data))
    console.print(f"[green]Stored report[/] #{report.id}")


@reports_app.command("list")
def reports_list(pending: bool = typer.Option(False, "--pending", help="Only reports not yet synced.")) -> None:
    """List stored reports."""
    tracker = SyncStateTracker()
    reports = _run_async(tracker.list_pending() if pending else tracker.list_all())
    if not reports:
        console.print("[yellow]No reports.[/]")
        return
    table = Table(title="Pending reports" if pending else "Reports", show_lines=False)
    table.add_column("ID", justify="right")
    table.add_column("Timestamp")
    table.add_column("Synced")
    table.add_column("Payload")
    for report in reports:
        record = report.to_record()
        table.add_row(
            str(record["id"]),
            record["timestamp"],
            record["synced_at"] or "no",
            json.dumps(record["payload"], ensure_ascii=False)[:80],
        )
    console.print(table)


@reports_app.command("mark-synced")
def reports_mark_synced(report_id: int = typer.Argument(..., help="Report id.")) -> None:
    """Mark a report as uploaded."""
    report = _run_async(SyncStateTracker().mark_synced(report_id))
    console.print(f"[green]Report #{report.id} synced[/] at {report.to_record()['synced_at']}")


@reports_app.command("delete")
def reports_delete(report_id: int = typer.Argument(..., help="Report id.")) -> None:
    """Delete a report regardless of its sync state."""
    _run_async(SyncStateTracker().delete_report(report_id))
    console.print(f"[green]Deleted report #{report_id}.[/]")


@reports_app.command("purge")
def reports_purge() -> None:
    """Delete every synced report."""
    count = _run_async(SyncStateTracker().purge_synced())
    console.print(f"[green]Purged {count} synced report(s).[/]")


def _load_directory(kind: str, path: Path) -> None:
    items = _read_json(path)
    if not isinstance(items, list):
        console.print(f"[red]{path} must contain a JSON array of {kind}.[/]")
        raise typer.Exit(code=2)
    store = student_store() if kind == "students" else teacher_store()
    try:
        count = _run_async(store.replace_all(items))
    except ValueError as exc:
        console.print(f"[red]Invalid {kind} entry:[/] {exc}")
        raise typer.Exit(code=2) from exc
    console.print(f"[green]Cached {count} {kind}.[/]")


def _list_directory(kind: str) -> None:
    store = student_store() if kind == "students" else teacher_store()
    rows = _run_async(store.get_all())
    if not rows:
        console.print(f"[yellow]No cached {kind}.[/]")
        return
    table = Table(title=f"Cached {kind}", show_lines=False)
    table.add_column("Name")
    table.add_column("Data")
    for row in rows:
        record = row.to_record()
        name = record.pop(store.key_name)
        table.add_row(str(name), json.dumps(record, ensure_ascii=False)[:80])
    console.print(table)


@students_app.command("load")
def students_load(path: Path = typer.Argument(..., help="JSON array of students.")) -> None:
    """Replace the cached students with the contents of a JSON file."""
    _load_directory("students", path)


@students_app.command("list")
def students_list() -> None:
    _list_directory("students")


@teachers_app.command("load")
def teachers_load(path: Path = typer.Argument(..., help="JSON array of teachers.")) -> None:
    """Replace the cached teachers with the contents of a JSON file."""
    _load_directory("teachers", path)


@teachers_app.command("list")
def teachers_list() -> None:
    _list_directory("teachers")


async def _asset_manager(manifest: Optional[Path]) -> AssetCacheManager:
    settings = get_settings().assets
    if manifest is not None:
        settings = replace(settings, manifest_path=str(manifest))
    try:
        loaded = await load_manifest(settings)
    except ValueError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=2) from exc
    return AssetCacheManager(loaded, settings)


@assets_app.command("install")
def assets_install(
    manifest: Optional[Path] = typer.Option(None, "--manifest", "-m", help="Manifest file. Defaults to ASSET_MANIFEST_PATH."),
    activate: bool = typer.Option(True, "--activate/--no-activate", help="Delete older generations afterwards."),
) -> None:
    """Fetch and verify every manifest asset into a new cache generation."""

    async def _install() -> tuple[str, int, list[str]]:
        async with await _asset_manager(manifest) as manager:
            cache = await manager.install()
            deleted = await manager.activate() if activate else []
            return manager.cache_name, len(await cache.keys()), deleted

    name, count, deleted = _run_async(_install())
    console.print(f"[green]Installed {count} asset(s)[/] into {name}")
    for old in deleted:
        console.print(f"[cyan]Deleted[/] {old}")


@assets_app.command("activate")
def assets_activate(
    manifest: Optional[Path] = typer.Option(None, "--manifest", "-m", help="Manifest file. Defaults to ASSET_MANIFEST_PATH."),
) -> None:
    """Delete every cache generation except the manifest's current one."""

    async def _activate() -> list[str]:
        async with await _asset_manager(manifest) as manager:
            try:
                return await manager.activate()
            except RuntimeError as exc:
                console.print(f"[red]{exc}[/]")
                raise typer.Exit(code=1) from exc

    deleted = _run_async(_activate())
    console.print(f"[green]Deleted {len(deleted)} old generation(s).[/]")


@assets_app.command("list")
def assets_list() -> None:
    """List cache generations and their entry counts."""
    storage = CacheStorage(get_settings().assets.cache_root)

    async def _list() -> list[tuple[str, int]]:
        rows = []
        for name in await storage.keys():
            cache = await storage.open(name)
            rows.append((name, len(await cache.keys())))
        return rows

    rows = _run_async(_list())
    if not rows:
        console.print("[yellow]No caches.[/]")
        return
    table = Table(title="Asset caches", show_lines=False)
    table.add_column("Cache")
    table.add_column("Entries", justify="right")
    for name, count in rows:
        table.add_row(name, str(count))
    console.print(table)


if __name__ == "__main__":
    app()
