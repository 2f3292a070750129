"""CLI interface for the cftracker service."""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import UTC
from pathlib import Path

import httpx
import typer
from rich.console import Console
from rich.table import Table

from cftracker.config import AppConfig, ensure_dirs, get_base_dir, load_config, save_config

app = typer.Typer(
    name="cftracker",
    help="Track Codeforces progress of students: sync service, REST API and tools.",
    add_completion=False,
)
console = Console()


def main() -> None:
    """Entry point that wraps ``app()`` with a clean KeyboardInterrupt handler."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("Interrupted.")
        raise SystemExit(130) from None


# ---------------------------------------------------------------------------
# API helper
# ---------------------------------------------------------------------------


def api_get(path: str) -> dict:
    """GET *path* from the running service and return the ``data`` of its envelope.

    Raises a user-friendly error (via ``typer.Exit``) when the service is
    unreachable or answers with an error envelope.
    """
    cfg = load_config()
    try:
        with httpx.Client(base_url=cfg.api_url, timeout=10.0) as client:
            response = client.get(path)
    except httpx.ConnectError:
        console.print(
            f"[red]Could not connect to the service at {cfg.api_url}.[/red]"
            "  Is it running?  Try [bold]cftracker serve[/bold].",
        )
        raise typer.Exit(1) from None

    try:
        body = response.json()
    except ValueError:
        body = {}
    if response.is_error or not body.get("success", False):
        message = body.get("message") or f"HTTP {response.status_code}"
        console.print(f"[red]Service returned an error:[/red] {message}")
        raise typer.Exit(1)
    return body.get("data") or {}


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def _format_duration(seconds: float) -> str:
    """Format seconds into a human-readable duration string."""
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    if hours < 24:
        return f"{hours}h {minutes}m"
    days, hours = divmod(hours, 24)
    return f"{days}d {hours}h"


def _human_time(iso_str: str | None) -> str:
    """Convert an ISO timestamp to a relative time string."""
    if not iso_str:
        return "never"
    from datetime import datetime

    try:
        dt = datetime.fromisoformat(iso_str.replace("Z", "+00:00"))
        diff = (datetime.now(UTC) - dt).total_seconds()
    except (ValueError, AttributeError):
        return iso_str
    if diff < 0:
        return f"in {_format_duration(-diff)}"
    return f"{_format_duration(diff)} ago"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def serve() -> None:
    """Run the REST API and the sync scheduler in the foreground."""
    from cftracker.logging import setup_logging
    from cftracker.service import Service

    ensure_dirs()
    cfg = load_config()
    setup_logging(cfg.server.log_level, cfg.log_dir)

    console.print(f"[green]Serving[/green] on [bold]{cfg.api_url}[/bold]  (Ctrl+C to stop)")
    Service(cfg).run()


@app.command()
def sync(
    student_id: int | None = typer.Option(None, "--student-id", "-s", help="Sync a single student"),
    all_students: bool = typer.Option(False, "--all", "-a", help="Sync every student, not only stale ones"),
) -> None:
    """Run one sync pass directly against the database (no running service needed)."""
    from cftracker.logging import setup_logging

    if student_id is not None and all_students:
        console.print("[red]--student-id and --all are mutually exclusive.[/red]")
        raise typer.Exit(1)

    ensure_dirs()
    cfg = load_config()
    setup_logging(cfg.server.log_level, cfg.log_dir)

    ok = asyncio.run(_run_sync(cfg, student_id, all_students))
    if not ok:
        raise typer.Exit(1)


async def _run_sync(cfg: AppConfig, student_id: int | None, all_students: bool) -> bool:
    from cftracker.storage import Database
    from cftracker.sync.engine import SyncEngine

    db = Database(cfg.db_path)
    await db.connect()
    try:
        engine = SyncEngine(cfg, db)
        if student_id is not None:
            result = await engine.sync_student(student_id)
            if result.success:
                console.print(f"[green]{result.message}[/green]")
                if result.data:
                    console.print(
                        f"  submissions +{result.data.submissions_added}, "
                        f"rating changes +{result.data.rating_changes_added}, "
                        f"rating {result.data.current_rating} (max {result.data.max_rating})"
                    )
            else:
                console.print(f"[red]{result.message}[/red]")
                if result.error:
                    console.print(f"  [dim]{result.error}[/dim]")
            return result.success

        stats = await (engine.sync_all() if all_students else engine.sync_stale())
    finally:
        await db.close()

    table = Table(title="Sync results", show_header=True, header_style="bold")
    table.add_column("ID", justify="right")
    table.add_column("Handle")
    table.add_column("Result")
    for outcome in stats.results:
        style = "green" if outcome.result.success else "red"
        table.add_row(
            str(outcome.student_id),
            outcome.handle,
            f"[{style}]{outcome.result.message}[/{style}]",
        )
    if stats.results:
        console.print(table)
    console.print(
        f"Synced [bold]{stats.successful_syncs}/{stats.total_students}[/bold] students"
        f" in {stats.duration_ms} ms"
    )
    return stats.failed_syncs == 0


@app.command()
def status() -> None:
    """Show service uptime, scheduler state and last sync result."""
    health = api_get("/api/health")
    sched = api_get("/api/cron/status")

    console.print()
    uptime_secs = health.get("uptime_seconds")
    if uptime_secs is not None:
        console.print(f"  [bold]Uptime:[/bold]  {_format_duration(uptime_secs)}")
    console.print(f"  [bold]Env:[/bold]     {health.get('environment', 'unknown')}")

    if sched.get("syncing"):
        state, color = "syncing", "blue"
    elif sched.get("paused"):
        state, color = "paused", "yellow"
    else:
        state, color = "idle", "green"
    console.print(f"  [bold]State:[/bold]   [{color}]{state}[/{color}]")

    engine = health.get("sync")
    if engine:
        engine_color = "red" if engine.get("state") == "error" else "green"
        console.print(f"  [bold]Engine:[/bold]  [{engine_color}]{engine.get('state')}[/{engine_color}]")
        batch = engine.get("last_stats")
        if batch:
            console.print(
                f"    last batch: {batch['successful_syncs']}/{batch['total_students']} ok"
                f", {batch['failed_syncs']} failed, {batch['duration_ms']} ms"
            )

    console.print("\n  [bold cyan]Scheduler[/bold cyan]")
    console.print(f"    interval: {sched.get('interval_minutes')}m")
    console.print(f"    last:     {_human_time(sched.get('last_sync_at'))}")
    if sched.get("next_sync_at"):
        console.print(f"    next:     {_human_time(sched['next_sync_at'])}")

    last = sched.get("last_result")
    if last:
        console.print("\n  [bold cyan]Last sync[/bold cyan]")
        for k, v in last.items():
            console.print(f"    {k}: {v}")

    console.print()


@app.command()
def logs(
    tail_lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
    sync: bool = typer.Option(False, "--sync", help="Show sync.log (JSON) instead of server.log"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output (like tail -f)"),
) -> None:
    """Show recent service log output (--sync for the JSON sync log, --follow for live tail)."""
    from cftracker.logging import SERVER_LOG, SYNC_LOG

    filename = SYNC_LOG if sync else SERVER_LOG
    log_file = get_base_dir() / "logs" / filename
    if not log_file.exists():
        console.print(f"[yellow]Log file not found:[/yellow] {log_file}")
        raise typer.Exit(1)

    if follow:
        _follow_log(log_file, tail_lines)
        return

    with open(log_file, encoding="utf-8") as fh:
        last_lines = deque(fh, maxlen=tail_lines)

    if not last_lines:
        console.print("[dim]Log file is empty.[/dim]")
        return

    for line in last_lines:
        _print_log_line(line)


def _log_line_style(line: str) -> str | None:
    """Return a Rich style string based on the log level found in *line*.

    Matches structlog formats only:
    - ConsoleRenderer: ``[error    ]``
    - JSONRenderer: ``"level": "error"``
    """
    lower = line.lower()
    if "[error" in lower or "[critical" in lower or '"level": "error"' in lower or '"level": "critical"' in lower:
        return "red"
    if "[warning" in lower or '"level": "warning"' in lower:
        return "yellow"
    if "[debug" in lower or '"level": "debug"' in lower:
        return "dim"
    return None


def _print_log_line(line: str) -> None:
    line = line.rstrip("\n")
    if not line:
        return
    console.print(line, style=_log_line_style(line), highlight=False, markup=False)


def _follow_log(log_file: Path, initial_lines: int = 10) -> None:
    """Follow a log file, printing new lines as they appear (like ``tail -f``)."""
    import time

    with open(log_file, encoding="utf-8") as fh:
        last = deque(fh, maxlen=initial_lines)
    for line in last:
        _print_log_line(line)

    with open(log_file, encoding="utf-8") as fh:
        fh.seek(0, 2)
        try:
            while True:
                line = fh.readline()
                if line:
                    _print_log_line(line)
                else:
                    time.sleep(0.5)
        except KeyboardInterrupt:
            pass


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


config_app = typer.Typer(name="config", help="View and modify configuration.", add_completion=False)
app.add_typer(config_app)


@config_app.command(name="show")
def config_show() -> None:
    """Show current configuration."""
    cfg = load_config()

    console.print("\n[bold]Current Configuration[/bold]\n")
    for section_name in ("server", "sync", "codeforces"):
        section = getattr(cfg, section_name)
        console.print(f"[bold cyan]\\[{section_name}][/bold cyan]")
        values = section.model_dump(mode="python")
        width = max(len(k) for k in values)
        for key, value in values.items():
            console.print(f"  {key:<{width}} = {value}", highlight=False)
        console.print()


@config_app.command(name="set")
def config_set(
    key: str = typer.Argument(help="Dotted key, e.g. sync.interval_minutes"),
    value: str = typer.Argument(help="New value"),
) -> None:
    """Set a configuration value (e.g. cftracker config set sync.interval_minutes 720)."""
    from pydantic import ValidationError

    parts = key.split(".", maxsplit=1)
    if len(parts) != 2:
        console.print("[red]Key must be in section.field format (e.g. sync.enabled).[/red]")
        raise typer.Exit(1)

    section_name, field_name = parts

    cfg = load_config()
    section_map = {
        "server": cfg.server,
        "sync": cfg.sync,
        "codeforces": cfg.codeforces,
    }

    if section_name not in section_map:
        console.print(f"[red]Unknown section:[/red] {section_name}")
        console.print(f"[dim]Valid sections: {', '.join(section_map)}[/dim]")
        raise typer.Exit(1)

    section_model = section_map[section_name]
    fields = type(section_model).model_fields
    if field_name not in fields:
        console.print(f"[red]Unknown field:[/red] {section_name}.{field_name}")
        console.print(f"[dim]Valid fields: {', '.join(fields)}[/dim]")
        raise typer.Exit(1)

    try:
        coerced = _coerce_value(value, fields[field_name].annotation)
        section_data = section_model.model_dump(mode="python")
        section_data[field_name] = coerced
        new_section = type(section_model)(**section_data)
    except (ValueError, TypeError, ValidationError) as exc:
        console.print(f"[red]Invalid value:[/red] {exc}")
        raise typer.Exit(1) from exc

    setattr(cfg, section_name, new_section)
    save_config(cfg)
    console.print(f"[green]Set[/green] {key} = {coerced}")


def _coerce_value(raw: str, field_type: type) -> object:
    """Coerce a string value to the expected field type."""
    import typing

    origin = typing.get_origin(field_type)
    args = typing.get_args(field_type)

    if field_type is bool:
        if raw.lower() in ("true", "1", "yes"):
            return True
        if raw.lower() in ("false", "0", "no"):
            return False
        msg = f"Cannot convert '{raw}' to bool (use true/false)"
        raise ValueError(msg)

    if field_type is int:
        return int(raw)

    if field_type is str:
        return raw

    if origin is typing.Literal:
        if raw not in args:
            msg = f"'{raw}' is not a valid option (choose from: {', '.join(str(a) for a in args)})"
            raise ValueError(msg)
        return raw

    return raw


# ---------------------------------------------------------------------------
# Database inspection
# ---------------------------------------------------------------------------


db_app = typer.Typer(name="db", help="Database inspection commands.", add_completion=False)
app.add_typer(db_app)


@db_app.command(name="status")
def db_status() -> None:
    """Show database status and table statistics."""
    import sqlite3

    db_path = load_config().db_path
    if not db_path.exists():
        console.print("[yellow]Database not found.[/yellow] Run [bold]cftracker serve[/bold] first to initialise it.")
        raise typer.Exit(1)

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        console.print(f"\n[bold]Database[/bold]  {db_path}")
        size_kb = db_path.stat().st_size / 1024
        console.print(f"[dim]Size: {size_kb:.1f} KB[/dim]\n")

        tables = [
            ("student", "Tracked students"),
            ("contest", "Codeforces contests"),
            ("submission", "Stored submissions"),
            ("rating_change", "Rating changes"),
        ]

        for table, description in tables:
            cur = conn.execute(f"SELECT COUNT(*) as cnt FROM {table}")  # noqa: S608
            count = cur.fetchone()["cnt"]
            style = "green" if count > 0 else "dim"
            console.print(f"  [{style}]{table:15s}[/{style}]  {count:>7}  [dim]{description}[/dim]")

        cur = conn.execute(
            "SELECT codeforces_handle, last_data_update FROM student"
            " WHERE last_data_update IS NOT NULL ORDER BY last_data_update DESC LIMIT 1"
        )
        last = cur.fetchone()
        if last:
            console.print("\n[bold]Last sync[/bold]")
            console.print(f"  Student:   {last['codeforces_handle']}")
            console.print(f"  Updated:   {_human_time(last['last_data_update'])}")

        cur = conn.execute("SELECT COUNT(*) as cnt FROM student WHERE last_data_update IS NULL")
        never = cur.fetchone()["cnt"]
        if never:
            console.print(f"\n[yellow]{never} student(s) never synced.[/yellow]")
    finally:
        conn.close()

    console.print()
