from __future__ import annotations

import json
from typing import Optional

import httpx
import typer
import uvicorn
from dotenv import load_dotenv

app = typer.Typer(add_completion=False)


def _load_env() -> None:
    load_dotenv()


def _settings():
    from taskwatch.core.config import Settings

    return Settings.from_env()


def _setup_logging() -> None:
    """Configure centralized logging to both stdout and log files."""
    from taskwatch.core.logging_config import setup_logging

    settings = _settings()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)


def _base_url(host: Optional[str], port: Optional[int]) -> str:
    settings = _settings()
    return f"http://{host or settings.host}:{port or settings.port}"


def _echo_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default: TASKWATCH_HOST)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default: TASKWATCH_PORT)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    _load_env()
    _setup_logging()
    settings = _settings()
    uvicorn.run(
        "taskwatch.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        factory=True,
    )


@app.command()
def version() -> None:
    from taskwatch import __version__

    typer.echo(__version__)


@app.command()
def sweep(
    dry_run: bool = typer.Option(False, "--dry-run", help="Only show what would be removed"),
) -> None:
    """Run the retention sweep against the local data directory."""
    _load_env()
    from taskwatch.core.service import TaskService

    service = TaskService.from_settings(_settings())
    if dry_run:
        preview = service.sweep_preview()
        for entry in preview.directories:
            typer.echo(f"{entry.action:<8} {entry.name}  ({entry.age_hours}h)  {entry.reason}")
        typer.echo(
            f"{preview.total} directories: {preview.would_delete} to delete, {preview.would_preserve} to keep"
        )
        return
    report = service.run_sweep_now()
    _echo_json(report.to_dict())


@app.command("poller-status")
def poller_status(
    host: Optional[str] = typer.Option(None, help="Gateway host"),
    port: Optional[int] = typer.Option(None, help="Gateway port"),
) -> None:
    """Show the running gateway's poller state."""
    _load_env()
    url = f"{_base_url(host, port)}/control/poller"
    try:
        resp = httpx.get(url, timeout=10.0)
        resp.raise_for_status()
    except httpx.HTTPError as exc:
        typer.echo(f"Could not reach taskwatch at {url}: {exc}", err=True)
        raise typer.Exit(code=1)
    _echo_json(resp.json())


@app.command()
def tasks(
    session: Optional[str] = typer.Option(None, "--session", help="List tasks of a session"),
    conversation: Optional[str] = typer.Option(None, "--conversation", help="List tasks of a conversation"),
    host: Optional[str] = typer.Option(None, help="Gateway host"),
    port: Optional[int] = typer.Option(None, help="Gateway port"),
) -> None:
    """List tasks with their derived status."""
    _load_env()
    if bool(session) == bool(conversation):
        typer.echo("Pass exactly one of --session or --conversation", err=True)
        raise typer.Exit(code=2)
    path = f"/sessions/{session}/tasks" if session else f"/conversations/{conversation}/tasks"
    url = f"{_base_url(host, port)}{path}"
    try:
        resp = httpx.get(url, timeout=10.0)
        resp.raise_for_status()
    except httpx.HTTPError as exc:
        typer.echo(f"Could not reach taskwatch at {url}: {exc}", err=True)
        raise typer.Exit(code=1)
    rows = resp.json()
    if not rows:
        typer.echo("No tasks.")
        return
    for row in rows:
        code = "" if row.get("exit_code") is None else f" (exit {row['exit_code']})"
        typer.echo(f"{row['id']}  {row['status']}{code}  {row['correlation_id']}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
