from __future__ import annotations

import asyncio
import json
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from loguru import logger

from . import __version__
from .config import ForwarderSettings, get_settings
from .pipeline import App, ConfigConflictError
from .state import FileStateStore

app = typer.Typer(help="Audit event forwarder CLI")


async def _run(forwarder: App) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, forwarder.terminate)
        except NotImplementedError:  # Windows
            pass
    await forwarder.run()


@app.command()
def start(
    sink_url: Optional[str] = typer.Option(None, "--sink-url", help="Main audit log destination URL"),
    session_sink_url: Optional[str] = typer.Option(
        None, "--session-sink-url", help="Session events base URL (<url>.<sid>.log)"
    ),
    source_dir: Optional[Path] = typer.Option(None, "--source-dir", help="Audit log directory"),
    storage_dir: Optional[Path] = typer.Option(None, "--storage", help="Progress storage directory"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Parallel session replays"),
    skip_session_types: Optional[str] = typer.Option(
        None, "--skip-session-types", help="Comma-separated session event types not to send"
    ),
    start_time: Optional[datetime] = typer.Option(
        None, "--start-time", help="Ingest events from this time (fixed once persisted)"
    ),
    follow: Optional[bool] = typer.Option(None, "--follow/--no-follow", help="Tail the audit log"),
    dry_run: Optional[bool] = typer.Option(None, "--dry-run", help="Do not send events to the sink"),
    metrics_port: Optional[int] = typer.Option(None, "--metrics-port", help="Expose Prometheus metrics"),
):
    """Start exporting events. Flags override FORWARDER_* settings."""
    overrides = {
        "sink_url": sink_url,
        "session_sink_url": session_sink_url,
        "source_dir": source_dir,
        "storage_dir": storage_dir,
        "concurrency": concurrency,
        "skip_session_types": skip_session_types,
        "start_time": start_time,
        "follow": follow,
        "dry_run": dry_run,
        "metrics_port": metrics_port,
    }
    settings = ForwarderSettings(**{k: v for k, v in overrides.items() if v is not None})

    if settings.metrics_port:
        from prometheus_client import start_http_server

        start_http_server(settings.metrics_port)
        logger.info(f"Metrics exposed on :{settings.metrics_port}")

    try:
        asyncio.run(_run(App(settings)))
    except ConfigConflictError as e:
        logger.error(str(e))
        sys.exit(2)
    except ExceptionGroup as eg:
        for exc in eg.exceptions:
            logger.error(f"{type(exc).__name__}: {exc}")
        sys.exit(1)


@app.command()
def state(
    storage_dir: Optional[Path] = typer.Option(None, "--storage", help="Progress storage directory"),
):
    """Print persisted progress as JSON."""
    storage_dir = storage_dir or get_settings().storage_dir
    if not storage_dir.exists():
        logger.error(f"Storage directory not found: {storage_dir}")
        sys.exit(1)

    store = FileStateStore(storage_dir, mkdirs=False)
    start = store.get_start_time()
    typer.echo(
        json.dumps(
            {
                "cursor": store.get_cursor(),
                "id": store.get_last_id(),
                "start_time": start.isoformat() if start else None,
                "sessions": store.get_sessions(),
            },
            indent=2,
        )
    )


@app.command()
def version():
    """Print version."""
    typer.echo(__version__)


if __name__ == "__main__":
    app()
