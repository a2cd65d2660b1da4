from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from typing import Optional

import typer
import uvicorn

from fileforge import __version__
from fileforge.config import get_settings

app = typer.Typer(add_completion=False, help="FileForge CLI")


@app.callback()
def _root() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def start(
    host: Optional[str] = typer.Option(None, help="Bind host"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
    reload: bool = typer.Option(False, help="Auto-reload on changes (dev)"),
) -> None:
    settings = get_settings()
    uvicorn.run(
        "fileforge.api.app:app",
        host=host or settings.HOST,
        port=port or settings.PORT,
        reload=reload,
    )


@app.command()
def version() -> None:
    typer.echo(__version__)


@app.command()
def worker(
    worker_id: Optional[str] = typer.Option(None, help="Worker id"),
    concurrency: Optional[int] = typer.Option(None, help="Executor slots"),
    poll_interval: Optional[float] = typer.Option(None, help="Poll interval seconds"),
    once: bool = typer.Option(False, help="Process one task then exit"),
) -> None:
    """
    Run the conversion worker pool.

    Converters are discovered through the ``fileforge.converters`` entry point
    group; a category without a converter fails its tasks permanently.
    """
    from fileforge.conversion_engine.services.converter_registry import ConverterRegistry
    from fileforge.conversion_engine.services.worker_pool import WorkerPool
    from fileforge.conversion_engine.storage import get_storage_provider
    from fileforge.database import init_db

    settings = get_settings()
    if settings.SCHEMA_MODE != "migrations":
        init_db(create_tables=True)

    registry = ConverterRegistry()
    loaded = registry.load_entry_points()
    if not loaded:
        typer.echo("Warning: no converters registered.", err=True)

    pool = WorkerPool(
        registry,
        get_storage_provider(settings),
        concurrency=concurrency,
        poll_interval=poll_interval,
        worker_id=worker_id,
    )

    if once:
        if pool.run_once():
            typer.echo("Processed one task.")
        else:
            typer.echo("No eligible tasks.")
        return

    pool.start()
    typer.echo(
        f"Worker pool '{pool.worker_id}' started with {pool.concurrency} slot(s). "
        "Press Ctrl+C to stop.",
        err=True,
    )
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pool.stop()
        typer.echo(f"Worker pool '{pool.worker_id}' stopped.", err=True)


@app.command("db")
def db_command(
    action: str = typer.Argument(..., help="upgrade|downgrade|revision|current|history"),
    message: Optional[str] = typer.Option(
        None, "--message", "-m", help="Migration message (for revision)"
    ),
    autogenerate: bool = typer.Option(
        True, "--autogenerate/--no-autogenerate", help="Autogenerate migration"
    ),
    revision: Optional[str] = typer.Option(
        None, "--revision", "-r", help="Target revision (for upgrade/downgrade)"
    ),
) -> None:
    """
    Database migrations via Alembic.

    Actions:
      upgrade   - Apply migrations (default: head)
      downgrade - Revert migrations
      revision  - Create new migration
      current   - Show current revision
      history   - Show migration history
    """
    alembic_ini = os.path.join(os.getcwd(), "alembic.ini")
    if not os.path.exists(alembic_ini):
        typer.echo("Error: alembic.ini not found", err=True)
        raise typer.Exit(1)

    cmd = [sys.executable, "-m", "alembic", "-c", alembic_ini]

    if action == "upgrade":
        cmd.extend(["upgrade", revision or "head"])
    elif action == "downgrade":
        cmd.extend(["downgrade", revision or "-1"])
    elif action == "revision":
        cmd.append("revision")
        if autogenerate:
            cmd.append("--autogenerate")
        cmd.extend(["-m", message or "auto migration"])
    elif action in ("current", "history"):
        cmd.append(action)
    else:
        typer.echo(f"Unknown action: {action}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Running: {' '.join(cmd)}", err=True)
    result = subprocess.run(cmd, cwd=os.getcwd())
    raise typer.Exit(result.returncode)


@app.command("init-db")
def init_db_command() -> None:
    """Create the job and queue tables (SCHEMA_MODE=create_all)."""
    from fileforge.database import init_db

    init_db(create_tables=True)
    typer.echo("Database initialized.")


@app.command("init-storage")
def init_storage() -> None:
    """
    Prepare the configured storage backend.

    Creates the local storage directory, or the S3/MinIO bucket if missing.
    """
    from fileforge.conversion_engine.storage import S3StorageProvider, get_storage_provider

    settings = get_settings()
    try:
        storage = get_storage_provider(settings)
    except ImportError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if isinstance(storage, S3StorageProvider):
        try:
            created = storage.ensure_bucket()
        except Exception as e:
            typer.echo(f"Error initializing bucket: {e}", err=True)
            raise typer.Exit(1)
        if created:
            typer.echo(f"Created bucket '{storage.bucket_name}'.")
        else:
            typer.echo(f"Bucket '{storage.bucket_name}' already exists.")
        return

    typer.echo(f"Local storage ready at {settings.LOCAL_STORAGE_PATH}.")


@app.command()
def sweep() -> None:
    """Reclaim expired leases and apply every retention window once."""
    from fileforge.conversion_engine.services.job_store import JobStore
    from fileforge.conversion_engine.services.work_queue import WorkQueue
    from fileforge.conversion_engine.services.worker_pool import (
        reap_expired_leases,
        run_maintenance,
    )
    from fileforge.database import get_db_session

    with get_db_session() as session:
        queue = WorkQueue(session)
        store = JobStore(session)
        failed = reap_expired_leases(queue, store)
        removed = run_maintenance(queue, store)
    typer.echo(
        f"Failed {failed} job(s) with exhausted leases, pruned {removed['tasks']} finished "
        f"task(s), purged {removed['jobs']} expired job(s), pruned {removed['events']} event(s)."
    )


@app.command()
def stats() -> None:
    """Show the number of queue tasks per state."""
    from fileforge.conversion_engine.services.work_queue import WorkQueue
    from fileforge.database import get_db_session

    with get_db_session() as session:
        counts = WorkQueue(session).counts()
    for state, count in counts.items():
        typer.echo(f"{state}\t{count}")


@app.command("dead-tasks")
def dead_tasks(limit: int = typer.Option(50, help="Max rows")) -> None:
    """List tasks in the dead set (retained for audit)."""
    from fileforge.conversion_engine.services.work_queue import WorkQueue
    from fileforge.database import get_db_session

    with get_db_session() as session:
        tasks = WorkQueue(session).list_dead(limit=limit)
        rows = [
            (t.job_id, t.attempt_count, t.last_error_kind, t.finished_at, t.last_error)
            for t in tasks
        ]

    if not rows:
        typer.echo("No dead tasks.")
        return
    for job_id, attempts, kind, finished_at, error in rows:
        typer.echo(f"{job_id}\tattempts={attempts}\tkind={kind}\tfinished={finished_at}\t{error}")


def main() -> None:
    app()
