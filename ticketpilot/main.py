"""TicketPilot CLI entrypoint."""

import asyncio
import os
import sys
from pathlib import Path
from typing import Optional

import click

from .config.loader import ConfigError, create_default_config, load_config
from .config.models import TicketPilotConfig
from .utils.cleanup import cleanup_logs, cleanup_workspaces
from .utils.logging import setup_logging

CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
}

DEFAULT_CONFIG_PATH = Path(".ticketpilot/config.yml")


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "--config",
    "-c",
    default=None,
    envvar="TICKETPILOT_CONFIG",
    help="Path to configuration file (default: .ticketpilot/config.yml if present)",
    type=click.Path(exists=False, path_type=Path),
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose output",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[Path], verbose: bool) -> None:
    """TicketPilot - human-gated ticket to pull request automation."""
    log_level = "DEBUG" if verbose else "INFO"
    setup_logging(level=log_level)

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose


def _load(ctx: click.Context) -> TicketPilotConfig:
    """Load configuration or exit with status 1."""
    config_path: Optional[Path] = ctx.obj["config_path"]
    if config_path is None and DEFAULT_CONFIG_PATH.exists():
        config_path = DEFAULT_CONFIG_PATH
    try:
        return load_config(config_path)
    except ConfigError as e:
        click.echo(f"✗ Configuration error: {e}", err=True)
        sys.exit(1)


def _setup_process_logging(ctx: click.Context, config: TicketPilotConfig, process_name: str) -> None:
    setup_logging(
        level="DEBUG" if ctx.obj["verbose"] else config.logging.level,
        log_dir=config.logging.log_dir,
        rotation_mb=config.logging.rotation_mb,
        retention_days=config.logging.retention_days,
        process_name=process_name,
    )


@cli.command()
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing configuration",
)
@click.pass_context
def init(ctx: click.Context, force: bool) -> None:
    """Write a default configuration file."""
    config_path: Path = ctx.obj["config_path"] or DEFAULT_CONFIG_PATH

    if config_path.exists() and not force:
        click.echo(f"Configuration already exists: {config_path}")
        click.echo("Use --force to overwrite")
        sys.exit(1)

    try:
        create_default_config(config_path)
    except OSError as e:
        click.echo(f"✗ Failed to create configuration: {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ Created configuration: {config_path}")
    click.echo("\nNext steps:")
    click.echo(f"  1. Review and customize {config_path}")
    click.echo("  2. Export LINEAR_WEBHOOK_SECRET, LINEAR_API_KEY and GITHUB_TOKEN")
    click.echo("  3. Run: ticketpilot serve   (webhook server)")
    click.echo("  4. Run: ticketpilot worker  (job worker)")


@cli.command()
@click.option("--host", default=None, help="Bind address (overrides config)")
@click.option("--port", default=None, type=int, help="Bind port (overrides config)")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the webhook server."""
    import uvicorn

    from .server import create_app
    from .services import build_services

    config = _load(ctx)
    _setup_process_logging(ctx, config, "server")
    if not config.server.webhook_secret:
        click.echo("⚠ LINEAR_WEBHOOK_SECRET is not set; every webhook will be rejected", err=True)

    app = create_app(build_services(config))
    uvicorn.run(
        app,
        host=host or config.server.host,
        port=port or config.server.port,
        log_config=None,
    )


@cli.command()
@click.option("--concurrency", default=None, type=int, help="Jobs processed at once (overrides config)")
@click.option("--once", is_flag=True, help="Process at most one job, then exit")
@click.pass_context
def worker(ctx: click.Context, concurrency: Optional[int], once: bool) -> None:
    """Run a job worker until SIGINT/SIGTERM."""
    from .dispatcher.worker import Worker
    from .executor.processor import JobProcessor
    from .services import build_services

    config = _load(ctx)
    _setup_process_logging(ctx, config, "worker")

    services = build_services(config)
    processor = JobProcessor.from_config(
        config, services.plan_store, services.tracker, services.reconciler
    )
    job_worker = Worker(
        services.queue,
        processor,
        services.tracker,
        services.reconciler,
        limiter=services.limiter,
        markers=services.markers,
        concurrency=concurrency or config.queue.concurrency,
        lock_duration_sec=config.queue.lock_duration_sec,
        lock_renew_sec=config.queue.lock_renew_sec,
        poll_interval_sec=config.queue.poll_interval_sec,
    )

    if once:
        record = asyncio.run(job_worker.run_once())
        if record is None:
            click.echo("No job ready")
            return
        click.echo(f"Job {record.job_id}: {record.status.value}")
        sys.exit(1 if record.is_terminal_failure else 0)

    asyncio.run(job_worker.run(handle_signals=True))


@cli.command()
@click.option("--limit", default=10, help="Recent jobs to show")
@click.pass_context
def status(ctx: click.Context, limit: int) -> None:
    """Show queue counts and recent jobs."""
    from .services import build_services

    config = _load(ctx)
    services = build_services(config)
    queue = services.queue

    click.echo(f"Queue: {queue.name}")
    for job_status, count in queue.counts().items():
        click.echo(f"  {job_status:<10} {count}")

    jobs = queue.list_jobs(limit=limit)
    if not jobs:
        click.echo("\nNo jobs")
        return
    click.echo("\nRecent jobs:")
    for job in jobs:
        line = (
            f"  {job.job_id}  {job.status.value:<10} "
            f"attempt {job.attempts_made}/{job.max_attempts}"
        )
        if job.failed_reason:
            line += f"  ({job.failed_reason.splitlines()[0][:80]})"
        click.echo(line)


@cli.command()
@click.option(
    "--max-age-hours",
    default=None,
    type=float,
    help="Remove workspaces older than this (default: workspace.stale_after_hours)",
)
@click.option(
    "--logs",
    is_flag=True,
    help="Remove the log directory",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="List paths that would be removed without deleting anything",
)
@click.pass_context
def cleanup(ctx: click.Context, max_age_hours: Optional[float], logs: bool, dry_run: bool) -> None:
    """Remove workspaces left behind by killed workers and expired records."""
    config = _load(ctx)

    result = cleanup_workspaces(
        config.workspace.base_dir,
        max_age_hours=max_age_hours if max_age_hours is not None else config.workspace.stale_after_hours,
        dry_run=dry_run,
    )
    removed = list(result.removed)
    errors = list(result.errors)

    if logs and config.logging.log_dir is not None:
        log_result = cleanup_logs(config.logging.log_dir, dry_run=dry_run)
        removed.extend(log_result.removed)
        errors.extend(log_result.errors)

    if removed:
        click.echo("\nRemoved:" if not dry_run else "\nWould remove:")
        for path in removed:
            click.echo(f"  {path}")
    else:
        click.echo("No paths removed")

    if not dry_run and Path(config.storage.db_path).exists():
        from .storage.db import open_engine
        from .storage.kv import TTLStore

        purged = TTLStore(open_engine(config.storage.db_path)).purge_expired()
        click.echo(f"Purged {purged} expired record(s)")

    if errors:
        click.echo("\nErrors:")
        for error in errors:
            click.echo(f"  {error}")


def main() -> None:
    cli(prog_name=os.environ.get("TICKETPILOT_PROG", "ticketpilot"))


if __name__ == "__main__":
    main()
