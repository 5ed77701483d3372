"""CLI for the imgopt worker."""

from __future__ import annotations

import dataclasses
import logging
import signal
import sys
import threading
from pathlib import Path

import click

from imgopt_shared.errors import BackendUnavailable, StoreUnavailable
from imgopt_shared.files import EXTENSION_MIME_TYPES, collect_images
from imgopt_shared.models import ConversionSettings, JobStatus

from .app import Application, create_app
from .config import WorkerConfig, load_settings

logger = logging.getLogger(__name__)

CONVERT_PRIORITY = 100


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def _app(ctx: click.Context) -> Application:
    obj = ctx.find_root().obj
    if "app" not in obj:
        try:
            obj["app"] = create_app(obj["config"])
        except StoreUnavailable as e:
            click.echo(f"Error: {e}", err=True)
            ctx.exit(1)
        ctx.find_root().call_on_close(obj["app"].close)
    return obj["app"]


def _settings(ctx: click.Context, **overrides: object) -> ConversionSettings:
    obj = ctx.find_root().obj
    try:
        return load_settings(obj["config"].settings_file, overrides)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _install_stop_handlers(stop: threading.Event) -> dict[int, object]:
    """Make SIGINT/SIGTERM set stop; returns the handlers they replaced."""

    def handle(signum: int, _frame: object) -> None:
        logger.info("Received %s, stopping after the current item", signal.Signals(signum).name)
        stop.set()

    return {sig: signal.signal(sig, handle) for sig in (signal.SIGINT, signal.SIGTERM)}


@click.group()
@click.option("--settings", "settings_file", type=click.Path(dir_okay=False, path_type=Path),
              help="JSON settings file")
@click.option("--database-url", help="Queue database URL")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, settings_file: Path | None, database_url: str | None, verbose: bool) -> None:
    """Convert queued images to WebP and AVIF."""
    _setup_logging(verbose)

    config = WorkerConfig.load()
    changes: dict[str, object] = {}
    if settings_file is not None:
        changes["settings_file"] = settings_file
    if database_url:
        changes["database_url"] = database_url
    if changes:
        config = dataclasses.replace(config, **changes)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path(path_type=Path))
@click.option("-p", "--priority", default=0, type=int, help="Higher runs first")
@click.option("-r", "--recursive", is_flag=True, help="Scan directories recursively")
@click.pass_context
def enqueue(ctx: click.Context, paths: tuple[Path, ...], priority: int, recursive: bool) -> None:
    """Queue image files, or every image in the given directories."""
    settings = _settings(ctx)
    exts = frozenset(
        ext for ext, mime in EXTENSION_MIME_TYPES.items() if mime in settings.allowed_mime_types
    )
    images = collect_images(paths, recursive=recursive, exts=exts)
    if not images:
        click.echo("No images found.")
        return

    report = _app(ctx).store.enqueue_many((str(p) for p in images), priority=priority)
    click.echo(f"Queued {report.added} images ({report.skipped} already queued).")


@cli.command()
@click.option("-b", "--batch-size", type=int, help="Jobs claimed per batch")
@click.option("-t", "--max-time", type=float, help="Wall-clock budget in seconds")
@click.option("--once", is_flag=True, help="Process a single batch")
@click.option("--watch", is_flag=True, help="Keep polling the queue")
@click.option("--interval", type=float, help="Seconds between polls in watch mode")
@click.pass_context
def run(
    ctx: click.Context,
    batch_size: int | None,
    max_time: float | None,
    once: bool,
    watch: bool,
    interval: float | None,
) -> None:
    """Process queued jobs."""
    settings = _settings(ctx, batch_size=batch_size, max_execution_time=max_time)
    app = _app(ctx)
    interval = interval if interval is not None else app.config.poll_interval

    stop = threading.Event()
    previous = _install_stop_handlers(stop)
    try:
        while True:
            try:
                summary = app.runner.run(settings, stop, max_batches=1 if once else None)
            except BackendUnavailable as e:
                click.echo(f"Error: {e}", err=True)
                ctx.exit(2)
            except StoreUnavailable as e:
                click.echo(f"Error: {e}", err=True)
                ctx.exit(1)

            click.echo(
                f"Processed {summary.processed}: {summary.completed} completed, "
                f"{summary.retried} retried, {summary.failed} failed, "
                f"{summary.bytes_saved} bytes saved ({summary.stop_reason})"
            )
            if not watch or stop.wait(interval):
                break
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def convert(ctx: click.Context, path: Path) -> None:
    """Convert one image now, through the queue."""
    settings = _settings(ctx)
    app = _app(ctx)

    try:
        app.engine.prepare(settings)
    except BackendUnavailable as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(2)

    job_id = app.store.enqueue(str(path.resolve()), priority=CONVERT_PRIORITY)
    job = app.store.claim(job_id)
    if job is None:
        click.echo(f"Job {job_id} is already being processed.")
        return

    event = app.runner.process_job(job, settings)
    if event.outcome == "completed":
        click.echo(f"{path.name}: {', '.join(event.formats) or event.message} ({event.bytes_saved} bytes saved)")
        for fmt, error in sorted(event.errors.items()):
            click.echo(f"  skipped {fmt}: {error}")
        return

    click.echo(f"{path.name}: {event.message}", err=True)
    ctx.exit(1)


@cli.command()
@click.option("-d", "--detailed", is_flag=True, help="Include statistics and failures")
@click.pass_context
def status(ctx: click.Context, detailed: bool) -> None:
    """Show queue counts."""
    app = _app(ctx)
    counts = app.store.stats()
    for name in [s.value for s in JobStatus] + ["total"]:
        click.echo(f"{name:>10}: {counts[name]}")

    if not detailed:
        return

    stats = app.store.statistics()
    click.echo(f"\nAverage processing time: {stats['avg_processing_time']}s")
    click.echo(f"Success rate: {stats['success_rate']}%")
    click.echo(f"Processed today: {stats['processed_today']}")

    failed = app.store.list_jobs(JobStatus.FAILED, limit=10)
    if failed:
        click.echo("\nRecent failures:")
        for job in failed:
            click.echo(f"  #{job.id} {job.source_ref} ({job.attempts} attempts): {job.error_message}")


@cli.command()
@click.option("-s", "--status", "status_filter",
              type=click.Choice([s.value for s in JobStatus]), help="Only jobs with this status")
@click.pass_context
def clear(ctx: click.Context, status_filter: str | None) -> None:
    """Delete jobs from the queue."""
    count = _app(ctx).store.clear(status_filter)
    click.echo(f"Removed {count} jobs.")


@cli.command()
@click.option("--days", type=int, help="Keep completed jobs this many days")
@click.option("--log-days", type=int, help="Keep activity log rows this many days")
@click.pass_context
def cleanup(ctx: click.Context, days: int | None, log_days: int | None) -> None:
    """Delete old completed jobs and activity log rows."""
    app = _app(ctx)
    jobs = app.store.cleanup_completed(days if days is not None else app.config.completed_retention_days)
    logs = app.activity.cleanup(log_days if log_days is not None else app.config.log_retention_days)
    click.echo(f"Removed {jobs} completed jobs and {logs} log entries.")


@cli.command()
@click.pass_context
def backends(ctx: click.Context) -> None:
    """List detected image backends."""
    settings = _settings(ctx)
    app = _app(ctx)
    try:
        app.engine.prepare(settings)
    except BackendUnavailable as e:
        click.echo(f"Warning: {e}", err=True)

    found = app.engine.registry.describe()
    if not found:
        click.echo("No image backends available.")
        ctx.exit(2)

    for info in found:
        marker = " (selected)" if info["selected"] else ""
        formats = ", ".join(info["formats"]) or "none"
        click.echo(f"{info['name']} {info['version']}: {formats}{marker}")
        if info["failed"]:
            click.echo(f"  failed self-test: {', '.join(info['failed'])}")

    unsupported = app.engine.registry.unsupported
    if unsupported:
        click.echo(f"Unsupported this session: {', '.join(sorted(unsupported))}")


@cli.command()
@click.option("-n", "--limit", default=20, type=int, help="Number of entries")
@click.option("--stats", "show_stats", is_flag=True, help="Show aggregate statistics")
@click.pass_context
def logs(ctx: click.Context, limit: int, show_stats: bool) -> None:
    """Show recent activity."""
    app = _app(ctx)
    if show_stats:
        stats = app.activity.statistics()
        click.echo(f"Entries: {stats['total']}")
        for name, count in sorted(stats["by_status"].items()):
            click.echo(f"  {name}: {count}")
        click.echo(f"Average execution time: {stats['avg_execution_time']}s")
        click.echo(f"Largest peak memory increase: {stats['max_memory_delta']} bytes")
        return

    for row in app.activity.recent(limit):
        source = f" {row.source_ref}" if row.source_ref else ""
        click.echo(f"{row.created_at:%Y-%m-%d %H:%M:%S} [{row.status}] {row.action}{source}: {row.message}")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
