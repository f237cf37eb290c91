import asyncio
from typing import Awaitable, Callable, TypeVar

import click

from .cancellation import CancelOutcome
from .errors import BackupSchedulerError
from .log import configure_logging
from .runtime import Runtime, create_runtime
from .settings import Settings

T = TypeVar("T")


def _run(settings: Settings, action: Callable[[Runtime], Awaitable[T]]) -> T:
    async def main() -> T:
        runtime = await create_runtime(settings)
        try:
            return await action(runtime)
        finally:
            await runtime.close()

    try:
        return asyncio.run(main())
    except BackupSchedulerError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def cli(ctx, log_level):
    """backup-scheduler - queue processor and housekeeping for backup jobs"""
    settings = ctx.obj if isinstance(ctx.obj, Settings) else Settings()
    if log_level:
        settings.log_level = log_level
    configure_logging(settings.log_level)
    ctx.obj = settings


# ---------------- Run ----------------
@cli.command()
@click.pass_obj
def run(settings):
    """Run one processing pass: schedules, queue, retention"""
    result = _run(settings, lambda runtime: runtime.processor.run_pass())
    if result.skipped:
        click.echo(result.message)
        return
    for schedule_id, job_id in result.scheduled.items():
        click.echo(f"Schedule {schedule_id} queued job {job_id}")
    for job_id in result.recovered:
        click.echo(f"Recovered interrupted job {job_id}")
    for job_id, status in result.results.items():
        click.echo(f"Job {job_id}: {status.value}")
    click.echo(result.message)


# ---------------- Cleanup ----------------
@cli.command()
@click.option("--days", default=None, type=int, help="Age in days (defaults to completed_retention_days)")
@click.pass_obj
def cleanup(settings, days):
    """Delete finished job records older than N days"""
    days = settings.completed_retention_days if days is None else days
    cleaned = _run(settings, lambda runtime: runtime.service.cleanup_completed_jobs(days))
    click.echo(f"Removed {cleaned} finished job record(s) older than {days} days.")


# ---------------- Status ----------------
@cli.command()
@click.pass_obj
def status(settings):
    """Show queue counts and whether a pass is running"""
    async def collect(runtime: Runtime):
        return await runtime.service.get_stats(), await runtime.processor.is_running()

    stats, running = _run(settings, collect)
    click.echo(f"Queued:     {stats.queued}")
    click.echo(f"Processing: {stats.processing}")
    click.echo(f"Completed:  {stats.completed}")
    click.echo(f"Failed:     {stats.failed}")
    click.echo(f"Cancelled:  {stats.cancelled}")
    click.echo(f"Processor:  {'running' if running else 'idle'}")


# ---------------- Cancel ----------------
@cli.command()
@click.argument("job_id")
@click.pass_obj
def cancel(settings, job_id):
    """Cancel a queued or running job"""
    outcome = _run(settings, lambda runtime: runtime.service.request_cancel(job_id, settings.root_user))
    if outcome == CancelOutcome.REMOVED:
        click.echo(f"Job {job_id} removed from queue.")
    else:
        click.echo(f"Cancellation requested for job {job_id}; it stops after the current account.")


def main():
    cli()


if __name__ == "__main__":
    main()
