"""Jobs Commands - Queue, inspect and process background jobs"""

import asyncio
import json
import signal
import sys

import typer
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from rich.console import Console
from rich.panel import Panel

from genqueue.config.logging import get_logger, setup_logging
from genqueue.runtime import Runtime

from ..utils.formatting import (
    create_jobs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
    styled_status,
)
from ..utils.runtime import build_runtime, run_with_runtime

console = Console()
logger = get_logger(__name__)
app = typer.Typer(name="jobs", help="Background job commands")


@app.command("enqueue")
def enqueue(
    job_type: str = typer.Argument(..., help="Registered job type"),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON payload"),
    priority: int | None = typer.Option(None, "--priority", help="Lower runs first"),
    delay: float = typer.Option(0, "--delay", "-d", help="Seconds before the job is ready"),
    max_attempts: int | None = typer.Option(None, "--max-attempts", help="Attempt limit"),
):
    """➕ Queue a background job"""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Payload is not valid JSON: {e}")
        raise typer.Exit(1) from None
    if not isinstance(data, dict):
        print_error("Payload must be a JSON object")
        raise typer.Exit(1)

    async def action(runtime: Runtime) -> str:
        return await runtime.scheduler.queue_job(
            job_type, data, priority=priority, delay=delay, max_attempts=max_attempts
        )

    job_id = run_with_runtime(action)
    print_success(f"Queued {job_type} job: {job_id}")


@app.command("list")
def list_jobs(
    status: str | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    job_type: str | None = typer.Option(None, "--type", "-t", help="Filter by type"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of jobs to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N jobs"),
):
    """📋 List jobs, newest first"""

    async def action(runtime: Runtime):
        jobs, total = await runtime.jobs.list_jobs(
            status=[status] if status else None, job_type=job_type, limit=limit, offset=offset
        )
        return [job.to_status_dict() for job in jobs], total

    jobs, total = run_with_runtime(action)
    if not jobs:
        print_info("No jobs found")
        return

    console.print(create_jobs_table(jobs))
    console.print(f"\n📊 Showing [cyan]{len(jobs)}[/cyan] of [yellow]{total}[/yellow] jobs")
    if offset + limit < total:
        console.print(f"💡 Use [cyan]--offset {offset + limit}[/cyan] to see more")


@app.command("status")
def job_status(job_id: str = typer.Argument(..., help="Job ID")):
    """🔍 Show a job's status"""

    async def action(runtime: Runtime):
        return await runtime.scheduler.get_job_status(job_id)

    status = run_with_runtime(action)
    if status is None:
        print_error(f"Job not found: {job_id}")
        raise typer.Exit(1)

    content = f"""
🆔 [bold]ID:[/bold] [cyan]{status["id"]}[/cyan]
📝 [bold]Type:[/bold] [magenta]{status["type"]}[/magenta]
✅ [bold]Status:[/bold] {styled_status(status["status"])}
📈 [bold]Progress:[/bold] [yellow]{status["progress"]}%[/yellow] {status["message"] or ""}
🔁 [bold]Attempts:[/bold] {status["attempts"]}/{status["max_attempts"]}
📅 [bold]Scheduled:[/bold] [blue]{status["scheduled_at"]}[/blue]
"""
    if status["last_error"]:
        content += f"⚠️ [bold]Last error:[/bold] [red]{status['last_error']}[/red]\n"
    console.print(Panel(content.strip(), title="Job Status", border_style="blue"))


@app.command("cancel")
def cancel(job_id: str = typer.Argument(..., help="Job ID")):
    """🛑 Cancel a queued or running job"""

    async def action(runtime: Runtime) -> bool:
        return await runtime.scheduler.cancel_job(job_id)

    if run_with_runtime(action):
        print_success(f"Cancelled job {job_id}")
    else:
        print_warning(f"Job {job_id} was not cancelled (missing or already finished)")
        raise typer.Exit(1)


@app.command("stats")
def stats(
    window_hours: int | None = typer.Option(None, "--window", "-w", help="Trailing hours"),
):
    """📊 Show queue statistics"""

    async def action(runtime: Runtime):
        return await runtime.scheduler.get_statistics(window_hours)

    console.print(create_stats_panel(run_with_runtime(action)))


@app.command("tick")
def tick():
    """⏱️ Process one batch of ready jobs now"""

    async def action(runtime: Runtime):
        return await runtime.scheduler.process_jobs()

    result = run_with_runtime(action)
    if result.skipped:
        print_warning("Another tick holds the processing lock; nothing was run")
        return

    for outcome in result.outcomes:
        status = outcome.status.value if outcome.status else "skipped"
        line = f"{outcome.job_type} {outcome.job_id[:8]} → {styled_status(status)}"
        if outcome.error:
            line += f" [dim]({outcome.error})[/dim]"
        console.print(line)
    print_success(f"Processed {result.processed} job(s)")


@app.command("cleanup")
def cleanup(
    retention_hours: int | None = typer.Option(
        None, "--retention", "-r", help="Keep finished jobs newer than this many hours"
    ),
):
    """🧹 Delete finished jobs past retention"""

    async def action(runtime: Runtime) -> int:
        return await runtime.scheduler.cleanup_completed_jobs(retention_hours)

    print_success(f"Deleted {run_with_runtime(action)} finished job(s)")


@app.command("worker")
def worker():
    """🚀 Run ticks, polling and maintenance on their intervals until stopped"""
    runtime = build_runtime()
    setup_logging(runtime.settings, stream=sys.stderr)
    asyncio.run(_serve(runtime))


async def _serve(runtime: Runtime) -> None:
    await runtime.startup()

    scheduler = AsyncIOScheduler(timezone="UTC")
    runtime.register_triggers(scheduler)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    scheduler.start()
    logger.info(
        "Worker started",
        process_interval_s=runtime.settings.process_interval_s,
        polling_interval_s=runtime.settings.polling_interval_s,
    )
    console.print("✅ Worker running. Press Ctrl+C to stop.")

    try:
        await stop.wait()
    finally:
        scheduler.shutdown(wait=False)
        await runtime.close()
        logger.info("Worker stopped")
