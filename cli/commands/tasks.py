"""Tasks Commands - Generation task lifecycle"""

import typer
from rich.console import Console
from rich.panel import Panel

from genqueue.runtime import Runtime
from genqueue.v1.tasks.schemas import TaskStatus

from ..utils.formatting import (
    create_tasks_table,
    display_task_status,
    print_error,
    print_info,
    print_success,
    print_warning,
)
from ..utils.runtime import run_with_runtime

console = Console()
app = typer.Typer(name="tasks", help="Generation task commands")

BULK_ACTIONS = ("run", "cancel", "retry", "delete", "pause", "resume", "priority")


@app.command("create")
def create(
    workflow_type: str = typer.Argument(..., help="Workflow type"),
    item_ids: list[str] = typer.Argument(..., help="Item IDs to generate"),
    priority: int = typer.Option(10, "--priority", "-p", min=1, max=100),
    source: str = typer.Option("manual", "--source", help="Who asked for the task"),
    start: bool = typer.Option(True, "--start/--no-start", help="Queue batches now"),
):
    """➕ Create a generation task"""

    async def action(runtime: Runtime):
        return await runtime.tasks.create_task(
            workflow_type, item_ids, priority=priority, source=source, start=start
        )

    task = run_with_runtime(action)
    print_success(
        f"Created task {task.id} with {task.total_items} item(s) "
        f"in {len(task.batch_jobs)} batch(es), status {task.status.value}"
    )


@app.command("list")
def list_tasks(
    status: TaskStatus | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    workflow_type: str | None = typer.Option(None, "--workflow", "-w", help="Filter by workflow"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of tasks to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N tasks"),
):
    """📋 List generation tasks"""

    async def action(runtime: Runtime):
        tasks, total = await runtime.tasks.list_tasks(
            [status] if status else None, workflow_type, limit, offset
        )
        return [task.to_status_dict() for task in tasks], total

    tasks, total = run_with_runtime(action)
    if not tasks:
        print_info("No generation tasks found")
        return

    console.print(create_tasks_table(tasks))
    console.print(f"\n📊 Showing [cyan]{len(tasks)}[/cyan] of [yellow]{total}[/yellow] tasks")


@app.command("show")
def show(task_id: str = typer.Argument(..., help="Task ID")):
    """🔍 Show a task and its batches"""

    async def action(runtime: Runtime):
        return await runtime.tasks.get_task_status(task_id)

    display_task_status(run_with_runtime(action))


@app.command("action")
def bulk_action(
    action_name: str = typer.Argument(..., metavar="ACTION", help=f"One of: {', '.join(BULK_ACTIONS)}"),
    task_ids: list[str] = typer.Argument(..., help="Task IDs"),
    priority: int | None = typer.Option(None, "--priority", "-p", min=1, max=100),
):
    """⚙️ Apply run/cancel/retry/delete/pause/resume/priority to tasks"""
    if action_name not in BULK_ACTIONS:
        print_error(f"Unknown action '{action_name}'. Choose from: {', '.join(BULK_ACTIONS)}")
        raise typer.Exit(1)

    async def action(runtime: Runtime):
        return await runtime.tasks.bulk_action(action_name, task_ids, priority=priority)

    result = run_with_runtime(action)
    if result.applied:
        print_success(f"{action_name} applied to {len(result.applied)} task(s)")
    for task_id, reason in result.skipped.items():
        print_warning(f"Skipped {task_id}: {reason}")
    for task_id, error in result.errors.items():
        print_error(f"Failed {task_id}: {error}")
    if result.errors:
        raise typer.Exit(1)


@app.command("polling")
def polling():
    """🔄 Show the completion polling queue"""

    async def action(runtime: Runtime):
        return await runtime.polling.get_queue_status()

    status = run_with_runtime(action)
    by_status = ", ".join(f"{name}: {count}" for name, count in status["by_status"].items())
    upcoming = "\n".join(
        f"• [cyan]{entry['generation_id']}[/cyan] attempts {entry['attempts']}"
        for entry in status["next"]
    )
    console.print(Panel(
        f"Total: [yellow]{status['total']}[/yellow] ({by_status})\n\n{upcoming or 'Nothing due'}",
        title="Polling Queue",
        border_style="cyan",
    ))
