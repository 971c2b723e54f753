"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "queued": "blue",
    "pending": "blue",
    "processing": "yellow",
    "retrying": "magenta",
    "paused": "magenta",
    "completed": "green",
    "completed_with_errors": "yellow",
    "failed": "red",
    "failed_permanent": "red",
    "timed_out": "red",
    "cancelled": "dim",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def create_jobs_table(jobs: list[dict[str, Any]]) -> Table:
    """Create a formatted table for a jobs list"""
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Priority", justify="right")
    table.add_column("Attempts", justify="center")
    table.add_column("Progress", justify="right", style="yellow")
    table.add_column("Scheduled", justify="left", style="blue")

    for job in jobs:
        table.add_row(
            job["id"][:8],  # Short ID
            job["type"],
            styled_status(job["status"]),
            str(job["priority"]),
            f"{job['attempts']}/{job['max_attempts']}",
            f"{job['progress']}%",
            job.get("scheduled_at") or "—",
        )

    return table


def create_tasks_table(tasks: list[dict[str, Any]]) -> Table:
    """Create a formatted table for generation tasks"""
    table = Table(title="Generation Tasks", box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Workflow", justify="left", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Priority", justify="right")
    table.add_column("Progress", justify="right", style="yellow")
    table.add_column("Items", justify="center")
    table.add_column("Retries", justify="center")

    for task in tasks:
        table.add_row(
            task["id"],
            task["workflow_type"],
            styled_status(task["status"]),
            str(task["priority"]),
            f"{task['progress']:.2f}%",
            f"{task['processed_count']}/{task['total_items']}",
            f"{task['retry_count']}/{task['max_retries']}",
        )

    return table


def create_stats_panel(stats: dict[str, Any]) -> Panel:
    """Create formatted panel for queue statistics"""
    by_status = "\n".join(
        f"  • {styled_status(status)}: {count}"
        for status, count in stats.get("by_status", {}).items()
    )
    by_type = "\n".join(
        f"  • [magenta]{job_type}[/magenta]: {count}"
        for job_type, count in stats.get("by_type", {}).items()
    )
    handlers = ", ".join(stats.get("registered_handlers", [])) or "—"

    content = f"""
📊 [bold blue]Last {stats.get("window_hours", 0)} hours[/bold blue]

• Total jobs: [green]{stats.get("total_jobs", 0)}[/green]
• Queue depth: [yellow]{stats.get("queue_depth", 0)}[/yellow]
• Processing: [cyan]{stats.get("processing", 0)}[/cyan]
• Tick lock held: {"[red]yes[/red]" if stats.get("lock_held") else "[green]no[/green]"}

[bold]By status[/bold]
{by_status or "  —"}

[bold]By type[/bold]
{by_type or "  —"}

[bold]Handlers:[/bold] {handlers}
"""

    return Panel(content.strip(), title="Job Queue Statistics", border_style="green")


def display_task_status(status: dict[str, Any]):
    """Display a task summary followed by its batches"""
    content = f"""
🆔 [bold]ID:[/bold] [cyan]{status["id"]}[/cyan]
🧩 [bold]Workflow:[/bold] [magenta]{status["workflow_type"]}[/magenta]
✅ [bold]Status:[/bold] {styled_status(status["status"])}
📈 [bold]Progress:[/bold] [yellow]{status["progress"]:.2f}%[/yellow] ({status["processed_count"]}/{status["total_items"]} items, {status["failed_count"]} failed)
🔁 [bold]Retries:[/bold] {status["retry_count"]}/{status["max_retries"]}
📅 [bold]Created:[/bold] [blue]{status["created_at"]}[/blue]
"""
    if status.get("error"):
        content += f"⚠️ [bold]Error:[/bold] [red]{status['error']}[/red]\n"

    console.print(Panel(content.strip(), title="Generation Task", border_style="blue"))

    table = Table(title="Batches", box=box.SIMPLE)
    table.add_column("#", justify="right")
    table.add_column("Batch", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Done", justify="center")
    table.add_column("Failed", justify="center")
    for batch in status.get("batch_jobs", []):
        stats = batch["stats"]
        table.add_row(
            str(batch["batch_index"]),
            batch["batch_id"],
            styled_status(batch["status"]),
            f"{stats['completed']}/{stats['total']}",
            str(stats["failed"]),
        )
    console.print(table)
