"""genqueue CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from genqueue.runtime import Runtime

# Import command modules
from .commands import jobs, tasks
from .utils.runtime import run_with_runtime

console = Console()

# Create main Typer app
app = typer.Typer(
    name="genqueue",
    help="⚙️ genqueue - background jobs and generation tasks",
    rich_markup_mode="rich",
)

# Add command subapps
app.add_typer(jobs.app, name="jobs")
app.add_typer(tasks.app, name="tasks")


@app.command()
def status():
    """📊 Check storage connectivity and queue state"""

    async def action(runtime: Runtime):
        stats = await runtime.scheduler.get_statistics()
        return runtime.settings, stats

    settings, stats = run_with_runtime(action)
    console.print(Panel(
        f"🚀 [green]Storage reachable[/green]\n\n"
        f"• Version: [cyan]{settings.version}[/cyan]\n"
        f"• Environment: [yellow]{settings.environment}[/yellow]\n"
        f"• Queue depth: [blue]{stats['queue_depth']}[/blue]\n"
        f"• Processing: [blue]{stats['processing']}[/blue]\n"
        f"• Handlers: [magenta]{len(stats['registered_handlers'])}[/magenta]",
        title="System Status",
        border_style="green"
    ))


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(Panel(
        f"⚙️ [bold cyan]genqueue CLI[/bold cyan]\n\n"
        f"• Version: [green]{__version__}[/green]",
        title="Version Info",
        border_style="cyan"
    ))


if __name__ == "__main__":
    app()
