from __future__ import annotations

import platform
import sys

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from clademap import __version__
from clademap.commands import check, run, stages

console = Console()
SUBCOMMANDS = ["run", "check", "stages"]

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
    help=(
        "CladeMap maps every gene of a reference genome to its nearest supported relative "
        "and merges the calls into annotated genome blocks."
    ),
)

app.add_typer(run.app, name="run", help="Run the stage pipeline, or resume it from a stage.")
app.add_typer(check.app, name="check", help="Resolve the external tools and print where they were found.")
app.add_typer(stages.app, name="stages", help="List the pipeline stages.")


def _print_startup_intro(command_name: str) -> None:
    banner = Panel(
        f"[bold cyan]CladeMap {__version__}[/bold cyan]\n"
        "[white]Nearest-clade mapping of genome blocks[/white]",
        title="[bold]CLI Start[/bold]",
        border_style="cyan",
        expand=False,
    )
    console.print(banner)

    stats = Table(
        title="[bold]Session Summary[/bold]",
        box=box.SIMPLE_HEAVY,
        show_header=False,
        expand=False,
    )
    stats.add_column("Key", style="bold cyan")
    stats.add_column("Value", style="white")
    stats.add_row("Command", command_name)
    stats.add_row("Subcommands", str(len(SUBCOMMANDS)))
    stats.add_row("Python", sys.version.split()[0])
    stats.add_row("Platform", f"{platform.system()} {platform.release()}")
    console.print(stats)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show CladeMap version and exit."),
) -> None:
    if version:
        console.print(f"CladeMap {__version__}")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()

    _print_startup_intro(ctx.invoked_subcommand)
