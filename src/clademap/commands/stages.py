from __future__ import annotations

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from clademap.pipeline.artifacts import MANIFEST_NAME
from clademap.pipeline.steps import STAGE_SPECS

app = typer.Typer(help="List the pipeline stages in execution order.")
console = Console()


@app.callback(invoke_without_command=True)
def stages_callback(ctx: typer.Context) -> None:
    if ctx.invoked_subcommand is not None:
        return

    table = Table(title="[bold]Pipeline stages[/bold]", box=box.SIMPLE_HEAVY, expand=False)
    table.add_column("#", style="bold cyan", justify="right")
    table.add_column("Stage")
    table.add_column("Consumes")
    table.add_column("Artifact manifest", style="dim")
    table.add_column("Description")
    for spec in STAGE_SPECS:
        table.add_row(
            str(spec.stage.index + 1),
            spec.stage.value,
            ", ".join(required.value for required in spec.requires) or "manifest inputs",
            f"{spec.stage.value}/{MANIFEST_NAME}",
            spec.description,
        )
    console.print(table)
