from __future__ import annotations

from pathlib import Path

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from clademap.environment import REQUIRED_TOOLS, resolve_tool
from clademap.exceptions import CladeMapError, ExecutableNotFoundError
from clademap.logging import configure_logging, get_logger
from clademap.runners.base import ToolRunner

app = typer.Typer(help="Check that the external tools can be found.")
console = Console()


def run_check(
    *,
    versions: bool,
    log_file: Path | None,
    verbose: bool,
    quiet: bool,
) -> int:
    try:
        configure_logging(verbose=verbose, quiet=quiet, log_file=log_file)
        logger = get_logger("clademap.check")

        table = Table(title="[bold]External tools[/bold]", box=box.SIMPLE_HEAVY, expand=False)
        table.add_column("Tool", style="bold cyan")
        table.add_column("Variable")
        table.add_column("Found via")
        table.add_column("Path")
        if versions:
            table.add_column("Version")

        missing: list[ExecutableNotFoundError] = []
        for spec in REQUIRED_TOOLS:
            try:
                tool = resolve_tool(spec)
            except ExecutableNotFoundError as exc:
                missing.append(exc)
                row = [spec.name, spec.env_var, "[red]missing[/red]", ", ".join(spec.executables)]
                if versions:
                    row.append("")
                table.add_row(*row)
                continue

            row = [spec.name, spec.env_var, tool.source, str(tool.path)]
            if versions:
                row.append(ToolRunner(tool.path, timeout=30).version())
            table.add_row(*row)

        console.print(table)

        if missing:
            for exc in missing:
                logger.error("%s", exc)
            return missing[0].exit_code
        return 0

    except CladeMapError as exc:
        console.print(f"[red]{exc.label}:[/red] {exc}")
        return exc.exit_code


@app.callback(invoke_without_command=True)
def check_callback(
    ctx: typer.Context,
    versions: bool = typer.Option(False, "--versions", help="Also query each tool for its version."),
    log_file: Path | None = typer.Option(None, "--log-file", help="Write JSON logs to this file."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose logging."),
    quiet: bool = typer.Option(False, "--quiet", help="Only show errors."),
) -> None:
    if ctx.invoked_subcommand is not None:
        return

    exit_code = run_check(versions=versions, log_file=log_file, verbose=verbose, quiet=quiet)
    raise typer.Exit(exit_code)
