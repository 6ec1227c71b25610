from __future__ import annotations

from pathlib import Path
from typing import Sequence

from clademap.runners.base import ToolRunner
from clademap.utils.subprocess import CommandResult


class TrimalRunner(ToolRunner):
    """Wrapper around trimAl column filtering."""

    def __init__(self, executable: str | Path = "trimal", **kwargs) -> None:
        super().__init__(executable, **kwargs)

    def trim(
        self,
        *,
        input_fasta: Path,
        output_fasta: Path,
        mode: str,
        extra_args: Sequence[str] = (),
        dry_run: bool = False,
    ) -> CommandResult:
        return self.run(
            ["-in", input_fasta, "-out", output_fasta, "-fasta", f"-{mode}", *extra_args],
            dry_run=dry_run,
        )
