from __future__ import annotations

from pathlib import Path
from typing import Sequence

from clademap.runners.base import ToolRunner
from clademap.utils.io import write_text
from clademap.utils.subprocess import CommandResult


class MafftRunner(ToolRunner):
    """Wrapper around MAFFT; the alignment is read from stdout."""

    def __init__(self, executable: str | Path = "mafft", **kwargs) -> None:
        super().__init__(executable, **kwargs)

    def align(
        self,
        *,
        input_fasta: Path,
        output_fasta: Path,
        threads: int = 1,
        extra_args: Sequence[str] = (),
        dry_run: bool = False,
    ) -> CommandResult:
        result = self.run(
            [*extra_args, "--thread", str(threads), "--quiet", input_fasta],
            dry_run=dry_run,
        )
        if not dry_run:
            write_text(output_fasta, result.stdout, force=True)
        return result
