from __future__ import annotations

from pathlib import Path
from typing import Sequence

from clademap.runners.base import ToolRunner
from clademap.utils.subprocess import CommandResult

HIT_FIELDS = ("qseqid", "sseqid", "pident", "length", "evalue", "bitscore")


class DiamondRunner(ToolRunner):
    """Wrapper around the DIAMOND protein similarity search."""

    def __init__(self, executable: str | Path = "diamond", **kwargs) -> None:
        super().__init__(executable, **kwargs)

    def makedb(self, *, input_faa: Path, db_prefix: Path, threads: int, dry_run: bool = False) -> CommandResult:
        return self.run(
            ["makedb", "--in", input_faa, "--db", db_prefix, "--threads", str(threads)],
            dry_run=dry_run,
        )

    def blastp(
        self,
        *,
        query_faa: Path,
        db_prefix: Path,
        output_tsv: Path,
        threads: int,
        max_evalue: float,
        max_target_seqs: int,
        sensitivity: str | None = None,
        extra_args: Sequence[str] = (),
        dry_run: bool = False,
    ) -> CommandResult:
        args: list[str | Path] = [
            "blastp",
            "--query",
            query_faa,
            "--db",
            db_prefix,
            "--out",
            output_tsv,
            "--outfmt",
            "6",
            *HIT_FIELDS,
            "--evalue",
            f"{max_evalue:g}",
            "--max-target-seqs",
            str(max_target_seqs),
            "--threads",
            str(threads),
        ]
        if sensitivity is not None:
            args.append(f"--{sensitivity}")
        args.extend(extra_args)
        return self.run(args, dry_run=dry_run)
