from __future__ import annotations

import re
from pathlib import Path
from typing import Sequence

from clademap.runners.base import ToolRunner
from clademap.utils.subprocess import CommandResult

_REPORT_PATTERN = re.compile(r"Best-fit model according to \w+:\s*(\S+)")
_LOG_PATTERN = re.compile(r"Best-fit model:\s*(\S+)\s+chosen")


class IqtreeRunner(ToolRunner):
    """Wrapper around IQ-TREE 2 for ModelFinder and ultrafast-bootstrap trees."""

    def __init__(self, executable: str | Path = "iqtree2", **kwargs) -> None:
        super().__init__(executable, **kwargs)

    def select_model(
        self,
        *,
        alignment: Path,
        prefix: Path,
        threads: int = 1,
        model_set: str | None = None,
        extra_args: Sequence[str] = (),
        dry_run: bool = False,
    ) -> CommandResult:
        args: list[str | Path] = ["-s", alignment, "-m", "MF", "-T", str(threads), "--prefix", prefix, "-redo", "--quiet"]
        if model_set:
            args.extend(["-mset", model_set])
        args.extend(extra_args)
        return self.run(args, dry_run=dry_run)

    def infer_tree(
        self,
        *,
        alignment: Path,
        prefix: Path,
        model: str,
        bootstrap: int,
        threads: int = 1,
        extra_args: Sequence[str] = (),
        dry_run: bool = False,
    ) -> CommandResult:
        return self.run(
            [
                "-s",
                alignment,
                "-m",
                model,
                "-B",
                str(bootstrap),
                "-T",
                str(threads),
                "--prefix",
                prefix,
                "-redo",
                "--quiet",
                *extra_args,
            ],
            dry_run=dry_run,
        )


def report_path(prefix: Path) -> Path:
    return Path(f"{prefix}.iqtree")


def log_path(prefix: Path) -> Path:
    return Path(f"{prefix}.log")


def treefile_path(prefix: Path) -> Path:
    return Path(f"{prefix}.treefile")


def parse_best_model(prefix: Path) -> str | None:
    """Read the ModelFinder choice from `<prefix>.iqtree`, falling back to the log."""

    for path, pattern in ((report_path(prefix), _REPORT_PATTERN), (log_path(prefix), _LOG_PATTERN)):
        if not path.exists():
            continue
        match = pattern.search(path.read_text(encoding="utf-8", errors="replace"))
        if match:
            return match.group(1)
    return None
